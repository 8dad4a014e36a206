import sys

from lyceum.main import main

sys.exit(main())
