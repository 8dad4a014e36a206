"""Sandbox provisioning — isolated per-experiment execution environments.

The engine only asks that a sandbox exists and can run commands; how it is
scheduled is the provisioner's business. Creating a sandbox that already
exists counts as success.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from lyceum.config import settings
from lyceum.errors import SandboxError
from lyceum.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SandboxHandle:
    experiment_id: int
    location: str


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxAlreadyExists(Exception):
    """Raised by a provisioner whose create call found an existing sandbox."""

    def __init__(self, handle: SandboxHandle) -> None:
        super().__init__(f"Sandbox for experiment {handle.experiment_id} already exists")
        self.handle = handle


class SandboxProvisioner(Protocol):
    async def create_sandbox(self, experiment_id: int) -> SandboxHandle:
        ...

    async def delete_sandbox(self, experiment_id: int) -> None:
        ...

    async def exec_in_sandbox(self, handle: SandboxHandle, command: str) -> ExecResult:
        ...


async def ensure_sandbox(provisioner: SandboxProvisioner, experiment_id: int) -> SandboxHandle:
    """Create the experiment's sandbox, or reuse the one already there."""
    try:
        handle = await provisioner.create_sandbox(experiment_id)
    except SandboxAlreadyExists as exc:
        logger.debug("sandbox_exists", experiment_id=experiment_id, location=exc.handle.location)
        return exc.handle
    logger.info("sandbox_created", experiment_id=experiment_id, location=handle.location)
    return handle


class LocalSandboxProvisioner:
    """
    Directory-per-experiment sandbox on the local machine.

    Commands run through the shell with the sandbox directory as working
    directory and a wall-clock timeout. This isolates files, not processes.
    """

    def __init__(self, root: Path | None = None, timeout: float = 120.0) -> None:
        self.root = root or settings.data_dir / "sandboxes"
        self.timeout = timeout

    def _path(self, experiment_id: int) -> Path:
        return self.root / f"experiment-{experiment_id}"

    async def create_sandbox(self, experiment_id: int) -> SandboxHandle:
        path = self._path(experiment_id)
        handle = SandboxHandle(experiment_id=experiment_id, location=str(path))
        try:
            path.mkdir(parents=True, exist_ok=False)
        except FileExistsError:
            raise SandboxAlreadyExists(handle) from None
        return handle

    async def delete_sandbox(self, experiment_id: int) -> None:
        shutil.rmtree(self._path(experiment_id), ignore_errors=True)

    async def exec_in_sandbox(self, handle: SandboxHandle, command: str) -> ExecResult:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=handle.location,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise SandboxError(
                f"Command timed out after {self.timeout}s",
                {"command": command, "experiment_id": handle.experiment_id},
            ) from exc
        return ExecResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
