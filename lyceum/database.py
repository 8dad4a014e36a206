"""Storage layer — SQLite via aiosqlite.

Provides:
- async SQLite connections (one per concurrent task)
- schema creation
- publication reference generator
- transaction helper for multi-statement writes

Uniqueness, foreign-key, and no-self-citation invariants live in the schema so
that they hold even when two agents race on the same row.
"""

from __future__ import annotations

import json
import secrets
import string
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from lyceum.config import settings

# ---------------------------------------------------------------------------
# Publication references
# ---------------------------------------------------------------------------

REFERENCE_LENGTH = 4
_REFERENCE_ALPHABET = string.ascii_lowercase + string.digits


def new_reference() -> str:
    """Short opaque publication id, e.g. ``k3x9``. Unique per experiment (enforced by schema)."""
    return "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# SQLite Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS experiments (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid        TEXT NOT NULL UNIQUE,
    name        TEXT NOT NULL UNIQUE,
    problem     TEXT NOT NULL,
    policy      TEXT NOT NULL DEFAULT '{}',
    created     TEXT NOT NULL,
    updated     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    name            TEXT NOT NULL,
    provider        TEXT NOT NULL,
    model           TEXT NOT NULL,
    thinking        TEXT NOT NULL DEFAULT 'low',
    tools           TEXT NOT NULL DEFAULT '[]',
    system          TEXT NOT NULL DEFAULT '',
    created         TEXT NOT NULL,
    updated         TEXT NOT NULL,
    UNIQUE (experiment_id, name)
);

CREATE TABLE IF NOT EXISTS publications (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    author_id       INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    title           TEXT NOT NULL,
    abstract        TEXT NOT NULL DEFAULT '',
    content         TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'SUBMITTED'
                    CHECK (status IN ('SUBMITTED', 'PUBLISHED', 'REJECTED')),
    reference       TEXT NOT NULL,
    -- NULL until reviewers are assigned
    reviewers_requested INTEGER,
    created         TEXT NOT NULL,
    updated         TEXT NOT NULL,
    UNIQUE (experiment_id, reference)
);

CREATE INDEX IF NOT EXISTS idx_publications_status ON publications(experiment_id, status);
CREATE INDEX IF NOT EXISTS idx_publications_author ON publications(author_id);

-- Review obligations handed out by the scheduler
CREATE TABLE IF NOT EXISTS review_requests (
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    publication_id  INTEGER NOT NULL REFERENCES publications(id) ON DELETE CASCADE,
    reviewer_id     INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    created         TEXT NOT NULL,
    PRIMARY KEY (publication_id, reviewer_id)
);

CREATE INDEX IF NOT EXISTS idx_review_requests_reviewer ON review_requests(reviewer_id);

CREATE TABLE IF NOT EXISTS reviews (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    publication_id  INTEGER NOT NULL REFERENCES publications(id) ON DELETE CASCADE,
    author_id       INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    grade           TEXT NOT NULL
                    CHECK (grade IN ('STRONG_ACCEPT', 'ACCEPT', 'REJECT', 'STRONG_REJECT')),
    content         TEXT NOT NULL DEFAULT '',
    created         TEXT NOT NULL,
    updated         TEXT NOT NULL,
    UNIQUE (publication_id, author_id)
);

CREATE INDEX IF NOT EXISTS idx_reviews_author ON reviews(author_id);

-- Citations (directed graph: from cites to)
CREATE TABLE IF NOT EXISTS citations (
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    from_id         INTEGER NOT NULL REFERENCES publications(id) ON DELETE CASCADE,
    to_id           INTEGER NOT NULL REFERENCES publications(id) ON DELETE CASCADE,
    created         TEXT NOT NULL,
    PRIMARY KEY (from_id, to_id),
    CHECK (from_id <> to_id)
);

CREATE INDEX IF NOT EXISTS idx_citations_to ON citations(to_id);

-- Append-only nomination log; the latest row per agent is its current solution
CREATE TABLE IF NOT EXISTS solutions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    agent_id        INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    publication_id  INTEGER REFERENCES publications(id) ON DELETE CASCADE,
    reason          TEXT NOT NULL,
    rationale       TEXT NOT NULL DEFAULT '',
    created         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_solutions_agent ON solutions(agent_id, created, id);

CREATE TABLE IF NOT EXISTS resolutions (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id           INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    publication_reference   TEXT NOT NULL,
    rationale               TEXT NOT NULL DEFAULT '',
    created                 TEXT NOT NULL
);

-- Agents exempt from mandatory peer review, scoped to one experiment
CREATE TABLE IF NOT EXISTS advisory_agents (
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    agent_name      TEXT NOT NULL,
    created         TEXT NOT NULL,
    PRIMARY KEY (experiment_id, agent_name)
);

-- Pending notifications for agents, popped at the start of each step
CREATE TABLE IF NOT EXISTS advisory_messages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    agent_name      TEXT NOT NULL,
    payload         TEXT NOT NULL,
    created         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_advisory_messages_agent ON advisory_messages(experiment_id, agent_name);

CREATE TABLE IF NOT EXISTS messages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    agent_id        INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    role            TEXT NOT NULL,
    content         TEXT NOT NULL DEFAULT '[]',
    created         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_agent ON messages(agent_id, id);

-- Append-only budget ledger
CREATE TABLE IF NOT EXISTS ledger (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id   INTEGER NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
    agent_id        INTEGER REFERENCES agents(id) ON DELETE SET NULL,
    message_id      INTEGER REFERENCES messages(id) ON DELETE SET NULL,
    input           INTEGER NOT NULL DEFAULT 0,
    output          INTEGER NOT NULL DEFAULT 0,
    cached          INTEGER NOT NULL DEFAULT 0,
    thinking        INTEGER NOT NULL DEFAULT 0,
    cost            REAL NOT NULL DEFAULT 0.0,
    created         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ledger_experiment ON ledger(experiment_id);

-- Audit events (append-only)
CREATE TABLE IF NOT EXISTS audit_events (
    event_id        TEXT PRIMARY KEY,
    experiment_id   INTEGER REFERENCES experiments(id) ON DELETE CASCADE,
    action          TEXT NOT NULL,
    actor           TEXT NOT NULL DEFAULT '',
    target_id       TEXT NOT NULL DEFAULT '',
    target_type     TEXT NOT NULL DEFAULT '',
    details         TEXT NOT NULL DEFAULT '{}',
    timestamp       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_experiment ON audit_events(experiment_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_events(action);
"""


async def get_db(db_path: Path | str | None = None) -> aiosqlite.Connection:
    """Open a connection and ensure the schema exists.

    Connections run in autocommit mode: single statements commit on their own,
    multi-statement writes go through :func:`transaction`.
    """
    if db_path is None:
        settings.ensure_dirs()
        db_path = settings.db_path
    db = await aiosqlite.connect(str(db_path), isolation_level=None)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.execute("PRAGMA journal_mode = WAL;")
    await db.execute("PRAGMA synchronous = NORMAL;")
    await db.execute("PRAGMA busy_timeout = 5000;")
    await db.execute("PRAGMA temp_store = MEMORY;")
    await db.executescript(SCHEMA_SQL)
    return db


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Run a block of writes atomically.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so concurrent writers
    queue on ``busy_timeout`` instead of failing mid-way with SQLITE_BUSY.
    """
    await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        await db.execute("ROLLBACK")
        raise
    else:
        await db.execute("COMMIT")


def is_unique_violation(exc: Exception) -> bool:
    return isinstance(exc, aiosqlite.IntegrityError) and "UNIQUE constraint failed" in str(exc)


# ---------------------------------------------------------------------------
# JSON helpers for SQLite columns that store serialised data
# ---------------------------------------------------------------------------

def _json_default(obj: Any) -> Any:
    """Custom JSON serialiser that handles Pydantic models and other types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return str(obj)


def to_json(obj: Any) -> str:
    """Serialise a Python object for storage in a TEXT column."""
    if isinstance(obj, str):
        return obj
    return json.dumps(obj, default=_json_default)


def from_json(text: str | None) -> Any:
    """Deserialise a TEXT column back to a Python object."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text
