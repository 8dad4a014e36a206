"""Shared fixtures: fresh databases, an experiment, and a handful of agents."""

from __future__ import annotations

import pytest
import structlog

from lyceum.agent_service import create_agent
from lyceum.config import PolicyConfig
from lyceum.database import get_db
from lyceum.experiment_service import create_experiment
from lyceum.models import AgentCreate, ExperimentCreate

DEFAULT_POLICY = PolicyConfig(min_accepts=2, max_rejects=0, strong_reject_veto=True, require_all_requested=True)


@pytest.fixture(autouse=True)
def _reset_structlog(monkeypatch):
    """The CLI binds structlog to the (captured) stderr; unbind it after each test.

    Logger caching is disabled so module-level loggers don't keep a closed stream.
    """
    configure = structlog.configure

    def _configure(**kwargs):
        kwargs["cache_logger_on_first_use"] = False
        configure(**kwargs)

    monkeypatch.setattr(structlog, "configure", _configure)
    yield
    structlog.reset_defaults()


@pytest.fixture
async def db():
    conn = await get_db(":memory:")
    try:
        yield conn
    finally:
        await conn.close()


@pytest.fixture
def db_path(tmp_path):
    """A file database, for tests that need several connections."""
    return tmp_path / "lyceum.db"


@pytest.fixture
async def file_db(db_path):
    conn = await get_db(db_path)
    try:
        yield conn
    finally:
        await conn.close()


@pytest.fixture
async def experiment(db):
    return await create_experiment(
        db,
        ExperimentCreate(name="exp", problem="Find the bug.", policy=DEFAULT_POLICY.model_copy()),
    )


@pytest.fixture
async def agents(db, experiment):
    """alice, bob, carol."""
    return [
        await create_agent(db, experiment.id, AgentCreate(name=name))
        for name in ("alice", "bob", "carol")
    ]
