"""Experiment service — create, look up, and delete research runs."""

from __future__ import annotations

from typing import Any

import aiosqlite

from lyceum.audit_service import log_event
from lyceum.config import PolicyConfig, settings
from lyceum.database import from_json, is_unique_violation, now_iso, to_json
from lyceum.errors import NotFoundError, ValidationError
from lyceum.logging_config import get_logger
from lyceum.models import AuditAction, Experiment, ExperimentCreate

logger = get_logger(__name__)


def _row_to_experiment(row: aiosqlite.Row | dict[str, Any]) -> Experiment:
    d = dict(row)
    d["policy"] = PolicyConfig(**(from_json(d.get("policy")) or {}))
    return Experiment(**d)


async def create_experiment(
    db: aiosqlite.Connection,
    payload: ExperimentCreate,
) -> Experiment:
    """Create an experiment. The publish policy is frozen onto it at this point."""
    if not payload.name.strip():
        raise ValidationError("Experiment name is required")

    experiment = Experiment(
        name=payload.name,
        problem=payload.problem,
        policy=payload.policy or settings.policy.model_copy(),
    )
    now = now_iso()
    try:
        cursor = await db.execute(
            """
            INSERT INTO experiments (uuid, name, problem, policy, created, updated)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                experiment.uuid,
                experiment.name,
                experiment.problem,
                to_json(experiment.policy.model_dump()),
                now,
                now,
            ),
        )
    except aiosqlite.IntegrityError as exc:
        if is_unique_violation(exc):
            raise ValidationError(f"Experiment '{payload.name}' already exists") from exc
        raise
    experiment.id = cursor.lastrowid

    await log_event(
        db,
        AuditAction.EXPERIMENT_CREATED,
        experiment_id=experiment.id,
        actor="operator",
        target_id=experiment.id,
        target_type="experiment",
        details={"name": experiment.name},
    )
    logger.info("experiment_created", experiment=experiment.name, id=experiment.id)
    return experiment


async def get_experiment(db: aiosqlite.Connection, experiment_id: int) -> Experiment:
    async with db.execute(
        "SELECT * FROM experiments WHERE id = ?", (experiment_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Experiment", experiment_id)
    return _row_to_experiment(row)


async def find_experiment(db: aiosqlite.Connection, selector: str) -> Experiment:
    """Resolve an experiment by name or uuid."""
    async with db.execute(
        "SELECT * FROM experiments WHERE name = ? OR uuid = ?", (selector, selector)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Experiment", selector)
    return _row_to_experiment(row)


async def list_experiments(db: aiosqlite.Connection) -> list[Experiment]:
    async with db.execute("SELECT * FROM experiments ORDER BY created") as cursor:
        rows = await cursor.fetchall()
    return [_row_to_experiment(row) for row in rows]


async def delete_experiment(db: aiosqlite.Connection, experiment_id: int) -> None:
    """Delete an experiment and, through ON DELETE CASCADE, everything it owns."""
    cursor = await db.execute("DELETE FROM experiments WHERE id = ?", (experiment_id,))
    if cursor.rowcount == 0:
        raise NotFoundError("Experiment", experiment_id)
    logger.info("experiment_deleted", id=experiment_id)
