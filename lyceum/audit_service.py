"""Audit service — append-only event log for every lifecycle action.

Every submission, review, decision, nomination, and advisory change is
recorded here. Events are immutable once written. Writes join the caller's
transaction when there is one.
"""

from __future__ import annotations

from typing import Any

import aiosqlite

from lyceum.database import from_json, to_json
from lyceum.models import AuditAction, AuditEvent


async def log_event(
    db: aiosqlite.Connection,
    action: AuditAction,
    experiment_id: int | None = None,
    actor: str = "",
    target_id: str | int = "",
    target_type: str = "",
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Write an immutable audit event."""
    event = AuditEvent(
        experiment_id=experiment_id,
        action=action,
        actor=actor,
        target_id=str(target_id),
        target_type=target_type,
        details=details or {},
    )
    await db.execute(
        """
        INSERT INTO audit_events (event_id, experiment_id, action, actor, target_id, target_type, details, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.event_id,
            event.experiment_id,
            event.action.value,
            event.actor,
            event.target_id,
            event.target_type,
            to_json(event.details),
            event.timestamp.isoformat(),
        ),
    )
    return event


async def get_recent_events(
    db: aiosqlite.Connection,
    experiment_id: int,
    action: AuditAction | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Retrieve recent audit events of one experiment, optionally filtered by action type."""
    if action:
        query = (
            "SELECT * FROM audit_events WHERE experiment_id = ? AND action = ? "
            "ORDER BY timestamp DESC LIMIT ?"
        )
        params: tuple = (experiment_id, action.value, limit)
    else:
        query = "SELECT * FROM audit_events WHERE experiment_id = ? ORDER BY timestamp DESC LIMIT ?"
        params = (experiment_id, limit)

    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    events = [dict(row) for row in rows]
    for event in events:
        event["details"] = from_json(event["details"]) or {}
    return events
