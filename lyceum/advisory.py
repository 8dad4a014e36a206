"""Advisory — per-experiment review exemptions and agent notifications.

Two concerns share this module because both are addressed by agent name
within one experiment:

- the *registry*: agents whose publications skip mandatory peer review;
- the *notification queue*: review requests, received reviews, and status
  changes waiting to be shown to an agent at its next step.

Both live in the database and disappear with their experiment.
"""

from __future__ import annotations

from typing import assert_never

import aiosqlite
from pydantic import TypeAdapter

from lyceum.audit_service import log_event
from lyceum.database import now_iso, to_json, transaction
from lyceum.errors import NotFoundError
from lyceum.logging_config import get_logger
from lyceum.models import (
    AdvisoryMessage,
    AuditAction,
    PublicationStatus,
    PublicationStatusUpdated,
    ReviewReceived,
    ReviewRequested,
)

logger = get_logger(__name__)

_message_adapter: TypeAdapter[AdvisoryMessage] = TypeAdapter(AdvisoryMessage)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

async def register_advisory(db: aiosqlite.Connection, experiment_id: int, agent_name: str) -> bool:
    """Exempt an agent from peer review. Returns False if it was already registered."""
    async with db.execute(
        "SELECT 1 FROM agents WHERE experiment_id = ? AND name = ?",
        (experiment_id, agent_name),
    ) as cursor:
        if await cursor.fetchone() is None:
            raise NotFoundError("Agent", agent_name)

    cursor = await db.execute(
        "INSERT OR IGNORE INTO advisory_agents (experiment_id, agent_name, created) VALUES (?, ?, ?)",
        (experiment_id, agent_name, now_iso()),
    )
    added = cursor.rowcount > 0
    if added:
        await log_event(
            db,
            AuditAction.ADVISORY_REGISTERED,
            experiment_id=experiment_id,
            actor="operator",
            target_id=agent_name,
            target_type="agent",
        )
        logger.info("advisory_registered", experiment_id=experiment_id, agent=agent_name)
    return added


async def unregister_advisory(db: aiosqlite.Connection, experiment_id: int, agent_name: str) -> bool:
    """Restore mandatory review for an agent. Returns False if it was not registered."""
    cursor = await db.execute(
        "DELETE FROM advisory_agents WHERE experiment_id = ? AND agent_name = ?",
        (experiment_id, agent_name),
    )
    removed = cursor.rowcount > 0
    if removed:
        await log_event(
            db,
            AuditAction.ADVISORY_UNREGISTERED,
            experiment_id=experiment_id,
            actor="operator",
            target_id=agent_name,
            target_type="agent",
        )
        logger.info("advisory_unregistered", experiment_id=experiment_id, agent=agent_name)
    return removed


async def is_advisory(db: aiosqlite.Connection, experiment_id: int, agent_name: str) -> bool:
    async with db.execute(
        "SELECT 1 FROM advisory_agents WHERE experiment_id = ? AND agent_name = ?",
        (experiment_id, agent_name),
    ) as cursor:
        return await cursor.fetchone() is not None


async def list_advisory(db: aiosqlite.Connection, experiment_id: int) -> list[str]:
    async with db.execute(
        "SELECT agent_name FROM advisory_agents WHERE experiment_id = ? ORDER BY agent_name",
        (experiment_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


# ---------------------------------------------------------------------------
# Notification queue
# ---------------------------------------------------------------------------

async def push_notification(
    db: aiosqlite.Connection,
    experiment_id: int,
    agent_name: str,
    message: AdvisoryMessage,
) -> None:
    """Queue a notification for an agent. Joins the caller's transaction if any."""
    await db.execute(
        "INSERT INTO advisory_messages (experiment_id, agent_name, payload, created) VALUES (?, ?, ?, ?)",
        (experiment_id, agent_name, to_json(message.model_dump(mode="json")), now_iso()),
    )


async def pop_notifications(
    db: aiosqlite.Connection,
    experiment_id: int,
    agent_name: str,
) -> list[AdvisoryMessage]:
    """Drain an agent's queue, oldest first."""
    async with transaction(db):
        async with db.execute(
            "SELECT id, payload FROM advisory_messages WHERE experiment_id = ? AND agent_name = ? ORDER BY id",
            (experiment_id, agent_name),
        ) as cursor:
            rows = await cursor.fetchall()
        if rows:
            placeholders = ",".join("?" for _ in rows)
            await db.execute(
                f"DELETE FROM advisory_messages WHERE id IN ({placeholders})",
                [row[0] for row in rows],
            )
    return [_message_adapter.validate_json(row[1]) for row in rows]


def render_notification(message: AdvisoryMessage) -> str:
    """Human-readable line shown to the agent."""
    if isinstance(message, ReviewRequested):
        return f'You are requested to review publication "{message.title}" [{message.reference}].'
    if isinstance(message, ReviewReceived):
        return (
            f'Your publication "{message.title}" [{message.reference}] received a '
            f"{message.grade.value} review from {message.author}."
        )
    if isinstance(message, PublicationStatusUpdated):
        verb = "published" if message.status == PublicationStatus.PUBLISHED else "rejected"
        return f'Your publication "{message.title}" [{message.reference}] was {verb}.'
    assert_never(message)
