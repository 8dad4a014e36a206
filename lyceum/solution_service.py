"""Solution service — per-agent best-answer nominations, support tally, resolution events.

Nominations form an append-only log. An agent's *current* solution is its
latest row by ``(created, id)``; support for a publication counts the agents
whose current row points at it. Every tally is computed in one SELECT, so a
reader never sees an agent counted twice while it moves its vote.
"""

from __future__ import annotations

from typing import Any

import aiosqlite

from lyceum.audit_service import log_event
from lyceum.database import transaction
from lyceum.errors import InvalidStateError, NotFoundError, ValidationError
from lyceum.logging_config import get_logger
from lyceum.models import (
    Agent,
    AuditAction,
    PublicationStatus,
    ResolutionEvent,
    Solution,
    SolutionReason,
)

logger = get_logger(__name__)

# Latest nomination per agent, ties on timestamp broken by insertion order
_CURRENT_SOLUTIONS_SQL = """
SELECT * FROM (
    SELECT s.*, ROW_NUMBER() OVER (
        PARTITION BY s.agent_id ORDER BY s.created DESC, s.id DESC
    ) AS rn
    FROM solutions s
    WHERE s.experiment_id = ?
)
WHERE rn = 1
"""


def _row_to_solution(row: aiosqlite.Row | dict[str, Any]) -> Solution:
    d = dict(row)
    d.pop("rn", None)
    d["reason"] = SolutionReason(d["reason"])
    return Solution(**d)


# ---------------------------------------------------------------------------
# Nominations
# ---------------------------------------------------------------------------

async def nominate(
    db: aiosqlite.Connection,
    agent: Agent,
    publication_id: int | None,
    reason: SolutionReason | str,
    rationale: str = "",
) -> Solution:
    """
    Append a nomination for ``agent``. ``publication_id=None`` withdraws its vote.

    Only PUBLISHED publications of the agent's own experiment can be nominated.
    Earlier rows are never touched.
    """
    try:
        reason = SolutionReason(reason)
    except ValueError as exc:
        raise ValidationError(f"Unknown reason: {reason}") from exc

    reference: str | None = None
    async with transaction(db):
        if publication_id is not None:
            async with db.execute(
                "SELECT experiment_id, status, reference FROM publications WHERE id = ?",
                (publication_id,),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None or row["experiment_id"] != agent.experiment_id:
                raise NotFoundError("Publication", publication_id)
            if row["status"] != PublicationStatus.PUBLISHED.value:
                raise InvalidStateError(
                    f"Only published publications can be nominated, [{row['reference']}] is {row['status']}",
                    {"reference": row["reference"], "status": row["status"]},
                )
            reference = row["reference"]

        solution = Solution(
            experiment_id=agent.experiment_id,
            agent_id=agent.id,
            publication_id=publication_id,
            reason=reason,
            rationale=rationale,
        )
        cursor = await db.execute(
            """
            INSERT INTO solutions (experiment_id, agent_id, publication_id, reason, rationale, created)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                solution.experiment_id,
                solution.agent_id,
                solution.publication_id,
                solution.reason.value,
                solution.rationale,
                solution.created.isoformat(),
            ),
        )
        solution.id = cursor.lastrowid
        await log_event(
            db,
            AuditAction.SOLUTION_NOMINATED,
            experiment_id=agent.experiment_id,
            actor=agent.name,
            target_id=publication_id if publication_id is not None else "",
            target_type="publication",
            details={"reference": reference, "reason": reason.value},
        )

    logger.info("solution_nominated", agent=agent.name, reference=reference, reason=reason.value)
    return solution


async def current_solution(db: aiosqlite.Connection, agent: Agent) -> Solution | None:
    """The agent's latest nomination, or None if it never nominated."""
    async with db.execute(
        "SELECT * FROM solutions WHERE agent_id = ? ORDER BY created DESC, id DESC LIMIT 1",
        (agent.id,),
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_solution(row) if row is not None else None


async def list_current_solutions(db: aiosqlite.Connection, experiment_id: int) -> list[Solution]:
    async with db.execute(_CURRENT_SOLUTIONS_SQL + " ORDER BY agent_id", (experiment_id,)) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_solution(row) for row in rows]


async def solution_history(db: aiosqlite.Connection, agent: Agent) -> list[Solution]:
    async with db.execute(
        "SELECT * FROM solutions WHERE agent_id = ? ORDER BY created, id",
        (agent.id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_solution(row) for row in rows]


# ---------------------------------------------------------------------------
# Support
# ---------------------------------------------------------------------------

async def support(db: aiosqlite.Connection, publication_id: int) -> int:
    """Number of agents whose current solution is this publication."""
    async with db.execute(
        "SELECT experiment_id FROM publications WHERE id = ?", (publication_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Publication", publication_id)

    async with db.execute(
        f"SELECT COUNT(*) FROM ({_CURRENT_SOLUTIONS_SQL}) WHERE publication_id = ?",
        (row[0], publication_id),
    ) as cursor:
        return (await cursor.fetchone())[0]


async def support_tally(db: aiosqlite.Connection, experiment_id: int) -> list[dict[str, Any]]:
    """Support per publication, highest first, as one consistent snapshot."""
    async with db.execute(
        f"""
        SELECT p.id, p.reference, p.title, COUNT(*) AS support
        FROM ({_CURRENT_SOLUTIONS_SQL}) cur
        JOIN publications p ON p.id = cur.publication_id
        GROUP BY p.id
        ORDER BY support DESC, p.created ASC
        """,
        (experiment_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Resolution events
# ---------------------------------------------------------------------------

def _row_to_resolution(row: aiosqlite.Row | dict[str, Any]) -> ResolutionEvent:
    return ResolutionEvent(**dict(row))


async def declare_resolution(
    db: aiosqlite.Connection,
    experiment_id: int,
    reference: str,
    rationale: str = "",
) -> ResolutionEvent:
    """Record a best-overall-solution declaration. Reporting only; nothing else changes."""
    async with db.execute(
        "SELECT 1 FROM publications WHERE experiment_id = ? AND reference = ?",
        (experiment_id, reference),
    ) as cursor:
        if await cursor.fetchone() is None:
            raise NotFoundError("Publication", reference)

    event = ResolutionEvent(
        experiment_id=experiment_id,
        publication_reference=reference,
        rationale=rationale,
    )
    async with transaction(db):
        cursor = await db.execute(
            """
            INSERT INTO resolutions (experiment_id, publication_reference, rationale, created)
            VALUES (?, ?, ?, ?)
            """,
            (experiment_id, reference, rationale, event.created.isoformat()),
        )
        event.id = cursor.lastrowid
        await log_event(
            db,
            AuditAction.RESOLUTION_DECLARED,
            experiment_id=experiment_id,
            actor="operator",
            target_id=reference,
            target_type="publication",
            details={"rationale": rationale},
        )
    logger.info("resolution_declared", experiment_id=experiment_id, reference=reference)
    return event


async def current_resolution(db: aiosqlite.Connection, experiment_id: int) -> ResolutionEvent | None:
    async with db.execute(
        "SELECT * FROM resolutions WHERE experiment_id = ? ORDER BY created DESC, id DESC LIMIT 1",
        (experiment_id,),
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_resolution(row) if row is not None else None


async def resolution_history(db: aiosqlite.Connection, experiment_id: int) -> list[ResolutionEvent]:
    async with db.execute(
        "SELECT * FROM resolutions WHERE experiment_id = ? ORDER BY created, id",
        (experiment_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_resolution(row) for row in rows]
