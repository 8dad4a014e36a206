"""Budget ledger — append-only token accounting and spend-cap checks.

Entries are never updated or deleted; every figure here is derived from the
log at read time.
"""

from __future__ import annotations

from typing import Any

import aiosqlite

from lyceum.logging_config import get_logger
from lyceum.models import LedgerEntry, TokenUsage
from lyceum.pricing import PriceTable, default_price_table

logger = get_logger(__name__)


def _row_to_entry(row: aiosqlite.Row | dict[str, Any]) -> LedgerEntry:
    return LedgerEntry(**dict(row))


async def record(
    db: aiosqlite.Connection,
    experiment_id: int,
    usage: TokenUsage,
    *,
    model: str | None = None,
    agent_id: int | None = None,
    message_id: int | None = None,
    price_table: PriceTable | None = None,
    cost: float | None = None,
) -> LedgerEntry:
    """Append one usage entry. ``cost`` defaults to the price table's figure for ``model``."""
    if cost is None:
        cost = (price_table or default_price_table).cost(model, usage) if model else 0.0

    entry = LedgerEntry(
        experiment_id=experiment_id,
        agent_id=agent_id,
        message_id=message_id,
        input=usage.input,
        output=usage.output,
        cached=usage.cached,
        thinking=usage.thinking,
        cost=cost,
    )
    cursor = await db.execute(
        """
        INSERT INTO ledger (experiment_id, agent_id, message_id, input, output, cached, thinking, cost, created)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.experiment_id,
            entry.agent_id,
            entry.message_id,
            entry.input,
            entry.output,
            entry.cached,
            entry.thinking,
            entry.cost,
            entry.created.isoformat(),
        ),
    )
    entry.id = cursor.lastrowid
    logger.debug("usage_recorded", experiment_id=experiment_id, agent_id=agent_id, cost=cost)
    return entry


async def spent(db: aiosqlite.Connection, experiment_id: int) -> float:
    async with db.execute(
        "SELECT COALESCE(SUM(cost), 0.0) FROM ledger WHERE experiment_id = ?",
        (experiment_id,),
    ) as cursor:
        return float((await cursor.fetchone())[0])


async def remaining(db: aiosqlite.Connection, experiment_id: int, cap: float) -> float:
    """What is left of ``cap``, never below zero."""
    return max(0.0, cap - await spent(db, experiment_id))


async def within_budget(db: aiosqlite.Connection, experiment_id: int, cap: float) -> bool:
    return await spent(db, experiment_id) < cap


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

async def token_usage(
    db: aiosqlite.Connection,
    experiment_id: int,
    agent_id: int | None = None,
) -> TokenUsage:
    """Summed token counts for an experiment, or one of its agents."""
    query = (
        "SELECT COALESCE(SUM(input), 0), COALESCE(SUM(output), 0), "
        "COALESCE(SUM(cached), 0), COALESCE(SUM(thinking), 0) "
        "FROM ledger WHERE experiment_id = ?"
    )
    params: list[Any] = [experiment_id]
    if agent_id is not None:
        query += " AND agent_id = ?"
        params.append(agent_id)
    async with db.execute(query, params) as cursor:
        row = await cursor.fetchone()
    return TokenUsage(input=row[0], output=row[1], cached=row[2], thinking=row[3])


async def cost_by_agent(db: aiosqlite.Connection, experiment_id: int) -> list[dict[str, Any]]:
    async with db.execute(
        """
        SELECT a.name AS agent, COUNT(l.id) AS steps,
               COALESCE(SUM(l.input), 0) AS input, COALESCE(SUM(l.output), 0) AS output,
               COALESCE(SUM(l.cached), 0) AS cached, COALESCE(SUM(l.thinking), 0) AS thinking,
               COALESCE(SUM(l.cost), 0.0) AS cost
        FROM agents a
        LEFT JOIN ledger l ON l.agent_id = a.id
        WHERE a.experiment_id = ?
        GROUP BY a.id
        ORDER BY a.name
        """,
        (experiment_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


async def list_entries(
    db: aiosqlite.Connection,
    experiment_id: int,
    limit: int = 100,
) -> list[LedgerEntry]:
    async with db.execute(
        "SELECT * FROM ledger WHERE experiment_id = ? ORDER BY id DESC LIMIT ?",
        (experiment_id, limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_entry(row) for row in rows]
