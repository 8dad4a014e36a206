"""Agent service — participant identity and configuration within an experiment."""

from __future__ import annotations

from typing import Any

import aiosqlite

from lyceum.audit_service import log_event
from lyceum.database import from_json, is_unique_violation, now_iso, to_json
from lyceum.errors import NotFoundError, ValidationError
from lyceum.models import Agent, AgentCreate, AgentUpdate, AuditAction, ThinkingLevel


def _row_to_agent(row: dict[str, Any] | aiosqlite.Row) -> Agent:
    """Convert a SQLite row to an Agent model."""
    d = dict(row)
    d["tools"] = from_json(d.get("tools", "[]"))
    d["thinking"] = ThinkingLevel(d["thinking"])
    return Agent(**d)


async def create_agent(
    db: aiosqlite.Connection,
    experiment_id: int,
    payload: AgentCreate,
) -> Agent:
    """Register a participant. Names are unique within the experiment."""
    if not payload.name.strip():
        raise ValidationError("Agent name is required")

    agent = Agent(experiment_id=experiment_id, **payload.model_dump())
    now = now_iso()
    try:
        cursor = await db.execute(
            """
            INSERT INTO agents (
                experiment_id, name, provider, model, thinking, tools, system, created, updated
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                experiment_id,
                agent.name,
                agent.provider,
                agent.model,
                agent.thinking.value,
                to_json(agent.tools),
                agent.system,
                now,
                now,
            ),
        )
    except aiosqlite.IntegrityError as exc:
        if is_unique_violation(exc):
            raise ValidationError(f"Agent '{agent.name}' already exists in this experiment") from exc
        raise NotFoundError("Experiment", experiment_id) from exc
    agent.id = cursor.lastrowid

    await log_event(
        db,
        AuditAction.AGENT_CREATED,
        experiment_id=experiment_id,
        actor=agent.name,
        target_id=agent.id,
        target_type="agent",
        details={"model": agent.model, "provider": agent.provider},
    )
    return agent


async def get_agent(db: aiosqlite.Connection, agent_id: int) -> Agent:
    """Look up an agent by ID."""
    async with db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Agent", agent_id)
    return _row_to_agent(row)


async def find_agent(db: aiosqlite.Connection, experiment_id: int, name: str) -> Agent:
    async with db.execute(
        "SELECT * FROM agents WHERE experiment_id = ? AND name = ?",
        (experiment_id, name),
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Agent", name)
    return _row_to_agent(row)


async def list_agents(db: aiosqlite.Connection, experiment_id: int) -> list[Agent]:
    async with db.execute(
        "SELECT * FROM agents WHERE experiment_id = ? ORDER BY id", (experiment_id,)
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_agent(row) for row in rows]


async def update_agent(
    db: aiosqlite.Connection,
    agent_id: int,
    payload: AgentUpdate,
) -> Agent:
    """Edit an agent's configuration. Name and experiment never change."""
    updates = payload.model_dump(exclude_none=True)
    if not updates:
        return await get_agent(db, agent_id)

    if "thinking" in updates:
        updates["thinking"] = updates["thinking"].value
    if "tools" in updates:
        updates["tools"] = to_json(updates["tools"])
    updates["updated"] = now_iso()

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    cursor = await db.execute(
        f"UPDATE agents SET {set_clause} WHERE id = ?",
        [*updates.values(), agent_id],
    )
    if cursor.rowcount == 0:
        raise NotFoundError("Agent", agent_id)
    return await get_agent(db, agent_id)
