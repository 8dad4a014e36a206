"""Conversation log — each agent's messages, persisted so a run can resume."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import aiosqlite
from pydantic import TypeAdapter

from lyceum.database import from_json, to_json
from lyceum.models import Agent, ContentBlock, Message, MessageRole

_blocks_adapter: TypeAdapter[list[ContentBlock]] = TypeAdapter(list[ContentBlock])


def _row_to_message(row: aiosqlite.Row | dict[str, Any]) -> Message:
    d = dict(row)
    d["role"] = MessageRole(d["role"])
    d["content"] = _blocks_adapter.validate_python(from_json(d.get("content")) or [])
    return Message(**d)


async def append_message(
    db: aiosqlite.Connection,
    agent: Agent,
    role: MessageRole,
    content: Sequence[ContentBlock],
) -> Message:
    message = Message(
        experiment_id=agent.experiment_id,
        agent_id=agent.id,
        role=role,
        content=list(content),
    )
    cursor = await db.execute(
        "INSERT INTO messages (experiment_id, agent_id, role, content, created) VALUES (?, ?, ?, ?, ?)",
        (
            message.experiment_id,
            message.agent_id,
            message.role.value,
            to_json(_blocks_adapter.dump_python(message.content, mode="json")),
            message.created.isoformat(),
        ),
    )
    message.id = cursor.lastrowid
    return message


async def load_conversation(
    db: aiosqlite.Connection,
    agent: Agent,
    limit: int | None = None,
) -> list[Message]:
    """The agent's messages in order; with ``limit``, only the most recent ones."""
    if limit is None:
        query = "SELECT * FROM messages WHERE agent_id = ? ORDER BY id"
        params: tuple = (agent.id,)
    else:
        query = (
            "SELECT * FROM (SELECT * FROM messages WHERE agent_id = ? ORDER BY id DESC LIMIT ?) "
            "ORDER BY id"
        )
        params = (agent.id, limit)
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_message(row) for row in rows]
