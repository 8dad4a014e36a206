"""Model invocation boundary.

The engine never talks to a provider SDK directly. It hands an agent's
configuration, conversation, and tool specs to a :class:`ModelInvoker` and
gets back an :class:`InvocationResult`: content blocks and token usage on
success, an :class:`~lyceum.errors.ErrorKind` on failure. Invokers report
failures as values; the runner decides what each kind means.
"""

from __future__ import annotations

import importlib
from collections.abc import Sequence
from typing import Any, Protocol

from pydantic import BaseModel, Field

from lyceum.errors import ErrorKind
from lyceum.models import Agent, ContentBlock, Message, TextBlock, TokenUsage


class ToolSpec(BaseModel):
    """A tool as advertised to the model."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class InvocationResult(BaseModel):
    content: list[ContentBlock] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    error_kind: ErrorKind | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(cls, content: Sequence[ContentBlock], usage: TokenUsage | None = None) -> InvocationResult:
        return cls(content=list(content), usage=usage or TokenUsage())

    @classmethod
    def failure(cls, kind: ErrorKind, error: str, usage: TokenUsage | None = None) -> InvocationResult:
        return cls(error_kind=kind, error=error, usage=usage or TokenUsage())


class ModelInvoker(Protocol):
    async def invoke(
        self,
        agent: Agent,
        conversation: Sequence[Message],
        tools: Sequence[ToolSpec],
    ) -> InvocationResult:
        ...


class ScriptedInvoker:
    """
    Replays canned results per agent name, then answers with plain text.

    Useful for dry runs and tests: a script entry is either an
    ``InvocationResult`` or a list of content blocks.
    """

    def __init__(
        self,
        scripts: dict[str, Sequence[InvocationResult | Sequence[ContentBlock]]] | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        self.scripts = {name: list(steps) for name, steps in (scripts or {}).items()}
        self.usage = usage or TokenUsage()
        self.calls: dict[str, int] = {}

    async def invoke(
        self,
        agent: Agent,
        conversation: Sequence[Message],
        tools: Sequence[ToolSpec],
    ) -> InvocationResult:
        self.calls[agent.name] = self.calls.get(agent.name, 0) + 1
        steps = self.scripts.get(agent.name)
        if not steps:
            return InvocationResult.success([TextBlock(text="Nothing further to do.")], self.usage)
        step = steps.pop(0)
        if isinstance(step, InvocationResult):
            return step
        return InvocationResult.success(step, self.usage)


def idle_invoker() -> ModelInvoker:
    """Factory for an invoker whose agents never call tools."""
    return ScriptedInvoker()


def load_invoker(path: str) -> ModelInvoker:
    """Build an invoker from ``'package.module:factory'``."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invoker must be given as 'module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()
