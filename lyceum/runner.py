"""Runner — drive an experiment's agents concurrently under a shared cost cap.

Each agent gets its own task and its own database connection. A task loops
over steps until the agent goes idle, the budget is spent, the operator
stops the run, or the model provider gives up on it. One agent's failure
never ends its siblings' loops.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import aiosqlite
from fastmcp import Client
from pydantic import BaseModel, Field

from lyceum.advisory import pop_notifications, render_notification
from lyceum.config import settings
from lyceum.database import get_db
from lyceum.errors import ErrorKind
from lyceum.ledger_service import record, spent, within_budget
from lyceum.llm import InvocationResult, ModelInvoker, ToolSpec
from lyceum.logging_config import bind_agent_context, clear_agent_context, get_logger
from lyceum.messages_service import append_message, load_conversation
from lyceum.models import (
    Agent,
    Experiment,
    Message,
    MessageRole,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)
from lyceum.pricing import PriceTable, default_price_table
from lyceum.sandbox import SandboxProvisioner, ensure_sandbox
from lyceum.tools import build_agent_server

logger = get_logger(__name__)


class AgentStatus(str, Enum):
    COMPLETED = "completed"  # went idle on its own
    STOPPED = "stopped"  # operator stop
    MAX_STEPS = "max_steps"
    BUDGET_EXHAUSTED = "budget_exhausted"
    STALLED = "stalled"  # provider retries exhausted
    FAILED = "failed"


FAILURE_STATUSES = frozenset({AgentStatus.STALLED, AgentStatus.FAILED})


@dataclass
class RetryConfig:
    """Bounded exponential backoff for transient provider errors."""

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed)."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay


class RunConfig(BaseModel):
    """Parameters of one run of an experiment."""

    reviewers: int = Field(default_factory=lambda: settings.runner.reviewers, ge=0)
    cost_cap: float | None = Field(default=None, ge=0.0)
    model_override: str | None = None
    max_steps: int | None = Field(default_factory=lambda: settings.runner.max_steps)
    max_idle_steps: int = Field(default_factory=lambda: settings.runner.max_idle_steps, ge=1)
    max_attempts: int = Field(default_factory=lambda: settings.runner.max_retries, ge=1)
    retry_base_delay: float = Field(default_factory=lambda: settings.runner.retry_base_delay, ge=0.0)
    retry_max_delay: float = Field(default_factory=lambda: settings.runner.retry_max_delay, ge=0.0)

    def retry(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


@dataclass
class AgentRunResult:
    agent: str
    status: AgentStatus
    steps: int = 0
    error: str = ""


@dataclass
class RunReport:
    experiment: str
    results: list[AgentRunResult] = field(default_factory=list)
    spent: float = 0.0

    @property
    def failed(self) -> list[AgentRunResult]:
        return [r for r in self.results if r.status in FAILURE_STATUSES]

    @property
    def total_steps(self) -> int:
        return sum(r.steps for r in self.results)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def to_dict(self) -> dict:
        return {
            "experiment": self.experiment,
            "spent": round(self.spent, 6),
            "total_steps": self.total_steps,
            "agents": [
                {"agent": r.agent, "status": r.status.value, "steps": r.steps, "error": r.error}
                for r in self.results
            ],
        }


CONTINUE_PROMPT = (
    "Continue your research. Check for new publications and review requests, "
    "and use the tools to publish, review or nominate."
)


def initial_prompt(experiment: Experiment) -> str:
    return (
        f"Problem:\n{experiment.problem}\n\n"
        "Work towards a solution with the other researchers of this experiment. "
        "Publish your findings, review the publications you are asked to review, "
        "cite prior work by reference, and nominate the published result you "
        "currently believe best solves the problem."
    )


# ---------------------------------------------------------------------------
# Per-agent loop
# ---------------------------------------------------------------------------

class AgentRunner:
    """The step loop of one agent."""

    def __init__(
        self,
        experiment: Experiment,
        agent: Agent,
        invoker: ModelInvoker,
        config: RunConfig,
        stop_event: asyncio.Event,
        db_path: Path | str | None = None,
        price_table: PriceTable | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.experiment = experiment
        self.agent = agent
        self.invoker = invoker
        self.config = config
        self.retry = config.retry()
        self.stop_event = stop_event
        self.db_path = db_path
        self.price_table = price_table or default_price_table
        self.rng = rng
        self.steps = 0

    async def run(self) -> AgentRunResult:
        bind_agent_context(self.experiment.name, self.agent.name)
        db = await get_db(self.db_path)
        try:
            server = build_agent_server(db, self.experiment, self.agent, self.config.reviewers, rng=self.rng)
            async with Client(server) as client:
                tools = [
                    ToolSpec(name=t.name, description=t.description or "", input_schema=t.inputSchema)
                    for t in await client.list_tools()
                ]
                status, error = await self._loop(db, client, tools)
        finally:
            clear_agent_context()
            await db.close()
        logger.info("agent_finished", agent=self.agent.name, status=status.value, steps=self.steps)
        return AgentRunResult(agent=self.agent.name, status=status, steps=self.steps, error=error)

    async def _loop(self, db: aiosqlite.Connection, client: Client, tools: list[ToolSpec]) -> tuple[AgentStatus, str]:
        conversation = await load_conversation(db, self.agent)
        if not conversation:
            conversation.append(
                await append_message(
                    db, self.agent, MessageRole.USER, [TextBlock(text=initial_prompt(self.experiment))]
                )
            )

        idle = 0
        while True:
            if self.stop_event.is_set():
                return AgentStatus.STOPPED, ""
            if self.config.max_steps is not None and self.steps >= self.config.max_steps:
                return AgentStatus.MAX_STEPS, ""
            if self.config.cost_cap is not None and not await within_budget(
                db, self.experiment.id, self.config.cost_cap
            ):
                logger.info("budget_exhausted", cap=self.config.cost_cap)
                return AgentStatus.BUDGET_EXHAUSTED, ""

            notifications = await pop_notifications(db, self.experiment.id, self.agent.name)
            texts = [render_notification(n) for n in notifications]
            # every agent turn is answered by a user turn
            if not texts and conversation[-1].role == MessageRole.AGENT:
                texts.append(CONTINUE_PROMPT)
            if texts:
                conversation.append(
                    await append_message(db, self.agent, MessageRole.USER, [TextBlock(text="\n".join(texts))])
                )

            result = await self._invoke_with_retry(conversation, tools)
            if not result.ok:
                await self._record_usage(db, result, message_id=None)
                if result.error_kind == ErrorKind.PROVIDER_TRANSIENT:
                    logger.warning("agent_stalled", attempts=self.retry.max_attempts, error=result.error)
                    return AgentStatus.STALLED, result.error
                logger.error("agent_failed", kind=result.error_kind.value, error=result.error)
                return AgentStatus.FAILED, result.error

            message = await append_message(db, self.agent, MessageRole.AGENT, result.content)
            conversation.append(message)
            await self._record_usage(db, result, message_id=message.id)
            self.steps += 1

            calls = message.tool_calls()
            if not calls:
                idle += 1
                if idle >= self.config.max_idle_steps:
                    return AgentStatus.COMPLETED, ""
                continue
            idle = 0

            results = [await self._call_tool(client, call) for call in calls]
            conversation.append(await append_message(db, self.agent, MessageRole.USER, results))

    async def _invoke_with_retry(self, conversation: list[Message], tools: list[ToolSpec]) -> InvocationResult:
        result = InvocationResult.failure(ErrorKind.PROVIDER, "no attempt made")
        for attempt in range(self.retry.max_attempts):
            try:
                result = await self.invoker.invoke(self.agent, conversation, tools)
            except Exception as exc:
                logger.exception("invoker_raised")
                return InvocationResult.failure(ErrorKind.PROVIDER, f"{type(exc).__name__}: {exc}")

            if result.error_kind != ErrorKind.PROVIDER_TRANSIENT:
                return result
            if attempt + 1 < self.retry.max_attempts:
                delay = self.retry.calculate_delay(attempt)
                logger.warning("step_retry", attempt=attempt + 1, delay=round(delay, 2), error=result.error)
                await asyncio.sleep(delay)
        return result

    async def _record_usage(self, db: aiosqlite.Connection, result: InvocationResult, message_id: int | None) -> None:
        if result.usage.total == 0 and result.usage.cached == 0:
            return
        await record(
            db,
            self.experiment.id,
            result.usage,
            model=self.agent.model,
            agent_id=self.agent.id,
            message_id=message_id,
            price_table=self.price_table,
        )

    async def _call_tool(self, client: Client, call: ToolCallBlock) -> ToolResultBlock:
        try:
            response = await client.call_tool(call.name, call.arguments, raise_on_error=False)
        except Exception as exc:
            # unknown tool, bad arguments: the agent should see it and correct itself
            logger.warning("tool_call_failed", tool=call.name, error=str(exc))
            return ToolResultBlock(tool_call_id=call.id, tool_name=call.name, content=str(exc), is_error=True)

        text = "\n".join(getattr(c, "text", "") for c in response.content)
        if response.is_error:
            logger.info("tool_error", tool=call.name)
        return ToolResultBlock(
            tool_call_id=call.id,
            tool_name=call.name,
            content=text,
            is_error=response.is_error,
        )


# ---------------------------------------------------------------------------
# Experiment run
# ---------------------------------------------------------------------------

class Runner:
    """Runs every agent of an experiment until each one finishes."""

    def __init__(
        self,
        experiment: Experiment,
        agents: list[Agent],
        invoker: ModelInvoker,
        config: RunConfig | None = None,
        db_path: Path | str | None = None,
        price_table: PriceTable | None = None,
        sandbox: SandboxProvisioner | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.experiment = experiment
        self.config = config or RunConfig()
        if self.config.model_override:
            agents = [a.model_copy(update={"model": self.config.model_override}) for a in agents]
        self.agents = agents
        self.invoker = invoker
        self.db_path = db_path
        self.price_table = price_table
        self.sandbox = sandbox
        self.rng = rng
        self.stop_event = asyncio.Event()

    def stop(self) -> None:
        """Stop dispatching new steps. Steps in flight finish normally."""
        if not self.stop_event.is_set():
            logger.info("run_stop_requested", experiment=self.experiment.name)
        self.stop_event.set()

    async def run(self) -> RunReport:
        if self.sandbox is not None:
            await ensure_sandbox(self.sandbox, self.experiment.id)

        logger.info(
            "run_started",
            experiment=self.experiment.name,
            agents=len(self.agents),
            cost_cap=self.config.cost_cap,
            reviewers=self.config.reviewers,
        )
        runners = [
            AgentRunner(
                self.experiment,
                agent,
                self.invoker,
                self.config,
                self.stop_event,
                db_path=self.db_path,
                price_table=self.price_table,
                rng=self.rng,
            )
            for agent in self.agents
        ]
        outcomes = await asyncio.gather(*(r.run() for r in runners), return_exceptions=True)

        report = RunReport(experiment=self.experiment.name)
        for runner, outcome in zip(runners, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                report.results.append(
                    AgentRunResult(agent=runner.agent.name, status=AgentStatus.STOPPED, steps=runner.steps)
                )
            elif isinstance(outcome, BaseException):
                logger.error("agent_crashed", agent=runner.agent.name, error=repr(outcome))
                report.results.append(
                    AgentRunResult(
                        agent=runner.agent.name,
                        status=AgentStatus.FAILED,
                        steps=runner.steps,
                        error=repr(outcome),
                    )
                )
            else:
                report.results.append(outcome)

        db = await get_db(self.db_path)
        try:
            report.spent = await spent(db, self.experiment.id)
        finally:
            await db.close()

        logger.info(
            "run_finished",
            experiment=self.experiment.name,
            spent=report.spent,
            steps=report.total_steps,
            failed=[r.agent for r in report.failed],
        )
        return report
