"""Runner: agent step loops, retries, budget cap, tool calls."""

from __future__ import annotations

import pytest

from lyceum.agent_service import create_agent
from lyceum.config import PolicyConfig
from lyceum.errors import ErrorKind
from lyceum.experiment_service import create_experiment
from lyceum.ledger_service import record
from lyceum.llm import InvocationResult, ScriptedInvoker, load_invoker
from lyceum.messages_service import load_conversation
from lyceum.models import (
    AgentCreate,
    ExperimentCreate,
    MessageRole,
    PublicationStatus,
    TextBlock,
    TokenUsage,
    ToolCallBlock,
    ToolResultBlock,
)
from lyceum.publication_service import list_publications
from lyceum.runner import CONTINUE_PROMPT, AgentStatus, RetryConfig, RunConfig, Runner


def _config(**overrides) -> RunConfig:
    values = {"reviewers": 0, "max_idle_steps": 1, "max_attempts": 3, "retry_base_delay": 0.0, "max_steps": 20}
    values.update(overrides)
    return RunConfig(**values)


async def _setup(db, *names: str):
    exp = await create_experiment(
        db,
        ExperimentCreate(name="run", problem="Find the bug.", policy=PolicyConfig(min_accepts=1)),
    )
    agents = [await create_agent(db, exp.id, AgentCreate(name=n)) for n in names]
    return exp, agents


def _results(report) -> dict:
    return {r.agent: r for r in report.results}


def _tool_results(conversation) -> list[ToolResultBlock]:
    return [b for m in conversation for b in m.content if isinstance(b, ToolResultBlock)]


class TestRetryConfig:
    def test_exponential_backoff_capped(self):
        retry = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [retry.calculate_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self):
        retry = RetryConfig(base_delay=2.0, max_delay=60.0)
        for _ in range(20):
            assert 1.0 <= retry.calculate_delay(0) <= 3.0


class TestScheduling:
    async def test_idle_agents_complete(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice", "bob")
        report = await Runner(exp, agents, ScriptedInvoker(), _config(), db_path=db_path).run()

        assert {r.status for r in report.results} == {AgentStatus.COMPLETED}
        assert report.exit_code == 0
        assert report.total_steps == 2

    async def test_budget_exhausted_issues_no_steps(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice", "bob")
        await record(file_db, exp.id, TokenUsage(), cost=10.01)
        invoker = ScriptedInvoker()

        report = await Runner(exp, agents, invoker, _config(cost_cap=10.00), db_path=db_path).run()

        assert invoker.calls == {}
        assert {r.status for r in report.results} == {AgentStatus.BUDGET_EXHAUSTED}
        assert report.exit_code == 0

    async def test_spend_stops_the_run(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")
        # one output-heavy step costs 15.00 on this model
        invoker = ScriptedInvoker(usage=TokenUsage(output=1_000_000))
        config = _config(cost_cap=10.0, max_idle_steps=10)

        report = await Runner(exp, agents, invoker, config, db_path=db_path).run()

        assert _results(report)["alice"].status == AgentStatus.BUDGET_EXHAUSTED
        assert invoker.calls == {"alice": 1}
        assert report.spent == pytest.approx(15.0)

    async def test_max_steps(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")
        report = await Runner(
            exp, agents, ScriptedInvoker(), _config(max_idle_steps=10, max_steps=2), db_path=db_path
        ).run()
        assert _results(report)["alice"].status == AgentStatus.MAX_STEPS
        assert _results(report)["alice"].steps == 2

    async def test_stop_before_dispatch(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice", "bob")
        invoker = ScriptedInvoker()
        runner = Runner(exp, agents, invoker, _config(), db_path=db_path)
        runner.stop()

        report = await runner.run()

        assert {r.status for r in report.results} == {AgentStatus.STOPPED}
        assert invoker.calls == {}

    async def test_stop_during_invocation_finishes_the_step(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")

        class StopsMidStep(ScriptedInvoker):
            runner = None

            async def invoke(self, agent, conversation, tools):
                self.runner.stop()
                return await super().invoke(agent, conversation, tools)

        invoker = StopsMidStep(usage=TokenUsage(input=1000, output=100))
        runner = Runner(exp, agents, invoker, _config(max_idle_steps=10), db_path=db_path)
        invoker.runner = runner

        report = await runner.run()

        assert _results(report)["alice"].status == AgentStatus.STOPPED
        assert _results(report)["alice"].steps == 1
        assert invoker.calls == {"alice": 1}
        assert report.spent > 0
        conversation = await load_conversation(file_db, agents[0])
        assert [m.role for m in conversation] == [MessageRole.USER, MessageRole.AGENT]

    async def test_model_override(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")
        runner = Runner(exp, agents, ScriptedInvoker(), _config(model_override="gpt-5"), db_path=db_path)
        assert [a.model for a in runner.agents] == ["gpt-5"]
        assert agents[0].model != "gpt-5"


class TestProviderFailures:
    async def test_transient_errors_stall_one_agent_only(self, file_db, db_path):
        exp, agents = await _setup(file_db, "flaky", "steady")
        transient = InvocationResult.failure(ErrorKind.PROVIDER_TRANSIENT, "overloaded")
        invoker = ScriptedInvoker({"flaky": [transient, transient, transient]})

        report = await Runner(exp, agents, invoker, _config(), db_path=db_path).run()

        results = _results(report)
        assert results["flaky"].status == AgentStatus.STALLED
        assert results["flaky"].error == "overloaded"
        assert results["steady"].status == AgentStatus.COMPLETED
        assert invoker.calls["flaky"] == 3
        assert report.exit_code == 1

    async def test_transient_error_recovers(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")
        transient = InvocationResult.failure(ErrorKind.PROVIDER_TRANSIENT, "rate limited")
        invoker = ScriptedInvoker({"alice": [transient]})

        report = await Runner(exp, agents, invoker, _config(), db_path=db_path).run()

        assert _results(report)["alice"].status == AgentStatus.COMPLETED
        assert invoker.calls["alice"] == 2

    async def test_permanent_error_fails_without_retry(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")
        invoker = ScriptedInvoker({"alice": [InvocationResult.failure(ErrorKind.PROVIDER, "bad request")]})

        report = await Runner(exp, agents, invoker, _config(), db_path=db_path).run()

        assert _results(report)["alice"].status == AgentStatus.FAILED
        assert invoker.calls["alice"] == 1
        assert report.exit_code == 1

    async def test_raising_invoker_fails_agent(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice", "bob")

        class Exploding(ScriptedInvoker):
            async def invoke(self, agent, conversation, tools):
                if agent.name == "alice":
                    raise RuntimeError("socket closed")
                return await super().invoke(agent, conversation, tools)

        report = await Runner(exp, agents, Exploding(), _config(), db_path=db_path).run()

        results = _results(report)
        assert results["alice"].status == AgentStatus.FAILED
        assert "socket closed" in results["alice"].error
        assert results["bob"].status == AgentStatus.COMPLETED


class TestToolCalls:
    async def test_tool_results_and_errors_reach_the_agent(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")
        invoker = ScriptedInvoker(
            {
                "alice": [
                    [ToolCallBlock(
                        id="c1",
                        name="submit_publication_tool",
                        arguments={"title": "Overflow", "abstract": "", "content": "Found it."},
                    )],
                    [ToolCallBlock(
                        id="c2",
                        name="submit_review_tool",
                        arguments={"publication": "zzzz", "grade": "ACCEPT", "content": "?"},
                    )],
                    [ToolCallBlock(id="c3", name="no_such_tool", arguments={})],
                ]
            },
            usage=TokenUsage(input=1000, output=100),
        )

        report = await Runner(exp, agents, invoker, _config(), db_path=db_path).run()

        assert _results(report)["alice"].status == AgentStatus.COMPLETED
        assert _results(report)["alice"].steps == 4
        assert report.spent > 0

        published = await list_publications(file_db, exp.id, status=PublicationStatus.PUBLISHED)
        assert [p.title for p in published] == ["Overflow"]

        results = {r.tool_call_id: r for r in _tool_results(await load_conversation(file_db, agents[0]))}
        assert results["c1"].is_error is False
        assert published[0].reference in results["c1"].content
        assert results["c2"].is_error is True
        assert "not_found_error" in results["c2"].content
        assert results["c3"].is_error is True

    async def test_review_request_delivered_as_notification(self, file_db, db_path):
        exp, (alice, bob) = await _setup(file_db, "alice", "bob")
        invoker = ScriptedInvoker(
            {
                "alice": [[ToolCallBlock(
                    id="c1",
                    name="submit_publication_tool",
                    arguments={"title": "Overflow", "abstract": "", "content": "Found it."},
                )]],
            }
        )
        await Runner(exp, [alice], invoker, _config(reviewers=1), db_path=db_path).run()
        await Runner(exp, [bob], invoker, _config(reviewers=1), db_path=db_path).run()

        texts = [
            b.text
            for m in await load_conversation(file_db, bob)
            if m.role == MessageRole.USER
            for b in m.content
            if isinstance(b, TextBlock)
        ]
        assert any("You are requested to review" in t and "Overflow" in t for t in texts)

    async def test_conversation_resumes(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")
        await Runner(exp, agents, ScriptedInvoker(), _config(), db_path=db_path).run()
        await Runner(exp, agents, ScriptedInvoker(), _config(), db_path=db_path).run()

        conversation = await load_conversation(file_db, agents[0])
        assert [m.role for m in conversation] == [
            MessageRole.USER,
            MessageRole.AGENT,
            MessageRole.USER,
            MessageRole.AGENT,
        ]
        assert conversation[0].content[0].text.startswith("Problem:")
        assert conversation[2].content[0].text == CONTINUE_PROMPT

    async def test_idle_turn_is_answered_before_the_next_step(self, file_db, db_path):
        exp, agents = await _setup(file_db, "alice")

        class RecordsLastRole(ScriptedInvoker):
            def __init__(self):
                super().__init__()
                self.last_roles = []

            async def invoke(self, agent, conversation, tools):
                self.last_roles.append(conversation[-1].role)
                return await super().invoke(agent, conversation, tools)

        invoker = RecordsLastRole()
        report = await Runner(exp, agents, invoker, _config(max_idle_steps=3), db_path=db_path).run()

        assert _results(report)["alice"].status == AgentStatus.COMPLETED
        assert invoker.last_roles == [MessageRole.USER] * 3


class TestInvokerLoading:
    def test_load_factory(self):
        assert isinstance(load_invoker("lyceum.llm:idle_invoker"), ScriptedInvoker)

    def test_bad_path(self):
        with pytest.raises(ValueError):
            load_invoker("lyceum.llm")
