"""Main entry point — operator CLI for experiments, agents, runs and the read-only API.

Usage:
    lyceum experiment create NAME --problem-file problem.md
    lyceum agent create NAME researcher-1 --model claude-sonnet-4-5
    lyceum advisory register NAME researcher-1
    lyceum run NAME --cost-cap 25 --reviewers 3 --invoker mypkg.models:make_invoker
    lyceum stats NAME
    lyceum serve --port 8000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

from lyceum.advisory import list_advisory, register_advisory, unregister_advisory
from lyceum.agent_service import create_agent, find_agent, list_agents
from lyceum.config import PolicyConfig, settings
from lyceum.database import get_db
from lyceum.errors import LyceumError
from lyceum.experiment_service import create_experiment, delete_experiment, find_experiment, list_experiments
from lyceum.ledger_service import cost_by_agent, spent, token_usage
from lyceum.llm import load_invoker
from lyceum.logging_config import configure_logging, get_logger
from lyceum.models import AgentCreate, ExperimentCreate, ThinkingLevel
from lyceum.publication_service import status_counts
from lyceum.runner import RunConfig, Runner
from lyceum.sandbox import LocalSandboxProvisioner
from lyceum.solution_service import current_resolution, declare_resolution, support_tally
from lyceum.tools import TOOL_GROUPS

logger = get_logger(__name__)


def _print(payload: Any) -> None:
    print(json.dumps(payload, default=str, indent=2))


def _read_text(inline: str | None, path: str | None) -> str:
    if path:
        return Path(path).read_text(encoding="utf-8")
    return inline or ""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lyceum",
        description="Lyceum — agents that publish, review and cite their way to a solution",
    )
    parser.add_argument("--log-level", default=settings.server.log_level, help="Log level (default: %(default)s)")
    parser.add_argument("--log-json", action="store_true", default=settings.server.log_json, help="JSON logs on stderr")
    commands = parser.add_subparsers(dest="command", required=True)

    # ---- experiment ----
    experiment = commands.add_parser("experiment", help="Manage experiments")
    experiment_cmds = experiment.add_subparsers(dest="action", required=True)

    create = experiment_cmds.add_parser("create", help="Create an experiment")
    create.add_argument("name")
    create.add_argument("--problem", help="Problem statement")
    create.add_argument("--problem-file", help="Read the problem statement from a file")
    create.add_argument("--min-accepts", type=int, default=settings.policy.min_accepts)
    create.add_argument("--max-rejects", type=int, default=settings.policy.max_rejects)
    create.add_argument(
        "--no-strong-reject-veto",
        dest="strong_reject_veto",
        action="store_false",
        default=settings.policy.strong_reject_veto,
    )

    experiment_cmds.add_parser("list", help="List experiments")

    delete = experiment_cmds.add_parser("delete", help="Delete an experiment and everything it owns")
    delete.add_argument("name")

    # ---- agent ----
    agent = commands.add_parser("agent", help="Manage agents")
    agent_cmds = agent.add_subparsers(dest="action", required=True)

    agent_create = agent_cmds.add_parser("create", help="Add an agent to an experiment")
    agent_create.add_argument("experiment")
    agent_create.add_argument("name")
    agent_create.add_argument("--provider", default="anthropic")
    agent_create.add_argument("--model", default="claude-sonnet-4-5")
    agent_create.add_argument("--thinking", choices=[t.value for t in ThinkingLevel], default=ThinkingLevel.LOW.value)
    agent_create.add_argument("--tools", nargs="*", choices=TOOL_GROUPS, default=[])
    agent_create.add_argument("--system", help="System prompt")
    agent_create.add_argument("--system-file", help="Read the system prompt from a file")
    agent_create.add_argument("--count", type=int, default=1, help="Create NAME-0 .. NAME-(count-1)")

    agent_list = agent_cmds.add_parser("list", help="List an experiment's agents")
    agent_list.add_argument("experiment")

    # ---- advisory ----
    advisory = commands.add_parser("advisory", help="Manage the review-exemption registry")
    advisory_cmds = advisory.add_subparsers(dest="action", required=True)
    for action in ("register", "unregister"):
        sub = advisory_cmds.add_parser(action)
        sub.add_argument("experiment")
        sub.add_argument("agent")
    advisory_list = advisory_cmds.add_parser("list")
    advisory_list.add_argument("experiment")

    # ---- resolution ----
    resolution = commands.add_parser("resolve", help="Declare the current best solution of an experiment")
    resolution.add_argument("experiment")
    resolution.add_argument("reference")
    resolution.add_argument("--rationale", default="")

    # ---- run ----
    run = commands.add_parser("run", help="Run an experiment's agents")
    run.add_argument("experiment")
    run.add_argument("--cost-cap", type=float, default=None, help="Stop dispatching steps once spent reaches this")
    run.add_argument("--reviewers", type=int, default=settings.runner.reviewers)
    run.add_argument("--model", dest="model_override", default=None, help="Override every agent's model")
    run.add_argument("--max-steps", type=int, default=settings.runner.max_steps)
    run.add_argument("--agents", nargs="*", default=None, help="Only run these agents")
    run.add_argument(
        "--invoker",
        default=settings.model_invoker or "lyceum.llm:idle_invoker",
        help="Model invoker factory as module:function (default: %(default)s)",
    )
    run.add_argument("--sandbox", action="store_true", help="Provision a local sandbox directory first")

    # ---- stats / serve ----
    stats = commands.add_parser("stats", help="Publication, support and cost summary")
    stats.add_argument("experiment")

    serve = commands.add_parser("serve", help="Start the read-only REST API")
    serve.add_argument("--host", default=settings.server.host)
    serve.add_argument("--port", type=int, default=settings.server.port)

    return parser


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

async def _experiment(args: argparse.Namespace) -> int:
    db = await get_db()
    try:
        if args.action == "create":
            problem = _read_text(args.problem, args.problem_file)
            exp = await create_experiment(
                db,
                ExperimentCreate(
                    name=args.name,
                    problem=problem,
                    policy=PolicyConfig(
                        min_accepts=args.min_accepts,
                        max_rejects=args.max_rejects,
                        strong_reject_veto=args.strong_reject_veto,
                    ),
                ),
            )
            _print(exp.model_dump(mode="json"))
        elif args.action == "list":
            _print([
                {"name": e.name, "uuid": e.uuid, "created": e.created}
                for e in await list_experiments(db)
            ])
        elif args.action == "delete":
            exp = await find_experiment(db, args.name)
            await delete_experiment(db, exp.id)
            _print({"deleted": exp.name})
        return 0
    finally:
        await db.close()


async def _agent(args: argparse.Namespace) -> int:
    db = await get_db()
    try:
        exp = await find_experiment(db, args.experiment)
        if args.action == "create":
            system = _read_text(args.system, args.system_file)
            names = [args.name] if args.count <= 1 else [f"{args.name}-{i}" for i in range(args.count)]
            created = []
            for name in names:
                agent = await create_agent(
                    db,
                    exp.id,
                    AgentCreate(
                        name=name,
                        provider=args.provider,
                        model=args.model,
                        thinking=ThinkingLevel(args.thinking),
                        tools=args.tools,
                        system=system,
                    ),
                )
                created.append(agent.model_dump(mode="json", exclude={"system"}))
            _print(created)
        elif args.action == "list":
            _print([a.model_dump(mode="json", exclude={"system"}) for a in await list_agents(db, exp.id)])
        return 0
    finally:
        await db.close()


async def _advisory(args: argparse.Namespace) -> int:
    db = await get_db()
    try:
        exp = await find_experiment(db, args.experiment)
        if args.action == "register":
            _print({"agent": args.agent, "registered": await register_advisory(db, exp.id, args.agent)})
        elif args.action == "unregister":
            _print({"agent": args.agent, "unregistered": await unregister_advisory(db, exp.id, args.agent)})
        else:
            _print(await list_advisory(db, exp.id))
        return 0
    finally:
        await db.close()


async def _resolve(args: argparse.Namespace) -> int:
    db = await get_db()
    try:
        exp = await find_experiment(db, args.experiment)
        event = await declare_resolution(db, exp.id, args.reference, args.rationale)
        _print(event.model_dump(mode="json"))
        return 0
    finally:
        await db.close()


async def _stats(args: argparse.Namespace) -> int:
    db = await get_db()
    try:
        exp = await find_experiment(db, args.experiment)
        usage = await token_usage(db, exp.id)
        resolution = await current_resolution(db, exp.id)
        _print({
            "experiment": exp.name,
            "publications": await status_counts(db, exp.id),
            "support": await support_tally(db, exp.id),
            "resolution": resolution.model_dump(mode="json") if resolution else None,
            "spent": await spent(db, exp.id),
            "tokens": {**usage.model_dump(), "total": usage.total},
            "by_agent": await cost_by_agent(db, exp.id),
        })
        return 0
    finally:
        await db.close()


async def _run(args: argparse.Namespace) -> int:
    db = await get_db()
    try:
        exp = await find_experiment(db, args.experiment)
        if args.agents:
            agents = [await find_agent(db, exp.id, name) for name in args.agents]
        else:
            agents = await list_agents(db, exp.id)
    finally:
        await db.close()

    if not agents:
        print(f"Experiment {exp.name} has no agents", file=sys.stderr)
        return 1

    runner = Runner(
        exp,
        agents,
        load_invoker(args.invoker),
        RunConfig(
            reviewers=args.reviewers,
            cost_cap=args.cost_cap,
            model_override=args.model_override,
            max_steps=args.max_steps,
        ),
        sandbox=LocalSandboxProvisioner() if args.sandbox else None,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except NotImplementedError:
            pass  # Windows

    report = await runner.run()
    _print(report.to_dict())
    return report.exit_code


_HANDLERS = {
    "experiment": _experiment,
    "agent": _agent,
    "advisory": _advisory,
    "resolve": _resolve,
    "stats": _stats,
    "run": _run,
}


def _start_api(host: str, port: int) -> None:
    """Start the REST API server."""
    import uvicorn

    print(f"Starting Lyceum read-only API at http://{host}:{port}", file=sys.stderr)
    print(f"API docs at http://{host}:{port}/docs", file=sys.stderr)
    uvicorn.run(
        "lyceum.api:app",
        host=host,
        port=port,
        log_level=settings.server.log_level,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, json_format=args.log_json)
    settings.ensure_dirs()

    if args.command == "serve":
        _start_api(args.host, args.port)
        return 0

    try:
        return asyncio.run(_HANDLERS[args.command](args))
    except LyceumError as exc:
        _print({"error": exc.to_dict()})
        return 2


if __name__ == "__main__":
    sys.exit(main())
