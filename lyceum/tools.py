"""Agent tool surface — one FastMCP server per (experiment, agent).

Tools are grouped; an agent's ``tools`` list picks the groups it gets:

- ``publications``: list, read, submit and review publications
- ``solutions``: nominate the current best answer, read the support tally
- ``advisory``: manage the experiment's review-exemption registry

Data-integrity failures are raised as ``ToolError`` so the calling agent sees
a corrective tool failure and its loop continues.
"""

from __future__ import annotations

import json
import random
from typing import Any, Literal

import aiosqlite
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from lyceum.advisory import list_advisory, register_advisory, unregister_advisory
from lyceum.citation_service import get_backward_references, get_forward_citations
from lyceum.errors import DataIntegrityError, NotFoundError
from lyceum.models import (
    Agent,
    Experiment,
    PublicationStatus,
    PublicationSubmission,
    ReviewGrade,
    SolutionReason,
)
from lyceum.publication_service import (
    find_publication,
    list_by_author,
    list_publications,
    list_review_requests,
    maybe_publish_or_reject,
    submit_for_review,
)
from lyceum.review_service import get_review_rows, submit_review
from lyceum.solution_service import current_solution, nominate, support_tally

PUBLICATIONS = "publications"
SOLUTIONS = "solutions"
ADVISORY = "advisory"
TOOL_GROUPS = (PUBLICATIONS, SOLUTIONS, ADVISORY)
DEFAULT_TOOL_GROUPS = (PUBLICATIONS, SOLUTIONS)


def _dumps(payload: Any) -> str:
    return json.dumps(payload, default=str, indent=2)


def _tool_error(exc: DataIntegrityError) -> ToolError:
    return ToolError(_dumps(exc.to_dict()))


def _publication_header(publication: Any, with_abstract: bool = True) -> dict[str, Any]:
    header = {
        "reference": publication.reference,
        "title": publication.title,
        "status": publication.status.value,
        "created": publication.created,
    }
    if with_abstract:
        header["abstract"] = publication.abstract
    return header


def enabled_groups(agent: Agent) -> tuple[str, ...]:
    groups = tuple(g for g in agent.tools if g in TOOL_GROUPS)
    return groups or DEFAULT_TOOL_GROUPS


def build_agent_server(
    db: aiosqlite.Connection,
    experiment: Experiment,
    agent: Agent,
    reviewers: int,
    rng: random.Random | None = None,
) -> FastMCP:
    """Create the tool server ``agent`` talks to during a run."""
    mcp = FastMCP(
        f"lyceum-{experiment.name}-{agent.name}",
        instructions=(
            "Tools to submit, review and cite publications, and to nominate the "
            "publication you currently believe best solves the problem."
        ),
    )
    groups = enabled_groups(agent)

    # ---- Publication tools ----

    if PUBLICATIONS in groups:

        @mcp.tool()
        async def list_publications_tool(
            order: Literal["latest", "citations"] = "latest",
            status: Literal["PUBLISHED", "SUBMITTED", "REJECTED"] = "PUBLISHED",
            with_abstract: bool = True,
            limit: int = 10,
            offset: int = 0,
        ) -> str:
            """List publications of this experiment, most recent or most cited first."""
            publications = await list_publications(
                db,
                experiment.id,
                status=PublicationStatus(status),
                order=order,
                limit=max(1, min(limit, 100)),
                offset=max(0, offset),
            )
            return _dumps([_publication_header(p, with_abstract) for p in publications])

        @mcp.tool()
        async def get_publication_tool(reference: str) -> str:
            """Retrieve a publication. Reviews stay hidden until it is published or rejected."""
            try:
                publication = await find_publication(db, experiment.id, reference)
            except NotFoundError as exc:
                raise _tool_error(exc) from exc
            result = _publication_header(publication)
            result["content"] = publication.content
            result["cites"] = await get_backward_references(db, publication.id)
            result["cited_by"] = await get_forward_citations(db, publication.id)
            if publication.status == PublicationStatus.SUBMITTED:
                result["reviews"] = "(reviews are hidden until publication/rejection)"
            else:
                result["reviews"] = [
                    {"reviewer": r["reviewer"], "grade": r["grade"], "content": r["content"]}
                    for r in await get_review_rows(db, publication.id)
                ]
            return _dumps(result)

        @mcp.tool()
        async def submit_publication_tool(title: str, abstract: str, content: str) -> str:
            """
            Submit a new publication for review.

            Cite other publications inline as [abcd] or [abcd, efgh]. You cannot
            submit while you still have pending review requests.
            """
            try:
                publication, extraction = await submit_for_review(
                    db,
                    agent,
                    PublicationSubmission(title=title, abstract=abstract, content=content),
                    reviewers=reviewers,
                    rng=rng,
                )
            except DataIntegrityError as exc:
                raise _tool_error(exc) from exc
            return _dumps({
                "reference": publication.reference,
                "status": publication.status.value,
                "citations": sorted(extraction.references),
                "unresolved_citations": [u.to_dict() for u in extraction.unresolved],
            })

        @mcp.tool()
        async def list_review_requests_tool() -> str:
            """List publications waiting for your review."""
            publications = await list_review_requests(db, agent)
            return _dumps([_publication_header(p, with_abstract=False) for p in publications])

        @mcp.tool()
        async def list_submitted_publications_tool() -> str:
            """List the publications you submitted and their status."""
            publications = await list_by_author(db, agent)
            return _dumps([_publication_header(p, with_abstract=False) for p in publications])

        @mcp.tool()
        async def submit_review_tool(
            publication: str,
            grade: Literal["STRONG_ACCEPT", "ACCEPT", "REJECT", "STRONG_REJECT"],
            content: str,
        ) -> str:
            """Submit your review of a publication you were asked to review. One review per publication."""
            try:
                target = await find_publication(db, experiment.id, publication)
                review = await submit_review(db, agent, target.id, ReviewGrade(grade), content)
            except DataIntegrityError as exc:
                raise _tool_error(exc) from exc
            status = await maybe_publish_or_reject(db, target.id)
            return _dumps({
                "publication": target.reference,
                "grade": review.grade.value,
                "publication_status": status.value,
            })

    # ---- Solution tools ----

    if SOLUTIONS in groups:

        @mcp.tool()
        async def nominate_solution_tool(
            reason: Literal["NO_PREVIOUS", "PREVIOUS_WRONG", "PREVIOUS_IMPROVED", "NEW_APPROACH"],
            rationale: str,
            publication: str | None = None,
        ) -> str:
            """
            Report the published publication you currently believe is the best
            solution to the problem. Omit ``publication`` to withdraw your vote.
            """
            try:
                publication_id = None
                if publication:
                    publication_id = (await find_publication(db, experiment.id, publication)).id
                solution = await nominate(db, agent, publication_id, SolutionReason(reason), rationale)
            except DataIntegrityError as exc:
                raise _tool_error(exc) from exc
            return _dumps({
                "publication": publication,
                "reason": solution.reason.value,
                "recorded": solution.created,
            })

        @mcp.tool()
        async def get_solution_support_tool() -> str:
            """Current support per publication, and your own nomination."""
            mine = await current_solution(db, agent)
            return _dumps({
                "tally": await support_tally(db, experiment.id),
                "your_publication_id": mine.publication_id if mine else None,
            })

    # ---- Advisory tools ----

    if ADVISORY in groups:

        @mcp.tool()
        async def advisory_register_tool(agent_name: str) -> str:
            """Exempt an agent of this experiment from mandatory peer review."""
            try:
                added = await register_advisory(db, experiment.id, agent_name)
            except DataIntegrityError as exc:
                raise _tool_error(exc) from exc
            return _dumps({"agent": agent_name, "registered": added})

        @mcp.tool()
        async def advisory_unregister_tool(agent_name: str) -> str:
            """Restore mandatory peer review for an agent."""
            removed = await unregister_advisory(db, experiment.id, agent_name)
            return _dumps({"agent": agent_name, "unregistered": removed})

        @mcp.tool()
        async def advisory_list_tool() -> str:
            """Agents currently exempt from peer review."""
            return _dumps(await list_advisory(db, experiment.id))

    return mcp
