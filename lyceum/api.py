"""REST API — read-only FastAPI endpoints for dashboards and human browsing.

Nothing here mutates experiment state; the middleware refuses every
non-GET request.
"""

from __future__ import annotations

from fastapi import FastAPI, HTTPException

from lyceum.advisory import list_advisory
from lyceum.agent_service import list_agents
from lyceum.audit_service import get_recent_events
from lyceum.citation_service import (
    get_backward_references,
    get_forward_citations,
    get_most_cited,
    list_citations,
    trace_lineage,
)
from lyceum.database import get_db
from lyceum.errors import NotFoundError
from lyceum.experiment_service import find_experiment, list_experiments
from lyceum.ledger_service import cost_by_agent, spent, token_usage
from lyceum.middleware import AccessLogMiddleware, ReadOnlyMiddleware
from lyceum.models import AuditAction, PublicationStatus
from lyceum.publication_service import find_publication, list_publications, status_counts
from lyceum.review_service import get_review_queue, get_review_rows
from lyceum.solution_service import current_resolution, list_current_solutions, resolution_history, support_tally

app = FastAPI(
    title="Lyceum",
    description="Read-only view of multi-agent research experiments",
    version="0.1.0",
)

app.add_middleware(ReadOnlyMiddleware)
app.add_middleware(AccessLogMiddleware)


# ---------------------------------------------------------------------------
# Experiments and agents
# ---------------------------------------------------------------------------

@app.get("/api/experiments", tags=["experiments"])
async def api_list_experiments():
    db = await get_db()
    try:
        return [e.model_dump(mode="json") for e in await list_experiments(db)]
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}", tags=["experiments"])
async def api_get_experiment(experiment: str):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        return {
            **exp.model_dump(mode="json"),
            "publications_by_status": await status_counts(db, exp.id),
            "advisory": await list_advisory(db, exp.id),
        }
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}/agents", tags=["experiments"])
async def api_list_agents(experiment: str):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        return [a.model_dump(mode="json", exclude={"system"}) for a in await list_agents(db, exp.id)]
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Publications, reviews, citations
# ---------------------------------------------------------------------------

@app.get("/api/experiments/{experiment}/publications", tags=["publications"])
async def api_list_publications(
    experiment: str,
    status: PublicationStatus | None = None,
    order: str = "latest",
    limit: int = 20,
    offset: int = 0,
):
    if order not in ("latest", "citations"):
        raise HTTPException(400, "order must be 'latest' or 'citations'")
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        publications = await list_publications(
            db,
            exp.id,
            status=status,
            order=order,
            limit=max(1, min(limit, 200)),
            offset=max(0, offset),
        )
        return [p.model_dump(mode="json") for p in publications]
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}/publications/{reference}", tags=["publications"])
async def api_get_publication(experiment: str, reference: str):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
            publication = await find_publication(db, exp.id, reference)
        except NotFoundError as exc:
            raise HTTPException(404, exc.message)
        return {
            **publication.model_dump(mode="json"),
            "cites": await get_backward_references(db, publication.id),
            "cited_by": await get_forward_citations(db, publication.id),
        }
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}/publications/{reference}/reviews", tags=["reviews"])
async def api_get_reviews(experiment: str, reference: str):
    """Reviews of a decided publication. Hidden while it is still under review."""
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
            publication = await find_publication(db, exp.id, reference)
        except NotFoundError as exc:
            raise HTTPException(404, exc.message)
        if publication.status == PublicationStatus.SUBMITTED:
            raise HTTPException(403, "Reviews are hidden until publication/rejection")
        return await get_review_rows(db, publication.id)
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}/review-queue", tags=["reviews"])
async def api_review_queue(experiment: str, limit: int = 50):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        return await get_review_queue(db, exp.id, limit=limit)
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}/citations", tags=["citations"])
async def api_citations(experiment: str):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        return {
            "edges": await list_citations(db, exp.id),
            "most_cited": await get_most_cited(db, exp.id),
        }
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}/publications/{reference}/lineage", tags=["citations"])
async def api_lineage(experiment: str, reference: str, max_depth: int = 10):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        return await trace_lineage(db, exp.id, reference, max_depth=max_depth)
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Solutions, resolution, cost
# ---------------------------------------------------------------------------

@app.get("/api/experiments/{experiment}/solutions", tags=["solutions"])
async def api_solutions(experiment: str):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        return {
            "support": await support_tally(db, exp.id),
            "current": [s.model_dump(mode="json") for s in await list_current_solutions(db, exp.id)],
        }
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}/resolution", tags=["solutions"])
async def api_resolution(experiment: str):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        current = await current_resolution(db, exp.id)
        return {
            "current": current.model_dump(mode="json") if current else None,
            "history": [r.model_dump(mode="json") for r in await resolution_history(db, exp.id)],
        }
    finally:
        await db.close()


@app.get("/api/experiments/{experiment}/cost", tags=["budget"])
async def api_cost(experiment: str):
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        usage = await token_usage(db, exp.id)
        return {
            "spent": await spent(db, exp.id),
            "tokens": {**usage.model_dump(), "total": usage.total},
            "by_agent": await cost_by_agent(db, exp.id),
        }
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

@app.get("/api/experiments/{experiment}/events", tags=["audit"])
async def api_events(experiment: str, action: AuditAction | None = None, limit: int = 50):
    """Most recent lifecycle events, newest first."""
    db = await get_db()
    try:
        try:
            exp = await find_experiment(db, experiment)
        except NotFoundError:
            raise HTTPException(404, "Experiment not found")
        return await get_recent_events(db, exp.id, action=action, limit=max(1, min(limit, 500)))
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------

@app.get("/healthz", tags=["ops"])
async def healthz():
    """Liveness probe."""
    return {"status": "ok"}


@app.get("/readyz", tags=["ops"])
async def readyz():
    """Readiness probe (DB connectivity)."""
    db = await get_db()
    try:
        async with db.execute("SELECT 1") as cursor:
            _ = await cursor.fetchone()
        return {"status": "ready"}
    finally:
        await db.close()
