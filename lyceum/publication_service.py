"""Publication service — submission screening, reviewer assignment, publish / reject transitions.

This service owns the publication lifecycle. SUBMITTED is the only
non-terminal state; both ways out of it go through one conditional UPDATE
keyed on ``status = 'SUBMITTED'``, so racing transitions have exactly one
winner.
"""

from __future__ import annotations

import random
from typing import Any, Literal

import aiosqlite

from lyceum.advisory import is_advisory, push_notification
from lyceum.agent_service import list_agents
from lyceum.audit_service import log_event
from lyceum.citation_service import (
    CitationExtraction,
    extract_citations,
    known_references,
    replace_citations_in_tx,
)
from lyceum.config import PolicyConfig
from lyceum.database import from_json, is_unique_violation, new_reference, now_iso, transaction
from lyceum.errors import (
    InvalidStateError,
    NotEnoughReviewersError,
    NotFoundError,
    PendingReviewsError,
    PersistenceConflict,
    PolicyNotSatisfiedError,
    ValidationError,
)
from lyceum.logging_config import get_logger
from lyceum.models import (
    Agent,
    AuditAction,
    Publication,
    PublicationStatus,
    PublicationStatusUpdated,
    PublicationSubmission,
)
from lyceum.policy_engine import PolicyDecision, PolicyOutcome, PublishPolicy, ThresholdPublishPolicy
from lyceum.review_service import (
    assign_reviewers_in_tx,
    count_pending_reviews,
    get_reviews_for_publication,
    select_reviewers,
)

logger = get_logger(__name__)

_REFERENCE_ATTEMPTS = 8

PublicationOrder = Literal["latest", "citations"]


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_publication(row: aiosqlite.Row | dict[str, Any]) -> Publication:
    """Convert a SQLite row to a Publication model."""
    d = dict(row)
    d["status"] = PublicationStatus(d["status"])
    d.pop("citations_count", None)
    d.pop("author_name", None)
    return Publication(**d)


# ---------------------------------------------------------------------------
# Screening
# ---------------------------------------------------------------------------

class ScreeningError:
    """A single validation failure from screening."""

    def __init__(self, rule: str, message: str):
        self.rule = rule
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"rule": self.rule, "message": self.message}


def screen_submission(submission: PublicationSubmission) -> list[ScreeningError]:
    """Check a submission before it is stored. Empty list = passed."""
    errors: list[ScreeningError] = []
    if not submission.title or not submission.title.strip():
        errors.append(ScreeningError("title_required", "Title is required"))
    if not submission.content or not submission.content.strip():
        errors.append(ScreeningError("content_required", "Content is required"))
    return errors


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def _insert_publication_in_tx(
    db: aiosqlite.Connection,
    author: Agent,
    submission: PublicationSubmission,
) -> Publication:
    publication = Publication(
        experiment_id=author.experiment_id,
        author_id=author.id,
        title=submission.title.strip(),
        abstract=submission.abstract,
        content=submission.content,
        reference=new_reference(),
    )
    cursor = await db.execute(
        """
        INSERT INTO publications (
            experiment_id, author_id, title, abstract, content, status, reference, created, updated
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            publication.experiment_id,
            publication.author_id,
            publication.title,
            publication.abstract,
            publication.content,
            publication.status.value,
            publication.reference,
            publication.created.isoformat(),
            publication.updated.isoformat(),
        ),
    )
    publication.id = cursor.lastrowid
    return publication


async def _create_publication(
    db: aiosqlite.Connection,
    author: Agent,
    submission: PublicationSubmission,
    reviewers: list[Agent] | None,
) -> tuple[Publication, CitationExtraction]:
    """Insert, cite, and optionally assign reviewers in one transaction.

    A reference collision rolls the whole transaction back and retries with a
    fresh reference.
    """
    known = await known_references(db, author.experiment_id)
    for attempt in range(1, _REFERENCE_ATTEMPTS + 1):
        try:
            async with transaction(db):
                publication = await _insert_publication_in_tx(db, author, submission)
                extraction = extract_citations(
                    publication.content, known, self_reference=publication.reference
                )
                await replace_citations_in_tx(db, publication, extraction.references)
                if reviewers is not None:
                    await assign_reviewers_in_tx(db, publication.id, reviewers)
                    publication.reviewers_requested = len(reviewers)
                await log_event(
                    db,
                    AuditAction.PUBLICATION_SUBMITTED,
                    experiment_id=author.experiment_id,
                    actor=author.name,
                    target_id=publication.id,
                    target_type="publication",
                    details={
                        "reference": publication.reference,
                        "title": publication.title,
                        "citations": sorted(extraction.references),
                        "unresolved": [u.reference for u in extraction.unresolved],
                    },
                )
            return publication, extraction
        except aiosqlite.IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
            logger.debug("reference_collision", attempt=attempt)
    raise InvalidStateError("Could not allocate a unique publication reference")


async def submit_publication(
    db: aiosqlite.Connection,
    author: Agent,
    submission: PublicationSubmission,
) -> tuple[Publication, CitationExtraction]:
    """
    Store a new publication in state SUBMITTED with a fresh reference.

    Outgoing citations are extracted from the content and recorded in the same
    transaction. Returns the publication and the extraction, whose
    ``unresolved`` entries are non-fatal diagnostics.
    """
    errors = screen_submission(submission)
    if errors:
        raise ValidationError(
            "; ".join(e.message for e in errors),
            {"screening": [e.to_dict() for e in errors]},
        )

    publication, extraction = await _create_publication(db, author, submission, reviewers=None)
    logger.info(
        "publication_submitted",
        author=author.name,
        reference=publication.reference,
        unresolved=len(extraction.unresolved),
    )
    return publication, extraction


async def submit_for_review(
    db: aiosqlite.Connection,
    author: Agent,
    submission: PublicationSubmission,
    reviewers: int,
    rng: random.Random | None = None,
    policy: PublishPolicy | None = None,
) -> tuple[Publication, CitationExtraction]:
    """
    Submit on behalf of a running agent and put the publication through review.

    1. Refuse if the author still owes reviews
    2. Advisory authors are published immediately, no reviewers assigned
    3. Otherwise pick up to ``reviewers`` other agents and request their reviews
    4. With nobody to wait for, decide right away
    """
    if await count_pending_reviews(db, author) > 0:
        raise PendingReviewsError(
            "You have pending reviews. Complete them before submitting a new publication."
        )

    errors = screen_submission(submission)
    if errors:
        raise ValidationError(
            "; ".join(e.message for e in errors),
            {"screening": [e.to_dict() for e in errors]},
        )

    if await is_advisory(db, author.experiment_id, author.name):
        publication, extraction = await _create_publication(db, author, submission, reviewers=None)
        publication = await publish_publication(db, publication.id, policy=policy)
        logger.info("publication_submitted", author=author.name, reference=publication.reference, advisory=True)
        return publication, extraction

    agents = await list_agents(db, author.experiment_id)
    selected = select_reviewers(author, agents, reviewers, rng=rng)
    if not selected and reviewers > 0:
        raise NotEnoughReviewersError(
            "Not enough reviewers available",
            {"requested": reviewers, "available": 0},
        )

    publication, extraction = await _create_publication(db, author, submission, reviewers=selected)
    logger.info(
        "publication_submitted",
        author=author.name,
        reference=publication.reference,
        reviewers=[r.name for r in selected],
        unresolved=len(extraction.unresolved),
    )
    if not selected:
        await maybe_publish_or_reject(db, publication.id, policy=policy)
        publication = await get_publication(db, publication.id)
    return publication, extraction


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

async def _experiment_policy(db: aiosqlite.Connection, experiment_id: int) -> PublishPolicy:
    async with db.execute("SELECT policy FROM experiments WHERE id = ?", (experiment_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Experiment", experiment_id)
    return ThresholdPublishPolicy(PolicyConfig(**(from_json(row[0]) or {})))


async def _load_for_transition(db: aiosqlite.Connection, publication_id: int) -> aiosqlite.Row:
    async with db.execute(
        """
        SELECT p.*, a.name AS author_name FROM publications p
        JOIN agents a ON a.id = p.author_id
        WHERE p.id = ?
        """,
        (publication_id,),
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Publication", publication_id)
    if row["status"] != PublicationStatus.SUBMITTED.value:
        raise InvalidStateError(
            f"Publication [{row['reference']}] is already {row['status']}",
            {"reference": row["reference"], "status": row["status"]},
        )
    return row


async def evaluate_publication(
    db: aiosqlite.Connection,
    publication_id: int,
    policy: PublishPolicy | None = None,
) -> PolicyDecision:
    """Run the publish policy over a publication's current reviews without transitioning it."""
    publication = await get_publication(db, publication_id)
    policy = policy or await _experiment_policy(db, publication.experiment_id)
    reviews = await get_reviews_for_publication(db, publication_id)
    return policy.evaluate(reviews, publication.reviewers_requested)


async def _transition_in_tx(
    db: aiosqlite.Connection,
    row: aiosqlite.Row,
    status: PublicationStatus,
    decision: PolicyDecision | None,
    advisory: bool = False,
) -> None:
    """Compare-and-swap SUBMITTED -> ``status``, then notify and audit."""
    cursor = await db.execute(
        "UPDATE publications SET status = ?, updated = ? WHERE id = ? AND status = ?",
        (status.value, now_iso(), row["id"], PublicationStatus.SUBMITTED.value),
    )
    if cursor.rowcount == 0:
        raise PersistenceConflict(
            f"Publication [{row['reference']}] was decided concurrently",
            {"reference": row["reference"]},
        )

    await push_notification(
        db,
        row["experiment_id"],
        row["author_name"],
        PublicationStatusUpdated(reference=row["reference"], title=row["title"], status=status),
    )
    action = (
        AuditAction.PUBLICATION_PUBLISHED
        if status == PublicationStatus.PUBLISHED
        else AuditAction.PUBLICATION_REJECTED
    )
    details: dict[str, Any] = {"reference": row["reference"], "advisory": advisory}
    if decision is not None:
        details["decision"] = decision.model_dump(mode="json")
    await log_event(
        db,
        action,
        experiment_id=row["experiment_id"],
        actor="system",
        target_id=row["id"],
        target_type="publication",
        details=details,
    )


async def publish_publication(
    db: aiosqlite.Connection,
    publication_id: int,
    policy: PublishPolicy | None = None,
) -> Publication:
    """
    Transition SUBMITTED -> PUBLISHED.

    Authors in the experiment's advisory registry publish with no reviews.
    Everyone else needs a PUBLISH decision from the policy, otherwise
    PolicyNotSatisfiedError. A publication that already left SUBMITTED raises
    InvalidStateError and nothing is written.
    """
    async with transaction(db):
        row = await _load_for_transition(db, publication_id)
        advisory = await is_advisory(db, row["experiment_id"], row["author_name"])
        decision: PolicyDecision | None = None
        if not advisory:
            policy = policy or await _experiment_policy(db, row["experiment_id"])
            reviews = await get_reviews_for_publication(db, publication_id)
            decision = policy.evaluate(reviews, row["reviewers_requested"])
            if decision.outcome != PolicyOutcome.PUBLISH:
                raise PolicyNotSatisfiedError(
                    f"Publication [{row['reference']}] cannot be published yet: {decision.explanation}",
                    {"reference": row["reference"], "outcome": decision.outcome.value},
                )

        publication = _row_to_publication(row)
        # references published since submission now resolve
        known = await known_references(db, row["experiment_id"])
        extraction = extract_citations(publication.content, known, self_reference=publication.reference)
        await replace_citations_in_tx(db, publication, extraction.references)
        await _transition_in_tx(db, row, PublicationStatus.PUBLISHED, decision, advisory=advisory)

    logger.info("publication_published", reference=row["reference"], advisory=advisory)
    return await get_publication(db, publication_id)


async def reject_publication(
    db: aiosqlite.Connection,
    publication_id: int,
    policy: PublishPolicy | None = None,
) -> Publication:
    """Transition SUBMITTED -> REJECTED when the policy's rejection condition holds. Terminal."""
    async with transaction(db):
        row = await _load_for_transition(db, publication_id)
        policy = policy or await _experiment_policy(db, row["experiment_id"])
        reviews = await get_reviews_for_publication(db, publication_id)
        decision = policy.evaluate(reviews, row["reviewers_requested"])
        if decision.outcome != PolicyOutcome.REJECT:
            raise PolicyNotSatisfiedError(
                f"Publication [{row['reference']}] cannot be rejected: {decision.explanation}",
                {"reference": row["reference"], "outcome": decision.outcome.value},
            )
        await _transition_in_tx(db, row, PublicationStatus.REJECTED, decision)

    logger.info("publication_rejected", reference=row["reference"], explanation=decision.explanation)
    return await get_publication(db, publication_id)


async def maybe_publish_or_reject(
    db: aiosqlite.Connection,
    publication_id: int,
    policy: PublishPolicy | None = None,
) -> PublicationStatus:
    """
    Apply the policy's verdict if it has one. Returns the resulting status.

    Losing a race to another decider is not an error here: the publication is
    decided either way.
    """
    publication = await get_publication(db, publication_id)
    if publication.status != PublicationStatus.SUBMITTED:
        return publication.status

    author = await _author_name(db, publication.author_id)
    try:
        if await is_advisory(db, publication.experiment_id, author):
            return (await publish_publication(db, publication_id, policy=policy)).status
        decision = await evaluate_publication(db, publication_id, policy=policy)
        if decision.outcome == PolicyOutcome.PUBLISH:
            return (await publish_publication(db, publication_id, policy=policy)).status
        if decision.outcome == PolicyOutcome.REJECT:
            return (await reject_publication(db, publication_id, policy=policy)).status
    except InvalidStateError:
        # decided by someone else, or reviews changed between evaluation and transition
        logger.debug("decision_lost_race", publication_id=publication_id)
    return (await get_publication(db, publication_id)).status


async def _author_name(db: aiosqlite.Connection, agent_id: int) -> str:
    async with db.execute("SELECT name FROM agents WHERE id = ?", (agent_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Agent", agent_id)
    return row[0]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_publication(db: aiosqlite.Connection, publication_id: int) -> Publication:
    async with db.execute("SELECT * FROM publications WHERE id = ?", (publication_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Publication", publication_id)
    return _row_to_publication(row)


async def find_publication(
    db: aiosqlite.Connection,
    experiment_id: int,
    reference: str,
) -> Publication:
    """Look up a publication by its reference, case-insensitively."""
    async with db.execute(
        "SELECT * FROM publications WHERE experiment_id = ? AND reference = ?",
        (experiment_id, reference.strip().strip("[]").lower()),
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Publication", reference)
    return _row_to_publication(row)


async def list_publications(
    db: aiosqlite.Connection,
    experiment_id: int,
    status: PublicationStatus | None = PublicationStatus.PUBLISHED,
    order: PublicationOrder = "latest",
    limit: int = 20,
    offset: int = 0,
) -> list[Publication]:
    """List publications, newest first or most cited first."""
    conditions = ["p.experiment_id = ?"]
    params: list[Any] = [experiment_id]
    if status is not None:
        conditions.append("p.status = ?")
        params.append(status.value)
    where = " AND ".join(conditions)

    if order == "citations":
        order_by = "citations_count DESC, p.created DESC, p.id DESC"
    else:
        order_by = "p.created DESC, p.id DESC"

    async with db.execute(
        f"""
        SELECT p.*, COUNT(c.from_id) AS citations_count
        FROM publications p
        LEFT JOIN citations c ON c.to_id = p.id
        WHERE {where}
        GROUP BY p.id
        ORDER BY {order_by}
        LIMIT ? OFFSET ?
        """,
        [*params, limit, offset],
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_publication(row) for row in rows]


async def list_by_author(db: aiosqlite.Connection, author: Agent) -> list[Publication]:
    async with db.execute(
        "SELECT * FROM publications WHERE author_id = ? ORDER BY created DESC, id DESC",
        (author.id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_publication(row) for row in rows]


async def list_review_requests(db: aiosqlite.Connection, reviewer: Agent) -> list[Publication]:
    """SUBMITTED publications still waiting for ``reviewer``'s review."""
    async with db.execute(
        """
        SELECT p.* FROM review_requests rr
        JOIN publications p ON p.id = rr.publication_id
        LEFT JOIN reviews r ON r.publication_id = rr.publication_id AND r.author_id = rr.reviewer_id
        WHERE rr.reviewer_id = ? AND p.status = ? AND r.id IS NULL
        ORDER BY p.created, p.id
        """,
        (reviewer.id, PublicationStatus.SUBMITTED.value),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_publication(row) for row in rows]


async def status_counts(db: aiosqlite.Connection, experiment_id: int) -> dict[str, int]:
    async with db.execute(
        "SELECT status, COUNT(*) FROM publications WHERE experiment_id = ? GROUP BY status",
        (experiment_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    counts = {s.value: 0 for s in PublicationStatus}
    counts.update({row[0]: row[1] for row in rows})
    return counts
