"""Review service — graded peer reviews, reviewer assignment, pending review queues."""

from __future__ import annotations

import random
from collections.abc import Sequence
from typing import Any

import aiosqlite

from lyceum.advisory import push_notification
from lyceum.audit_service import log_event
from lyceum.database import is_unique_violation, now_iso, transaction
from lyceum.errors import (
    DuplicateReviewError,
    InvalidStateError,
    NotFoundError,
    SelfReviewError,
    ValidationError,
)
from lyceum.logging_config import get_logger
from lyceum.models import (
    Agent,
    AuditAction,
    PublicationStatus,
    Review,
    ReviewGrade,
    ReviewReceived,
    ReviewRequested,
)

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_review(row: aiosqlite.Row | dict[str, Any]) -> Review:
    d = dict(row)
    d["grade"] = ReviewGrade(d["grade"])
    return Review(**d)


# ---------------------------------------------------------------------------
# Submit review
# ---------------------------------------------------------------------------

async def submit_review(
    db: aiosqlite.Connection,
    reviewer: Agent,
    publication_id: int,
    grade: ReviewGrade | str,
    content: str,
) -> Review:
    """
    Record ``reviewer``'s assessment of a publication.

    Raises SelfReviewError for the author, DuplicateReviewError for a second
    review by the same agent (enforced by the reviews UNIQUE constraint), and
    InvalidStateError once the publication has left SUBMITTED, or when reviewers
    were assigned and ``reviewer`` is not one of them.
    """
    try:
        grade = ReviewGrade(grade)
    except ValueError as exc:
        raise ValidationError(f"Unknown grade: {grade}") from exc

    async with transaction(db):
        async with db.execute(
            """
            SELECT p.experiment_id, p.author_id, p.status, p.reference, p.title,
                   p.reviewers_requested, a.name AS author_name, rr.reviewer_id AS requested_reviewer
            FROM publications p
            JOIN agents a ON a.id = p.author_id
            LEFT JOIN review_requests rr ON rr.publication_id = p.id AND rr.reviewer_id = ?
            WHERE p.id = ?
            """,
            (reviewer.id, publication_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError("Publication", publication_id)
        if row["experiment_id"] != reviewer.experiment_id:
            raise NotFoundError("Publication", publication_id)
        if row["author_id"] == reviewer.id:
            raise SelfReviewError(
                "Authors cannot review their own publication",
                {"reference": row["reference"]},
            )
        if row["status"] != PublicationStatus.SUBMITTED.value:
            raise InvalidStateError(
                f"Publication [{row['reference']}] is {row['status']}, reviews are closed",
                {"reference": row["reference"], "status": row["status"]},
            )
        # once reviewers are assigned, only they may grade
        if row["reviewers_requested"] is not None and row["requested_reviewer"] is None:
            raise InvalidStateError(
                f"Review submitted does not match any review request for [{row['reference']}]",
                {"reference": row["reference"], "reviewer": reviewer.name},
            )

        review = Review(
            experiment_id=reviewer.experiment_id,
            publication_id=publication_id,
            author_id=reviewer.id,
            grade=grade,
            content=content,
        )
        try:
            cursor = await db.execute(
                """
                INSERT INTO reviews (experiment_id, publication_id, author_id, grade, content, created, updated)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    review.experiment_id,
                    review.publication_id,
                    review.author_id,
                    review.grade.value,
                    review.content,
                    review.created.isoformat(),
                    review.updated.isoformat(),
                ),
            )
        except aiosqlite.IntegrityError as exc:
            if is_unique_violation(exc):
                raise DuplicateReviewError(
                    f"{reviewer.name} already reviewed [{row['reference']}]",
                    {"reference": row["reference"], "reviewer": reviewer.name},
                ) from exc
            raise
        review.id = cursor.lastrowid

        await push_notification(
            db,
            reviewer.experiment_id,
            row["author_name"],
            ReviewReceived(
                reference=row["reference"],
                title=row["title"],
                grade=grade,
                author=reviewer.name,
            ),
        )
        await log_event(
            db,
            AuditAction.REVIEW_SUBMITTED,
            experiment_id=reviewer.experiment_id,
            actor=reviewer.name,
            target_id=publication_id,
            target_type="publication",
            details={"review_id": review.id, "grade": grade.value},
        )

    logger.info(
        "review_submitted",
        reviewer=reviewer.name,
        publication=row["reference"],
        grade=grade.value,
    )
    return review


# ---------------------------------------------------------------------------
# Reviewer assignment
# ---------------------------------------------------------------------------

def reviewer_count(total_agents: int, configured: int) -> int:
    """Reviewers to request for one publication: never the author, never more than configured."""
    return max(0, min(total_agents - 1, configured))


def select_reviewers(
    author: Agent,
    agents: Sequence[Agent],
    configured: int,
    rng: random.Random | None = None,
) -> list[Agent]:
    """Pick ``reviewer_count`` distinct agents other than the author, uniformly at random."""
    pool = [a for a in agents if a.id != author.id]
    count = reviewer_count(len(pool) + 1, configured)
    return (rng or random).sample(pool, count)


async def assign_reviewers_in_tx(
    db: aiosqlite.Connection,
    publication_id: int,
    reviewers: Sequence[Agent],
) -> None:
    """Record review obligations and notify reviewers. Caller owns the transaction."""
    async with db.execute(
        "SELECT experiment_id, reference, title, reviewers_requested FROM publications WHERE id = ?",
        (publication_id,),
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Publication", publication_id)
    if row["reviewers_requested"] is not None:
        raise InvalidStateError(
            f"Reviewers already assigned to [{row['reference']}]",
            {"reference": row["reference"]},
        )

    now = now_iso()
    await db.executemany(
        "INSERT INTO review_requests (experiment_id, publication_id, reviewer_id, created) VALUES (?, ?, ?, ?)",
        [(row["experiment_id"], publication_id, r.id, now) for r in reviewers],
    )
    await db.execute(
        "UPDATE publications SET reviewers_requested = ? WHERE id = ?",
        (len(reviewers), publication_id),
    )
    for reviewer in reviewers:
        await push_notification(
            db,
            row["experiment_id"],
            reviewer.name,
            ReviewRequested(reference=row["reference"], title=row["title"]),
        )
    await log_event(
        db,
        AuditAction.REVIEWERS_ASSIGNED,
        experiment_id=row["experiment_id"],
        actor="system",
        target_id=publication_id,
        target_type="publication",
        details={"reviewers": [r.name for r in reviewers]},
    )


# ---------------------------------------------------------------------------
# Query reviews
# ---------------------------------------------------------------------------

async def get_reviews_for_publication(
    db: aiosqlite.Connection,
    publication_id: int,
) -> list[Review]:
    async with db.execute(
        "SELECT * FROM reviews WHERE publication_id = ? ORDER BY created, id",
        (publication_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_review(row) for row in rows]


async def get_review_rows(
    db: aiosqlite.Connection,
    publication_id: int,
) -> list[dict[str, Any]]:
    """Reviews joined with reviewer names, for rendering."""
    async with db.execute(
        """
        SELECT r.*, a.name AS reviewer FROM reviews r
        JOIN agents a ON a.id = r.author_id
        WHERE r.publication_id = ?
        ORDER BY r.created, r.id
        """,
        (publication_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


async def count_pending_reviews(db: aiosqlite.Connection, reviewer: Agent) -> int:
    """Review requests addressed to ``reviewer`` on SUBMITTED publications it has not reviewed yet."""
    async with db.execute(
        """
        SELECT COUNT(*) FROM review_requests rr
        JOIN publications p ON p.id = rr.publication_id
        LEFT JOIN reviews r ON r.publication_id = rr.publication_id AND r.author_id = rr.reviewer_id
        WHERE rr.reviewer_id = ? AND p.status = ? AND r.id IS NULL
        """,
        (reviewer.id, PublicationStatus.SUBMITTED.value),
    ) as cursor:
        return (await cursor.fetchone())[0]


async def get_review_queue(
    db: aiosqlite.Connection,
    experiment_id: int,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """SUBMITTED publications with how many reviews they have and how many were requested."""
    async with db.execute(
        """
        SELECT p.reference, p.title, p.reviewers_requested, p.created,
               COUNT(r.id) AS review_count
        FROM publications p
        LEFT JOIN reviews r ON r.publication_id = p.id
        WHERE p.experiment_id = ? AND p.status = ?
        GROUP BY p.id
        ORDER BY review_count ASC, p.created ASC
        LIMIT ?
        """,
        (experiment_id, PublicationStatus.SUBMITTED.value, limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]
