"""Publication lifecycle: submission, review, publish / reject transitions."""

from __future__ import annotations

import asyncio
import random

import pytest

from lyceum.advisory import pop_notifications, register_advisory
from lyceum.agent_service import create_agent
from lyceum.database import get_db
from lyceum.errors import (
    DuplicateReviewError,
    InvalidStateError,
    NotEnoughReviewersError,
    NotFoundError,
    PendingReviewsError,
    PolicyNotSatisfiedError,
    SelfReviewError,
    ValidationError,
)
from lyceum.experiment_service import create_experiment
from lyceum.models import (
    AgentCreate,
    ExperimentCreate,
    PublicationStatus,
    PublicationStatusUpdated,
    PublicationSubmission,
    ReviewGrade,
    ReviewRequested,
)
from lyceum.publication_service import (
    find_publication,
    get_publication,
    list_publications,
    list_review_requests,
    maybe_publish_or_reject,
    publish_publication,
    reject_publication,
    screen_submission,
    status_counts,
    submit_for_review,
    submit_publication,
)
from lyceum.review_service import (
    count_pending_reviews,
    get_reviews_for_publication,
    reviewer_count,
    select_reviewers,
    submit_review,
)

SUBMISSION = PublicationSubmission(title="Heap overflow in parser", abstract="A bug.", content="Details.")


class TestScreening:
    def test_valid_submission_passes(self):
        assert screen_submission(SUBMISSION) == []

    def test_missing_title_and_content(self):
        errors = screen_submission(PublicationSubmission(title="  ", content=""))
        assert {e.rule for e in errors} == {"title_required", "content_required"}

    async def test_submit_rejects_invalid_input(self, db, agents):
        with pytest.raises(ValidationError) as exc_info:
            await submit_publication(db, agents[0], PublicationSubmission(title="", content="x"))
        assert exc_info.value.details["screening"][0]["rule"] == "title_required"


class TestAdvisoryPublish:
    async def test_advisory_author_publishes_without_reviews(self, db, experiment, agents):
        alice = agents[0]
        await register_advisory(db, experiment.id, alice.name)

        publication, _ = await submit_publication(db, alice, SUBMISSION)
        assert publication.status == PublicationStatus.SUBMITTED

        published = await publish_publication(db, publication.id)
        assert published.status == PublicationStatus.PUBLISHED
        assert await get_reviews_for_publication(db, publication.id) == []

    async def test_advisory_submit_for_review_skips_reviewers(self, db, experiment, agents):
        alice = agents[0]
        await register_advisory(db, experiment.id, alice.name)
        publication, _ = await submit_for_review(db, alice, SUBMISSION, reviewers=2)
        assert publication.status == PublicationStatus.PUBLISHED
        assert publication.reviewers_requested is None
        for other in agents[1:]:
            assert await count_pending_reviews(db, other) == 0

    async def test_registry_is_per_experiment(self, db, experiment, agents):
        other = await create_experiment(db, ExperimentCreate(name="other", problem="p"))
        twin = await create_agent(db, other.id, AgentCreate(name="alice"))
        await register_advisory(db, experiment.id, "alice")

        publication, _ = await submit_publication(db, twin, SUBMISSION)
        with pytest.raises(PolicyNotSatisfiedError):
            await publish_publication(db, publication.id)


class TestTransitions:
    async def test_publish_twice_fails_second_time(self, db, experiment, agents):
        alice = agents[0]
        await register_advisory(db, experiment.id, alice.name)
        publication, _ = await submit_publication(db, alice, SUBMISSION)

        first = await publish_publication(db, publication.id)
        with pytest.raises(InvalidStateError):
            await publish_publication(db, publication.id)
        assert (await get_publication(db, publication.id)).status == first.status

    async def test_publish_without_reviews_is_refused(self, db, agents):
        publication, _ = await submit_publication(db, agents[0], SUBMISSION)
        with pytest.raises(PolicyNotSatisfiedError):
            await publish_publication(db, publication.id)
        assert (await get_publication(db, publication.id)).status == PublicationStatus.SUBMITTED

    async def test_policy_refusal_is_an_invalid_state(self, db, agents):
        publication, _ = await submit_publication(db, agents[0], SUBMISSION)
        with pytest.raises(InvalidStateError):
            await reject_publication(db, publication.id)

    async def test_rejected_is_terminal(self, db, agents):
        alice, bob, carol = agents
        publication, _ = await submit_for_review(db, alice, SUBMISSION, reviewers=2, rng=random.Random(0))
        await submit_review(db, bob, publication.id, ReviewGrade.REJECT, "wrong")
        assert await maybe_publish_or_reject(db, publication.id) == PublicationStatus.SUBMITTED
        await submit_review(db, carol, publication.id, ReviewGrade.ACCEPT, "fine")
        assert await maybe_publish_or_reject(db, publication.id) == PublicationStatus.REJECTED

        with pytest.raises(InvalidStateError):
            await publish_publication(db, publication.id)
        assert (await get_publication(db, publication.id)).status == PublicationStatus.REJECTED


class TestReviewFlow:
    async def test_reviewers_are_requested_and_notified(self, db, experiment, agents):
        alice, bob, carol = agents
        publication, _ = await submit_for_review(db, alice, SUBMISSION, reviewers=4, rng=random.Random(1))

        # capped at the number of other agents
        assert publication.reviewers_requested == 2
        assert [p.id for p in await list_review_requests(db, bob)] == [publication.id]
        assert await count_pending_reviews(db, alice) == 0

        notifications = await pop_notifications(db, experiment.id, "carol")
        assert notifications == [ReviewRequested(reference=publication.reference, title=publication.title)]
        assert await pop_notifications(db, experiment.id, "carol") == []

    async def test_accepting_reviews_publish(self, db, experiment, agents):
        alice, bob, carol = agents
        publication, _ = await submit_for_review(db, alice, SUBMISSION, reviewers=2)
        await submit_review(db, bob, publication.id, ReviewGrade.ACCEPT, "good")
        assert await maybe_publish_or_reject(db, publication.id) == PublicationStatus.SUBMITTED
        await submit_review(db, carol, publication.id, ReviewGrade.STRONG_ACCEPT, "great")
        assert await maybe_publish_or_reject(db, publication.id) == PublicationStatus.PUBLISHED

        notifications = await pop_notifications(db, experiment.id, "alice")
        assert notifications[-1] == PublicationStatusUpdated(
            reference=publication.reference,
            title=publication.title,
            status=PublicationStatus.PUBLISHED,
        )
        assert await list_review_requests(db, bob) == []

    async def test_only_requested_reviewers_decide(self, db, experiment, agents):
        alice = agents[0]
        dave = await create_agent(db, experiment.id, AgentCreate(name="dave"))
        publication, _ = await submit_for_review(db, alice, SUBMISSION, reviewers=2, rng=random.Random(0))

        others = [*agents[1:], dave]
        requested = [a for a in others if await list_review_requests(db, a)]
        outsider = next(a for a in others if a.id not in {r.id for r in requested})
        assert len(requested) == 2

        with pytest.raises(InvalidStateError):
            await submit_review(db, outsider, publication.id, ReviewGrade.STRONG_REJECT, "uninvited")
        await submit_review(db, requested[0], publication.id, ReviewGrade.STRONG_ACCEPT, "great")
        assert await maybe_publish_or_reject(db, publication.id) == PublicationStatus.SUBMITTED

        await submit_review(db, requested[1], publication.id, ReviewGrade.ACCEPT, "good")
        assert await maybe_publish_or_reject(db, publication.id) == PublicationStatus.PUBLISHED
        assert len(await get_reviews_for_publication(db, publication.id)) == 2

    async def test_unassigned_publication_takes_any_reviewer(self, db, agents):
        alice, bob, _ = agents
        publication, _ = await submit_publication(db, alice, SUBMISSION)
        review = await submit_review(db, bob, publication.id, ReviewGrade.ACCEPT, "unprompted")
        assert review.publication_id == publication.id

    async def test_pending_reviews_block_submission(self, db, agents):
        alice, bob, _ = agents
        await submit_for_review(db, alice, SUBMISSION, reviewers=2)
        with pytest.raises(PendingReviewsError):
            await submit_for_review(db, bob, SUBMISSION, reviewers=2)

    async def test_zero_reviewers_publishes_immediately(self, db, agents):
        publication, _ = await submit_for_review(db, agents[0], SUBMISSION, reviewers=0)
        assert publication.status == PublicationStatus.PUBLISHED
        assert publication.reviewers_requested == 0

    async def test_lone_agent_cannot_be_reviewed(self, db, experiment):
        solo = await create_agent(db, experiment.id, AgentCreate(name="solo"))
        with pytest.raises(NotEnoughReviewersError):
            await submit_for_review(db, solo, SUBMISSION, reviewers=3)
        assert (await status_counts(db, experiment.id))["SUBMITTED"] == 0

    async def test_duplicate_review(self, db, agents):
        alice, bob, _ = agents
        publication, _ = await submit_publication(db, alice, SUBMISSION)
        await submit_review(db, bob, publication.id, ReviewGrade.ACCEPT, "ok")
        with pytest.raises(DuplicateReviewError):
            await submit_review(db, bob, publication.id, ReviewGrade.REJECT, "changed my mind")
        assert len(await get_reviews_for_publication(db, publication.id)) == 1

    async def test_self_review(self, db, agents):
        alice = agents[0]
        publication, _ = await submit_publication(db, alice, SUBMISSION)
        with pytest.raises(SelfReviewError):
            await submit_review(db, alice, publication.id, ReviewGrade.STRONG_ACCEPT, "mine")

    async def test_review_after_decision(self, db, experiment, agents):
        alice, bob, _ = agents
        await register_advisory(db, experiment.id, alice.name)
        publication, _ = await submit_for_review(db, alice, SUBMISSION, reviewers=2)
        with pytest.raises(InvalidStateError):
            await submit_review(db, bob, publication.id, ReviewGrade.ACCEPT, "late")

    async def test_review_from_another_experiment(self, db, agents):
        publication, _ = await submit_publication(db, agents[0], SUBMISSION)
        other = await create_experiment(db, ExperimentCreate(name="other", problem="p"))
        outsider = await create_agent(db, other.id, AgentCreate(name="outsider"))
        with pytest.raises(NotFoundError):
            await submit_review(db, outsider, publication.id, ReviewGrade.ACCEPT, "hi")

    async def test_unknown_grade(self, db, agents):
        publication, _ = await submit_publication(db, agents[0], SUBMISSION)
        with pytest.raises(ValidationError):
            await submit_review(db, agents[1], publication.id, "MAYBE", "unsure")


class TestReviewerSelection:
    def test_reviewer_count(self):
        assert reviewer_count(5, 3) == 3
        assert reviewer_count(3, 4) == 2
        assert reviewer_count(1, 4) == 0
        assert reviewer_count(0, 2) == 0

    async def test_never_selects_author(self, agents):
        alice = agents[0]
        rng = random.Random(7)
        for _ in range(20):
            selected = select_reviewers(alice, agents, 2, rng=rng)
            assert alice.id not in {a.id for a in selected}
            assert len({a.id for a in selected}) == 2


class TestQueries:
    async def test_find_publication_accepts_brackets(self, db, agents):
        publication, _ = await submit_publication(db, agents[0], SUBMISSION)
        found = await find_publication(db, agents[0].experiment_id, f"[{publication.reference.upper()}]")
        assert found.id == publication.id

    async def test_list_by_citations(self, db, experiment, agents):
        alice = agents[0]
        await register_advisory(db, experiment.id, alice.name)
        a, _ = await submit_for_review(db, alice, PublicationSubmission(title="A", content="a"), reviewers=0)
        b, _ = await submit_for_review(db, alice, PublicationSubmission(title="B", content="b"), reviewers=0)
        await submit_for_review(
            db, alice, PublicationSubmission(title="C", content=f"[{a.reference}]"), reviewers=0
        )

        latest = await list_publications(db, experiment.id, order="latest")
        assert [p.title for p in latest] == ["C", "B", "A"]
        cited = await list_publications(db, experiment.id, order="citations", limit=1)
        assert cited[0].id == a.id
        assert b.id not in {p.id for p in cited}


class TestConcurrency:
    async def _setup(self, db):
        exp = await create_experiment(db, ExperimentCreate(name="race", problem="p"))
        agents = [await create_agent(db, exp.id, AgentCreate(name=n)) for n in ("alice", "bob", "carol")]
        return exp, agents

    async def test_racing_publishes_have_one_winner(self, file_db, db_path):
        exp, (alice, _, _) = await self._setup(file_db)
        await register_advisory(file_db, exp.id, alice.name)
        publication, _ = await submit_publication(file_db, alice, SUBMISSION)

        other = await get_db(db_path)
        try:
            results = await asyncio.gather(
                publish_publication(file_db, publication.id),
                publish_publication(other, publication.id),
                return_exceptions=True,
            )
        finally:
            await other.close()

        published = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(published) == 1
        assert published[0].status == PublicationStatus.PUBLISHED
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateError)

    async def test_racing_duplicate_reviews_have_one_winner(self, file_db, db_path):
        _, (alice, bob, _) = await self._setup(file_db)
        publication, _ = await submit_publication(file_db, alice, SUBMISSION)

        other = await get_db(db_path)
        try:
            results = await asyncio.gather(
                submit_review(file_db, bob, publication.id, ReviewGrade.ACCEPT, "one"),
                submit_review(other, bob, publication.id, ReviewGrade.ACCEPT, "two"),
                return_exceptions=True,
            )
        finally:
            await other.close()

        assert sum(isinstance(r, DuplicateReviewError) for r in results) == 1
        assert len(await get_reviews_for_publication(file_db, publication.id)) == 1
