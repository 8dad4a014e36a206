"""Solution nominations, support tally, resolution events."""

import pytest

from lyceum.advisory import register_advisory
from lyceum.errors import InvalidStateError, NotFoundError, ValidationError
from lyceum.models import PublicationSubmission, SolutionReason
from lyceum.publication_service import submit_for_review, submit_publication
from lyceum.solution_service import (
    current_resolution,
    current_solution,
    declare_resolution,
    list_current_solutions,
    nominate,
    resolution_history,
    solution_history,
    support,
    support_tally,
)


@pytest.fixture
async def published(db, experiment, agents):
    """Two published publications by alice."""
    alice = agents[0]
    await register_advisory(db, experiment.id, alice.name)
    first, _ = await submit_for_review(db, alice, PublicationSubmission(title="P1", content="one"), reviewers=0)
    second, _ = await submit_for_review(db, alice, PublicationSubmission(title="P2", content="two"), reviewers=0)
    return first, second


class TestNominations:
    async def test_moving_a_vote_moves_support(self, db, agents, published):
        p1, p2 = published
        x = agents[1]
        await nominate(db, x, p1.id, SolutionReason.NO_PREVIOUS, "first find")
        before = (await support(db, p1.id), await support(db, p2.id))

        await nominate(db, x, p2.id, SolutionReason.PREVIOUS_IMPROVED, "better")
        after = (await support(db, p1.id), await support(db, p2.id))

        assert after[0] == before[0] - 1
        assert after[1] == before[1] + 1
        assert (await current_solution(db, x)).publication_id == p2.id

    async def test_history_is_append_only(self, db, agents, published):
        p1, p2 = published
        x = agents[1]
        await nominate(db, x, p1.id, SolutionReason.NO_PREVIOUS)
        await nominate(db, x, p2.id, SolutionReason.NEW_APPROACH)
        await nominate(db, x, None, SolutionReason.PREVIOUS_WRONG, "both wrong")

        history = await solution_history(db, x)
        assert [s.publication_id for s in history] == [p1.id, p2.id, None]
        assert (await current_solution(db, x)).publication_id is None
        assert await support(db, p2.id) == 0

    async def test_tally(self, db, agents, published):
        p1, p2 = published
        alice, bob, carol = agents
        await nominate(db, alice, p1.id, SolutionReason.NO_PREVIOUS)
        await nominate(db, bob, p1.id, SolutionReason.NO_PREVIOUS)
        await nominate(db, carol, p2.id, SolutionReason.NO_PREVIOUS)
        await nominate(db, carol, p1.id, SolutionReason.PREVIOUS_WRONG)

        tally = await support_tally(db, p1.experiment_id)
        assert [(row["reference"], row["support"]) for row in tally] == [(p1.reference, 3)]
        assert len(await list_current_solutions(db, p1.experiment_id)) == 3

    async def test_no_current_solution(self, db, agents):
        assert await current_solution(db, agents[0]) is None

    async def test_only_published_can_be_nominated(self, db, agents):
        alice, bob, _ = agents
        pending, _ = await submit_publication(db, alice, PublicationSubmission(title="T", content="c"))
        with pytest.raises(InvalidStateError):
            await nominate(db, bob, pending.id, SolutionReason.NO_PREVIOUS)
        assert await solution_history(db, bob) == []

    async def test_unknown_publication(self, db, agents):
        with pytest.raises(NotFoundError):
            await nominate(db, agents[0], 999, SolutionReason.NO_PREVIOUS)

    async def test_unknown_reason(self, db, agents, published):
        with pytest.raises(ValidationError):
            await nominate(db, agents[0], published[0].id, "BECAUSE")


class TestResolution:
    async def test_latest_declaration_wins(self, db, experiment, published):
        p1, p2 = published
        assert await current_resolution(db, experiment.id) is None
        await declare_resolution(db, experiment.id, p1.reference, "first")
        await declare_resolution(db, experiment.id, p2.reference, "second")

        assert (await current_resolution(db, experiment.id)).publication_reference == p2.reference
        assert [r.rationale for r in await resolution_history(db, experiment.id)] == ["first", "second"]

    async def test_unknown_reference(self, db, experiment):
        with pytest.raises(NotFoundError):
            await declare_resolution(db, experiment.id, "zzzz")
