"""Policy engine — deterministic, explainable publish / reject decisions.

Every review-driven transition of a publication goes through a
:class:`PublishPolicy`. The default :class:`ThresholdPublishPolicy` is built
from the experiment's :class:`~lyceum.config.PolicyConfig`; callers may inject
any other object with the same ``evaluate`` method.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from lyceum.config import PolicyConfig
from lyceum.models import Review, ReviewGrade


class PolicyOutcome(str, Enum):
    PUBLISH = "publish"
    REJECT = "reject"
    PENDING = "pending"


class PolicyRuleEvaluation(BaseModel):
    """One rule evaluation in a decision — makes decisions explainable."""

    rule_name: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    result: bool = False
    explanation: str = ""


class PolicyDecision(BaseModel):
    outcome: PolicyOutcome
    rule_evaluations: list[PolicyRuleEvaluation] = Field(default_factory=list)
    review_summary: dict[str, Any] = Field(default_factory=dict)
    explanation: str = ""


class PublishPolicy(Protocol):
    def evaluate(self, reviews: Sequence[Review], requested: int | None) -> PolicyDecision:
        """Decide a SUBMITTED publication given its reviews.

        ``requested`` is the number of reviewers assigned to it, or ``None``
        if reviewers were never assigned.
        """
        ...


# ---------------------------------------------------------------------------
# Policy rules (each is a pure function returning a PolicyRuleEvaluation)
# ---------------------------------------------------------------------------

def _rule_reviews_complete(received: int, requested: int | None, require_all: bool) -> PolicyRuleEvaluation:
    """Check every requested reviewer has graded."""
    expected = requested or 0
    passed = (not require_all) or received >= expected
    return PolicyRuleEvaluation(
        rule_name="reviews_complete",
        input_data={"received": received, "requested": requested, "require_all": require_all},
        result=passed,
        explanation=f"{'Complete' if passed else 'Waiting'}: {received}/{expected} requested reviews received",
    )


def _required_accepts(min_accepts: int, requested: int | None) -> int:
    if requested is None:
        return min_accepts
    return min(min_accepts, requested)


def _rule_min_accepts(accepts: int, required: int) -> PolicyRuleEvaluation:
    passed = accepts >= required
    return PolicyRuleEvaluation(
        rule_name="minimum_accepts",
        input_data={"accepts": accepts, "required": required},
        result=passed,
        explanation=f"{'Met' if passed else 'Not met'}: {accepts}/{required} accepting reviews",
    )


def _rule_no_strong_reject(strong_rejects: int, veto: bool) -> PolicyRuleEvaluation:
    passed = not (veto and strong_rejects > 0)
    return PolicyRuleEvaluation(
        rule_name="no_strong_reject_veto",
        input_data={"strong_rejects": strong_rejects, "veto_enabled": veto},
        result=passed,
        explanation="OK" if passed else f"FAIL: vetoed by {strong_rejects} STRONG_REJECT",
    )


def _rule_reject_limit(rejects: int, max_rejects: int) -> PolicyRuleEvaluation:
    passed = rejects <= max_rejects
    return PolicyRuleEvaluation(
        rule_name="reject_limit",
        input_data={"rejects": rejects, "max_rejects": max_rejects},
        result=passed,
        explanation=f"{'OK' if passed else 'EXCEEDED'}: {rejects} rejecting reviews, {max_rejects} tolerated",
    )


# ---------------------------------------------------------------------------
# Default policy
# ---------------------------------------------------------------------------

def summarize_grades(reviews: Sequence[Review]) -> dict[str, int]:
    grades = [r.grade for r in reviews]
    return {
        "received": len(grades),
        "accepts": sum(1 for g in grades if g.is_accept),
        "rejects": sum(1 for g in grades if g == ReviewGrade.REJECT),
        "strong_rejects": sum(1 for g in grades if g == ReviewGrade.STRONG_REJECT),
    }


class ThresholdPublishPolicy:
    """Minimum accepts, bounded rejects, optional STRONG_REJECT veto."""

    def __init__(self, config: PolicyConfig | None = None) -> None:
        self.config = config or PolicyConfig()

    def evaluate(self, reviews: Sequence[Review], requested: int | None) -> PolicyDecision:
        cfg = self.config
        summary = summarize_grades(reviews)
        # STRONG_REJECT counts against the reject limit only when it does not veto outright
        rejects = summary["rejects"] + (0 if cfg.strong_reject_veto else summary["strong_rejects"])

        complete = _rule_reviews_complete(summary["received"], requested, cfg.require_all_requested)
        accepts = _rule_min_accepts(summary["accepts"], _required_accepts(cfg.min_accepts, requested))
        veto = _rule_no_strong_reject(summary["strong_rejects"], cfg.strong_reject_veto)
        limit = _rule_reject_limit(rejects, cfg.max_rejects)
        rules = [complete, accepts, veto, limit]

        if not complete.result:
            outcome = PolicyOutcome.PENDING
            explanation = complete.explanation
        elif not veto.result or not limit.result:
            outcome = PolicyOutcome.REJECT
            explanation = "; ".join(r.explanation for r in (veto, limit) if not r.result)
        elif accepts.result:
            outcome = PolicyOutcome.PUBLISH
            explanation = "All criteria met"
        else:
            outcome = PolicyOutcome.PENDING
            explanation = accepts.explanation

        return PolicyDecision(
            outcome=outcome,
            rule_evaluations=rules,
            review_summary={**summary, "requested": requested},
            explanation=explanation,
        )
