"""Error taxonomy for the publish / review / solution engine.

Data-integrity errors are reported back to the originating agent as a tool
failure. Scheduling and provider errors are consumed by the runner. Nothing in
here aborts an experiment run on its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable error codes, shared by exceptions and result values."""

    VALIDATION = "validation_error"
    INVALID_STATE = "invalid_state_error"
    POLICY_NOT_SATISFIED = "policy_not_satisfied_error"
    PERSISTENCE_CONFLICT = "persistence_conflict"
    SELF_REVIEW = "self_review_error"
    DUPLICATE_REVIEW = "duplicate_review_error"
    NOT_FOUND = "not_found_error"
    PENDING_REVIEWS = "pending_reviews_error"
    NOT_ENOUGH_REVIEWERS = "not_enough_reviewers_error"
    UNKNOWN_CITATION_TARGET = "unknown_citation_target"
    BUDGET_EXCEEDED = "budget_exceeded"
    PROVIDER_TRANSIENT = "provider_transient_error"
    PROVIDER = "provider_error"
    SANDBOX = "sandbox_error"


class LyceumError(Exception):
    """Base exception for all Lyceum errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def code(self) -> str:
        return self.kind.value

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# ---------------------------------------------------------------------------
# Data integrity: rejected immediately, never retried
# ---------------------------------------------------------------------------

class DataIntegrityError(LyceumError):
    """A request that would violate an invariant of the stored data."""


class ValidationError(DataIntegrityError):
    """Malformed input (empty title or content, unknown grade, ...)."""

    kind = ErrorKind.VALIDATION


class NotFoundError(DataIntegrityError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, key: Any) -> None:
        super().__init__(
            f"{entity_type} not found: {key}",
            {"entity_type": entity_type, "key": str(key)},
        )
        self.entity_type = entity_type
        self.key = key


class InvalidStateError(DataIntegrityError):
    """Transition attempted from a wrong or terminal state. Re-fetch and retry the decision."""

    kind = ErrorKind.INVALID_STATE


class PolicyNotSatisfiedError(InvalidStateError):
    """The publication is still SUBMITTED but its reviews do not allow the transition yet."""

    kind = ErrorKind.POLICY_NOT_SATISFIED


class PersistenceConflict(InvalidStateError):
    """Lost the compare-and-swap on a status transition; the other writer won."""

    kind = ErrorKind.PERSISTENCE_CONFLICT


class SelfReviewError(DataIntegrityError):
    kind = ErrorKind.SELF_REVIEW


class DuplicateReviewError(DataIntegrityError):
    kind = ErrorKind.DUPLICATE_REVIEW


class PendingReviewsError(DataIntegrityError):
    """The agent must finish its assigned reviews before submitting again."""

    kind = ErrorKind.PENDING_REVIEWS


class NotEnoughReviewersError(DataIntegrityError):
    kind = ErrorKind.NOT_ENOUGH_REVIEWERS


# ---------------------------------------------------------------------------
# Scheduling and external collaborators
# ---------------------------------------------------------------------------

class BudgetExceeded(LyceumError):
    """The experiment spent its cap. Halts new dispatch, invalidates nothing."""

    kind = ErrorKind.BUDGET_EXCEEDED


class ProviderTransientError(LyceumError):
    """Model provider temporarily unavailable (rate limit, overload, timeout)."""

    kind = ErrorKind.PROVIDER_TRANSIENT


class ProviderError(LyceumError):
    """Model provider failure that retrying will not fix."""

    kind = ErrorKind.PROVIDER


class SandboxError(LyceumError):
    kind = ErrorKind.SANDBOX


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UnknownCitationTarget:
    """A bracketed reference that matches no publication in the experiment."""

    reference: str
    kind: ErrorKind = ErrorKind.UNKNOWN_CITATION_TARGET

    def to_dict(self) -> dict[str, str]:
        return {"code": self.kind.value, "reference": self.reference}
