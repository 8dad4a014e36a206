"""Domain models for Lyceum.

Every entity in the system is defined here as a Pydantic v2 model.
These models are shared across services, storage, agent tools, and the REST API.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union, assert_never

from pydantic import BaseModel, Field

from lyceum.config import PolicyConfig


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PublicationStatus(str, Enum):
    """SUBMITTED is the only non-terminal state."""

    SUBMITTED = "SUBMITTED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"


class ReviewGrade(str, Enum):
    STRONG_ACCEPT = "STRONG_ACCEPT"
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    STRONG_REJECT = "STRONG_REJECT"

    @property
    def is_accept(self) -> bool:
        return self in (ReviewGrade.STRONG_ACCEPT, ReviewGrade.ACCEPT)


class SolutionReason(str, Enum):
    """Why an agent changed its current best answer."""

    NO_PREVIOUS = "NO_PREVIOUS"
    PREVIOUS_WRONG = "PREVIOUS_WRONG"
    PREVIOUS_IMPROVED = "PREVIOUS_IMPROVED"
    NEW_APPROACH = "NEW_APPROACH"


class ThinkingLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    HIGH = "high"


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"


class AuditAction(str, Enum):
    """Actions tracked in the append-only audit log."""

    EXPERIMENT_CREATED = "experiment_created"
    AGENT_CREATED = "agent_created"
    PUBLICATION_SUBMITTED = "publication_submitted"
    REVIEWERS_ASSIGNED = "reviewers_assigned"
    REVIEW_SUBMITTED = "review_submitted"
    PUBLICATION_PUBLISHED = "publication_published"
    PUBLICATION_REJECTED = "publication_rejected"
    SOLUTION_NOMINATED = "solution_nominated"
    RESOLUTION_DECLARED = "resolution_declared"
    ADVISORY_REGISTERED = "advisory_registered"
    ADVISORY_UNREGISTERED = "advisory_unregistered"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Experiment / Agent
# ---------------------------------------------------------------------------

class Experiment(BaseModel):
    """Top-level container for one research run. Owns every other entity."""

    id: int = 0
    uuid: str = Field(default_factory=_uuid)
    name: str
    problem: str
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    created: datetime = Field(default_factory=_now)
    updated: datetime = Field(default_factory=_now)


class ExperimentCreate(BaseModel):
    name: str
    problem: str
    policy: PolicyConfig | None = None


class Agent(BaseModel):
    """A simulated researcher taking part in one experiment."""

    id: int = 0
    experiment_id: int
    name: str
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    thinking: ThinkingLevel = ThinkingLevel.LOW
    tools: list[str] = Field(default_factory=list)
    system: str = ""
    created: datetime = Field(default_factory=_now)
    updated: datetime = Field(default_factory=_now)


class AgentCreate(BaseModel):
    name: str
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    thinking: ThinkingLevel = ThinkingLevel.LOW
    tools: list[str] = Field(default_factory=list)
    system: str = ""


class AgentUpdate(BaseModel):
    """Agent identity is fixed; only its configuration may change."""

    provider: str | None = None
    model: str | None = None
    thinking: ThinkingLevel | None = None
    tools: list[str] | None = None
    system: str | None = None


# ---------------------------------------------------------------------------
# Publication / Review / Citation
# ---------------------------------------------------------------------------

class Publication(BaseModel):
    """A submitted write-up. `reference` is how agents cite and nominate it."""

    id: int = 0
    experiment_id: int
    author_id: int
    title: str
    abstract: str = ""
    content: str = ""
    status: PublicationStatus = PublicationStatus.SUBMITTED
    reference: str
    reviewers_requested: int | None = None
    created: datetime = Field(default_factory=_now)
    updated: datetime = Field(default_factory=_now)


class PublicationSubmission(BaseModel):
    title: str
    abstract: str = ""
    content: str


class Review(BaseModel):
    """One agent's graded assessment of a publication."""

    id: int = 0
    experiment_id: int
    publication_id: int
    author_id: int
    grade: ReviewGrade
    content: str = ""
    created: datetime = Field(default_factory=_now)
    updated: datetime = Field(default_factory=_now)


class ReviewRequest(BaseModel):
    """A review obligation delivered to one selected reviewer."""

    experiment_id: int
    publication_id: int
    reviewer_id: int
    created: datetime = Field(default_factory=_now)


class Citation(BaseModel):
    """Directed edge: `from_id` cites `to_id`."""

    experiment_id: int
    from_id: int
    to_id: int
    created: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Solutions / Resolution
# ---------------------------------------------------------------------------

class Solution(BaseModel):
    """One row of an agent's append-only nomination log. `publication_id=None` withdraws."""

    id: int = 0
    experiment_id: int
    agent_id: int
    publication_id: int | None = None
    reason: SolutionReason
    rationale: str = ""
    created: datetime = Field(default_factory=_now)


class ResolutionEvent(BaseModel):
    """Audit record of a declared best-overall solution. The latest one is authoritative."""

    id: int = 0
    experiment_id: int
    publication_reference: str
    rationale: str = ""
    created: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Budget ledger
# ---------------------------------------------------------------------------

class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    cached: int = 0
    thinking: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cached=self.cached + other.cached,
            thinking=self.thinking + other.thinking,
        )


class LedgerEntry(BaseModel):
    """Append-only usage record with its derived cost."""

    id: int = 0
    experiment_id: int
    agent_id: int | None = None
    message_id: int | None = None
    input: int = 0
    output: int = 0
    cached: int = 0
    thinking: int = 0
    cost: float = 0.0
    created: datetime = Field(default_factory=_now)

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(input=self.input, output=self.output, cached=self.cached, thinking=self.thinking)


# ---------------------------------------------------------------------------
# Conversation content blocks
# ---------------------------------------------------------------------------

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ReasoningBlock(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolCallBlock(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: str
    content: str = ""
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ReasoningBlock, ToolCallBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class Message(BaseModel):
    id: int = 0
    experiment_id: int
    agent_id: int
    role: MessageRole
    content: list[ContentBlock] = Field(default_factory=list)
    created: datetime = Field(default_factory=_now)

    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]


def block_to_text(block: ContentBlock) -> str:
    """Plain-text rendering of a content block, used for transcripts."""
    if isinstance(block, TextBlock):
        return block.text
    if isinstance(block, ReasoningBlock):
        return f"(reasoning) {block.text}"
    if isinstance(block, ToolCallBlock):
        return f"(tool call {block.name}) {block.arguments}"
    if isinstance(block, ToolResultBlock):
        marker = "error" if block.is_error else "result"
        return f"(tool {marker} {block.tool_name}) {block.content}"
    assert_never(block)


# ---------------------------------------------------------------------------
# Advisory notifications
# ---------------------------------------------------------------------------

class ReviewRequested(BaseModel):
    type: Literal["review_requested"] = "review_requested"
    reference: str
    title: str


class ReviewReceived(BaseModel):
    type: Literal["review_received"] = "review_received"
    reference: str
    title: str
    grade: ReviewGrade
    author: str


class PublicationStatusUpdated(BaseModel):
    type: Literal["publication_status_update"] = "publication_status_update"
    reference: str
    title: str
    status: PublicationStatus


AdvisoryMessage = Annotated[
    Union[ReviewRequested, ReviewReceived, PublicationStatusUpdated],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Audit Event (Immutable Event Log)
# ---------------------------------------------------------------------------

class AuditEvent(BaseModel):
    """Append-only event for the experiment audit trail."""

    event_id: str = Field(default_factory=_uuid)
    experiment_id: int | None = None
    action: AuditAction
    actor: str = ""  # agent name or "system"
    target_id: str = ""
    target_type: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
