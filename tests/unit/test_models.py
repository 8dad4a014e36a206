"""Unit tests for domain models."""

import pytest
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from lyceum.config import PolicyConfig
from lyceum.models import (
    AdvisoryMessage,
    ContentBlock,
    Experiment,
    Message,
    MessageRole,
    Publication,
    PublicationStatus,
    ReasoningBlock,
    ReviewGrade,
    ReviewRequested,
    TextBlock,
    TokenUsage,
    ToolCallBlock,
    ToolResultBlock,
    block_to_text,
)


class TestPublicationModels:
    def test_publication_defaults(self):
        pub = Publication(experiment_id=1, author_id=1, title="T", reference="ab12")
        assert pub.status == PublicationStatus.SUBMITTED
        assert pub.reviewers_requested is None

    def test_status_values(self):
        assert {s.value for s in PublicationStatus} == {"SUBMITTED", "PUBLISHED", "REJECTED"}

    def test_accepting_grades(self):
        assert ReviewGrade.STRONG_ACCEPT.is_accept
        assert ReviewGrade.ACCEPT.is_accept
        assert not ReviewGrade.REJECT.is_accept
        assert not ReviewGrade.STRONG_REJECT.is_accept

    def test_experiment_carries_default_policy(self):
        exp = Experiment(name="e", problem="p")
        assert isinstance(exp.policy, PolicyConfig)
        assert exp.uuid


class TestTokenUsage:
    def test_total_counts_input_and_output(self):
        assert TokenUsage(input=10, output=5, cached=3, thinking=2).total == 15

    def test_addition(self):
        total = TokenUsage(input=1, output=2, cached=3, thinking=4) + TokenUsage(input=10, output=20)
        assert total == TokenUsage(input=11, output=22, cached=3, thinking=4)


class TestContentBlocks:
    def test_discriminated_parsing(self):
        adapter = TypeAdapter(list[ContentBlock])
        blocks = adapter.validate_python([
            {"type": "text", "text": "hi"},
            {"type": "reasoning", "text": "hmm"},
            {"type": "tool_call", "id": "c1", "name": "list_publications_tool", "arguments": {"limit": 3}},
            {"type": "tool_result", "tool_call_id": "c1", "tool_name": "list_publications_tool", "content": "[]"},
        ])
        assert [type(b) for b in blocks] == [TextBlock, ReasoningBlock, ToolCallBlock, ToolResultBlock]

    def test_unknown_block_type_rejected(self):
        with pytest.raises(PydanticValidationError):
            TypeAdapter(ContentBlock).validate_python({"type": "image", "data": ""})

    def test_message_tool_calls(self):
        call = ToolCallBlock(id="c1", name="advisory_list_tool")
        message = Message(
            experiment_id=1,
            agent_id=1,
            role=MessageRole.AGENT,
            content=[TextBlock(text="checking"), call],
        )
        assert message.tool_calls() == [call]

    def test_block_to_text(self):
        assert block_to_text(TextBlock(text="plain")) == "plain"
        assert block_to_text(ReasoningBlock(text="r")).startswith("(reasoning)")
        error = ToolResultBlock(tool_call_id="c", tool_name="t", content="boom", is_error=True)
        assert block_to_text(error) == "(tool error t) boom"


class TestAdvisoryMessages:
    def test_round_trip_through_union(self):
        adapter = TypeAdapter(AdvisoryMessage)
        message = adapter.validate_json(ReviewRequested(reference="ab12", title="T").model_dump_json())
        assert isinstance(message, ReviewRequested)
        assert message.reference == "ab12"
