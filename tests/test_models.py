"""
Tests for Converse Bridge models.
"""

import pytest

from conversebridge.models import (
    CacheHintBlock,
    ContentBlockDelta,
    ContentBlockStart,
    ImageBlock,
    ImageFormat,
    Message,
    MessageStop,
    MetadataEvent,
    ReasoningBlock,
    Role,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolInvocationBlock,
    ToolResultBlock,
    ToolResultContent,
    ToolResultStatus,
    content_block_from_dict,
)


class TestImageFormat:
    def test_from_mime_type(self):
        assert ImageFormat.from_mime_type("image/png") is ImageFormat.PNG
        assert ImageFormat.from_mime_type("image/jpeg") is ImageFormat.JPEG

    def test_unknown_mime_type(self):
        with pytest.raises(ValueError):
            ImageFormat.from_mime_type("image/tiff")


class TestReasoningBlock:
    def test_text_with_signature(self):
        block = ReasoningBlock(text="thinking", signature="sig")
        assert not block.is_redacted
        assert block.to_dict() == {"type": "reasoning", "text": "thinking", "signature": "sig"}

    def test_redacted(self):
        block = ReasoningBlock(redacted="opaque")
        assert block.is_redacted

    def test_text_and_redacted_are_exclusive(self):
        with pytest.raises(ValueError):
            ReasoningBlock(text="a", redacted="b")

    def test_requires_one_form(self):
        with pytest.raises(ValueError):
            ReasoningBlock()


class TestToolResultBlock:
    def test_text_flattens_structured_content(self):
        block = ToolResultBlock(
            tool_use_id="t1",
            content=(ToolResultContent(text="found"), ToolResultContent(structured={"n": 1})),
        )
        assert block.text == 'found\n{"n": 1}'

    def test_content_item_forms(self):
        assert ToolResultContent(text="x").to_dict() == {"text": "x"}
        assert ToolResultContent(structured=[1, 2]).to_dict() == {"json": [1, 2]}
        assert ToolResultContent.from_dict({"json": {"a": 1}}).structured == {"a": 1}


class TestContentBlockFromDict:
    def test_restores_every_block_kind(self):
        blocks = [
            TextBlock("hi"),
            ImageBlock(ImageFormat.PNG, b"\x89PNG"),
            ReasoningBlock(text="why", signature="s"),
            ReasoningBlock(redacted="opaque"),
            ToolInvocationBlock("t1", "search", {"q": "cats"}),
            ToolResultBlock("t1", (ToolResultContent(text="ok"),), ToolResultStatus.ERROR),
            CacheHintBlock(),
        ]
        assert [content_block_from_dict(b.to_dict()) for b in blocks] == blocks

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            content_block_from_dict({"type": "video"})


class TestMessage:
    def test_ids_are_unique(self):
        assert Message(role=Role.USER).id != Message(role=Role.USER).id

    def test_text_joins_text_blocks(self):
        message = Message(
            role=Role.ASSISTANT,
            content=[TextBlock("Hello"), ToolInvocationBlock("t1", "x", {}), TextBlock("there")],
        )
        assert message.text == "Hello there"
        assert len(message.tool_invocations) == 1

    def test_is_tool_result_message(self):
        results = Message(role=Role.USER, content=[ToolResultBlock("t1")])
        mixed = Message(role=Role.USER, content=[ToolResultBlock("t1"), TextBlock("x")])
        assert results.is_tool_result_message
        assert not mixed.is_tool_result_message
        assert not Message(role=Role.USER).is_tool_result_message

    def test_copy_is_independent(self):
        message = Message(role=Role.USER, content=[TextBlock("a")], metadata={"k": 1})
        copied = message.copy()
        copied.content.append(TextBlock("b"))
        copied.metadata["k"] = 2
        assert message.content == [TextBlock("a")]
        assert message.metadata == {"k": 1}
        assert copied.id == message.id

    def test_copy_with_changes(self):
        message = Message(role=Role.USER, content=[TextBlock("a")])
        copied = message.copy(content=[TextBlock("a"), CacheHintBlock()])
        assert copied.has_cache_hint
        assert not message.has_cache_hint

    def test_dict_form_preserves_id_and_metadata(self):
        message = Message(
            role=Role.ASSISTANT,
            content=[TextBlock("4")],
            metadata={"usage": TokenUsage(3, 1, 4).to_dict()},
        )
        restored = Message.from_dict(message.to_dict())
        assert restored == message


class TestStreamEvents:
    def test_wire_shapes(self):
        assert MessageStop(StopReason.TOOL_USE).to_dict() == {"messageStop": {"stopReason": "tool_use"}}
        assert ContentBlockStart(1, "t1", "search").to_dict() == {
            "contentBlockStart": {
                "contentBlockIndex": 1,
                "start": {"toolUse": {"toolUseId": "t1", "name": "search"}},
            }
        }
        assert ContentBlockDelta(0, text="hi").to_dict() == {
            "contentBlockDelta": {"contentBlockIndex": 0, "delta": {"text": "hi"}}
        }
        assert ContentBlockDelta(2, tool_input='{"q":').to_dict()["contentBlockDelta"]["delta"] == {
            "toolUse": {"input": '{"q":'}
        }

    def test_metadata_event(self):
        event = MetadataEvent(TokenUsage(input_tokens=5, output_tokens=2, total_tokens=7))
        assert event.to_dict()["metadata"]["usage"]["total_tokens"] == 7
