"""
Tests for session state, conversation housekeeping, and the message accumulator.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from conversebridge.accumulator import MessageAccumulator
from conversebridge.exceptions import OperationCancelledError
from conversebridge.models import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    Message,
    MessageStart,
    MessageStop,
    MetadataEvent,
    Role,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolInvocationBlock,
    ToolResultBlock,
    ToolResultContent,
)
from conversebridge.session import (
    CancellationToken,
    SessionState,
    find_dangling_tool_invocations,
    limit_context_length,
    strip_traces,
)


def user(text):
    return Message(role=Role.USER, content=[TextBlock(text)])


def assistant(text, *tool_ids):
    content = [TextBlock(text)] + [ToolInvocationBlock(t, "search", {"q": text}) for t in tool_ids]
    return Message(role=Role.ASSISTANT, content=content)


def results(*tool_ids):
    return Message(
        role=Role.USER,
        content=[ToolResultBlock(t, (ToolResultContent(text="ok"),)) for t in tool_ids],
    )


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellationToken:
    def test_callbacks_run_once(self):
        token = CancellationToken()
        callback = MagicMock()
        token.add_callback(callback)
        token.cancel()
        token.cancel()
        assert token.cancelled
        callback.assert_called_once()

    def test_late_callback_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        callback = MagicMock()
        token.add_callback(callback)
        callback.assert_called_once()

    def test_removed_callback_not_run(self):
        token = CancellationToken()
        callback = MagicMock()
        token.add_callback(callback)
        token.remove_callback(callback)
        token.cancel()
        callback.assert_not_called()

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            token.raise_if_cancelled()

    def test_failing_callback_does_not_stop_others(self):
        token = CancellationToken()
        second = MagicMock()
        token.add_callback(MagicMock(side_effect=RuntimeError("boom")))
        token.add_callback(second)
        token.cancel()
        second.assert_called_once()

    @pytest.mark.asyncio
    async def test_async_callback_is_scheduled(self):
        closed = asyncio.Event()

        async def close():
            closed.set()

        token = CancellationToken()
        token.add_callback(close)
        token.cancel()
        await asyncio.wait_for(closed.wait(), 1)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class TestSessionState:
    def test_snapshot_appends_draft_copy(self):
        state = SessionState(messages=[user("hi")])
        state.draft = assistant("partial")
        snapshot = state.snapshot()
        assert len(snapshot) == 2
        assert snapshot[-1].text == "partial"
        snapshot[0].content.append(TextBlock("x"))
        assert state.messages[0].content == [TextBlock("hi")]

    def test_find_message(self):
        message = user("hi")
        state = SessionState(messages=[message])
        assert state.find_message(message.id) is message
        assert state.find_message("missing") is None

    def test_reset_flags(self):
        state = SessionState(loading=True, reasoning=True, executing_tool="search")
        state.pending_metadata_id = "m1"
        state.reset_flags()
        assert not state.loading and not state.reasoning
        assert state.executing_tool is None
        assert state.pending_metadata_id is None


# ---------------------------------------------------------------------------
# Context limiting
# ---------------------------------------------------------------------------


class TestLimitContextLength:
    def test_short_conversation_unchanged(self):
        messages = [user("a"), assistant("b")]
        assert limit_context_length(messages, 10) == messages

    @pytest.mark.parametrize("limit", [None, 0, -1])
    def test_disabled(self, limit):
        messages = [user(str(i)) for i in range(5)]
        assert limit_context_length(messages, limit) == messages

    def test_window_starts_at_user_prompt(self):
        messages = [
            user("q1"),
            assistant("a1", "t1"),
            results("t1"),
            assistant("a1b"),
            user("q2"),
            assistant("a2"),
        ]
        limited = limit_context_length(messages, 4)
        assert limited == messages[4:]
        assert limited[0].role is Role.USER

    def test_never_starts_with_tool_result(self):
        messages = [user("q1"), assistant("a1", "t1"), results("t1"), assistant("done")]
        limited = limit_context_length(messages, 2)
        assert not limited[0].is_tool_result_message
        assert limited[0].role is Role.USER

    def test_newest_messages_kept(self):
        messages = [user(str(i)) for i in range(10)]
        assert limit_context_length(messages, 3) == messages[-3:]


# ---------------------------------------------------------------------------
# Trace stripping
# ---------------------------------------------------------------------------


class TestStripTraces:
    def test_removes_nested_field_without_touching_original(self):
        payload = {"result": {"completion": {"text": "hi", "traces": ["big"]}}}
        message = Message(
            role=Role.USER,
            content=[ToolResultBlock("t1", (ToolResultContent(structured=payload),))],
        )
        [stripped] = strip_traces([message], (("result", "completion", "traces"),))
        assert stripped.content[0].content[0].structured == {"result": {"completion": {"text": "hi"}}}
        assert payload["result"]["completion"]["traces"] == ["big"]
        assert stripped.id == message.id

    def test_text_results_and_other_messages_untouched(self):
        message = results("t1")
        plain = user("hi")
        stripped = strip_traces([plain, message], (("result", "completion", "traces"),))
        assert stripped[0] is plain
        assert stripped[1].content == message.content

    def test_missing_path_is_noop(self):
        payload = {"result": "flat"}
        message = Message(
            role=Role.USER,
            content=[ToolResultBlock("t1", (ToolResultContent(structured=payload),))],
        )
        [stripped] = strip_traces([message], (("result", "completion", "traces"),))
        assert stripped.content[0].content[0].structured == payload


# ---------------------------------------------------------------------------
# Dangling invocations
# ---------------------------------------------------------------------------


class TestFindDanglingToolInvocations:
    def test_answered_invocations_are_not_dangling(self):
        messages = [user("q"), assistant("a", "t1"), results("t1")]
        assert find_dangling_tool_invocations(messages) == []

    def test_highest_index_first(self):
        messages = [
            user("q"),
            assistant("a", "t1"),
            results("t1"),
            assistant("b", "t2"),
            user("q2"),
            assistant("c", "t3"),
        ]
        assert find_dangling_tool_invocations(messages) == [5, 3]

    def test_partial_batch_is_dangling(self):
        messages = [user("q"), assistant("a", "t1", "t2"), results("t1")]
        assert find_dangling_tool_invocations(messages) == [1]


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------


class TestMessageAccumulator:
    def test_snapshot_shows_raw_tool_input(self):
        accumulator = MessageAccumulator()
        accumulator.apply(MessageStart(Role.ASSISTANT))
        accumulator.apply(ContentBlockStart(0, tool_use_id="t1", name="search"))
        accumulator.apply(ContentBlockDelta(0, tool_input='{"q":'))
        snapshot = accumulator.snapshot("draft-1")
        assert snapshot.id == "draft-1"
        assert snapshot.content == [ToolInvocationBlock("t1", "search", '{"q":')]

    def test_result_parses_tool_input(self):
        accumulator = MessageAccumulator()
        for event in [
            MessageStart(Role.ASSISTANT),
            ContentBlockDelta(0, text="Looking"),
            ContentBlockStop(0),
            ContentBlockStart(1, tool_use_id="t1", name="search"),
            ContentBlockDelta(1, tool_input='{"q":'),
            ContentBlockDelta(1, tool_input='"cats"}'),
            ContentBlockStop(1),
            MessageStop(StopReason.TOOL_USE),
            MetadataEvent(TokenUsage(1, 2, 3)),
        ]:
            accumulator.apply(event)
        response = accumulator.result()
        assert response.message.content == [
            TextBlock("Looking"),
            ToolInvocationBlock("t1", "search", {"q": "cats"}),
        ]
        assert response.stop_reason is StopReason.TOOL_USE
        assert response.usage == TokenUsage(1, 2, 3)

    def test_reasoning_flag_follows_stream(self):
        accumulator = MessageAccumulator()
        accumulator.apply(ContentBlockDelta(0, reasoning_text="hmm"))
        assert accumulator.reasoning
        accumulator.apply(ContentBlockStop(0))
        assert not accumulator.reasoning

    def test_unknown_event_rejected(self):
        with pytest.raises(TypeError):
            MessageAccumulator().apply(object())
