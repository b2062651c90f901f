"""
Converse Bridge - Session state and conversation housekeeping.

Holds the in-memory conversation the orchestrator mutates, the per-turn
cancellation token, and the pure helpers applied to a conversation before
it is sent: context-length limiting, trace stripping, and detection of
tool invocations left without a result.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .exceptions import OperationCancelledError
from .models import Message, Role, ToolInvocationBlock, ToolResultBlock, ToolResultContent

logger = logging.getLogger("conversebridge.session")


class TurnState(str, Enum):
    """Where the orchestrator is within one submitted turn."""

    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_DETECTED = "tool_detected"
    EXECUTING = "executing"
    ABORTED = "aborted"


class CancellationToken:
    """Cancellation scope for one network operation.

    Callbacks registered with ``add_callback`` run once when the token is
    cancelled, or immediately if it already is. Coroutine results are
    scheduled on the running loop.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], Any]] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], Any]) -> None:
        if self._cancelled:
            self._run(callback)
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], Any]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError("Operation cancelled")

    def _run(self, callback: Callable[[], Any]) -> None:
        try:
            result = callback()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except Exception:
            logger.debug("Cancellation callback failed", exc_info=True)


@dataclass
class SessionState:
    """In-memory state of the active conversation.

    Only the orchestrator mutates this object; display consumers read
    ``snapshot()``.
    """

    session_id: Optional[str] = None
    messages: list[Message] = field(default_factory=list)
    draft: Optional[Message] = None
    last_assistant_message_id: Optional[str] = None
    pending_metadata_id: Optional[str] = None
    loading: bool = False
    reasoning: bool = False
    executing_tool: Optional[str] = None
    turn_state: TurnState = TurnState.IDLE

    def snapshot(self) -> tuple[Message, ...]:
        """Copies of the conversation, with the in-progress draft last."""
        messages = [m.copy() for m in self.messages]
        if self.draft is not None:
            messages.append(self.draft.copy())
        return tuple(messages)

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def reset_flags(self) -> None:
        self.loading = False
        self.reasoning = False
        self.executing_tool = None
        self.draft = None
        self.pending_metadata_id = None


def _is_user_prompt(message: Message) -> bool:
    return message.role is Role.USER and not message.is_tool_result_message


def limit_context_length(messages: Sequence[Message], max_messages: Optional[int]) -> list[Message]:
    """Keep at most ``max_messages`` of the newest messages.

    The kept window always starts at a user prompt, never at an assistant
    reply or a tool result, so no tool result is sent without the
    invocation it answers.
    """
    messages = list(messages)
    if not max_messages or max_messages <= 0 or len(messages) <= max_messages:
        return messages

    start = len(messages) - max_messages
    while start < len(messages) and not _is_user_prompt(messages[start]):
        start += 1
    if start >= len(messages):
        for index in range(len(messages) - 1, -1, -1):
            if _is_user_prompt(messages[index]):
                return messages[index:]
        return messages[-max_messages:]
    return messages[start:]


def _strip_path(value: Any, path: Sequence[str]) -> Any:
    if not path or not isinstance(value, dict) or path[0] not in value:
        return value
    if len(path) == 1:
        return {k: v for k, v in value.items() if k != path[0]}
    return {**value, path[0]: _strip_path(value[path[0]], path[1:])}


def strip_traces(
    messages: Sequence[Message],
    field_paths: Sequence[Sequence[str]],
) -> list[Message]:
    """Remove configured nested fields from structured tool results.

    Messages are copied; the originals are left untouched.
    """
    if not field_paths:
        return list(messages)

    stripped_messages = []
    for message in messages:
        if not any(isinstance(b, ToolResultBlock) for b in message.content):
            stripped_messages.append(message)
            continue
        content = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                items = []
                for item in block.content:
                    if item.is_text:
                        items.append(item)
                        continue
                    structured = item.structured
                    for path in field_paths:
                        structured = _strip_path(structured, path)
                    items.append(ToolResultContent(structured=structured))
                block = replace(block, content=tuple(items))
            content.append(block)
        stripped_messages.append(message.copy(content=content))
    return stripped_messages


def find_dangling_tool_invocations(messages: Sequence[Message]) -> list[int]:
    """Indices of messages holding a tool invocation with no result.

    Sorted highest first so they can be deleted without shifting the
    remaining indices.
    """
    use_index: dict[str, int] = {}
    answered: set[str] = set()
    for index, message in enumerate(messages):
        for block in message.content:
            if isinstance(block, ToolInvocationBlock) and block.tool_use_id:
                use_index[block.tool_use_id] = index
            elif isinstance(block, ToolResultBlock) and block.tool_use_id:
                answered.add(block.tool_use_id)

    dangling = {index for tool_id, index in use_index.items() if tool_id not in answered}
    return sorted(dangling, reverse=True)
