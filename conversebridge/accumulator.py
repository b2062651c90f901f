"""
Converse Bridge - Folding native stream events into a message.

``MessageAccumulator`` is the reducer used by the orchestrator while a
response streams in. It keeps one builder per content-block index so block
order follows the stream, and can produce a live snapshot at any point.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .models import (
    ContentBlock,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    ConverseResponse,
    Message,
    MessageStart,
    MessageStop,
    MetadataEvent,
    ReasoningBlock,
    Role,
    StopReason,
    StreamEvent,
    TextBlock,
    TokenUsage,
    ToolInvocationBlock,
)
from .translator import parse_tool_arguments


@dataclass
class _BlockBuilder:
    text: str = ""
    reasoning_text: str = ""
    reasoning_signature: Optional[str] = None
    redacted: Optional[Any] = None
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: str = ""
    closed: bool = False

    @property
    def is_tool(self) -> bool:
        return self.tool_name is not None

    def build(self, final: bool) -> list[ContentBlock]:
        if self.is_tool:
            tool_input: Any = parse_tool_arguments(self.tool_input) if final else self.tool_input
            return [
                ToolInvocationBlock(
                    tool_use_id=self.tool_use_id or "",
                    name=self.tool_name or "",
                    input=tool_input,
                )
            ]
        blocks: list[ContentBlock] = []
        if self.reasoning_text:
            blocks.append(ReasoningBlock(text=self.reasoning_text, signature=self.reasoning_signature))
        elif self.redacted is not None:
            blocks.append(ReasoningBlock(redacted=self.redacted))
        if self.text:
            blocks.append(TextBlock(self.text))
        return blocks


class MessageAccumulator:
    """Reducer from native stream events to an assistant message."""

    def __init__(self) -> None:
        self.role = Role.ASSISTANT
        self.started = False
        self.stopped = False
        self.stop_reason: Optional[StopReason] = None
        self.usage: Optional[TokenUsage] = None
        self.reasoning = False
        self._blocks: dict[int, _BlockBuilder] = {}

    def _builder(self, index: int) -> _BlockBuilder:
        builder = self._blocks.get(index)
        if builder is None:
            builder = _BlockBuilder()
            self._blocks[index] = builder
        return builder

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, MessageStart):
            self.started = True
            self.role = event.role
        elif isinstance(event, ContentBlockStart):
            builder = self._builder(event.index)
            builder.tool_use_id = event.tool_use_id
            builder.tool_name = event.name
        elif isinstance(event, ContentBlockDelta):
            builder = self._builder(event.index)
            if event.text is not None:
                builder.text += event.text
                self.reasoning = False
            elif event.reasoning_text is not None:
                builder.reasoning_text += event.reasoning_text
                self.reasoning = True
            elif event.reasoning_signature is not None:
                builder.reasoning_signature = event.reasoning_signature
            elif event.redacted is not None:
                builder.redacted = event.redacted
                self.reasoning = True
            elif event.tool_input is not None:
                builder.tool_input += event.tool_input
        elif isinstance(event, ContentBlockStop):
            self._builder(event.index).closed = True
            self.reasoning = False
        elif isinstance(event, MessageStop):
            self.stopped = True
            self.stop_reason = event.stop_reason
        elif isinstance(event, MetadataEvent):
            self.usage = event.usage
        else:
            raise TypeError(f"Unsupported stream event: {type(event).__name__}")

    def content(self, final: bool = False) -> list[ContentBlock]:
        blocks: list[ContentBlock] = []
        for index in sorted(self._blocks):
            blocks.extend(self._blocks[index].build(final))
        return blocks

    def snapshot(self, message_id: Optional[str] = None) -> Message:
        """In-progress message; tool input is the raw argument text so far."""
        message = Message(role=self.role, content=self.content(final=False))
        if message_id:
            message.id = message_id
        return message

    def result(self) -> ConverseResponse:
        return ConverseResponse(
            message=Message(role=self.role, content=self.content(final=True)),
            stop_reason=self.stop_reason or StopReason.END_TURN,
            usage=self.usage,
        )


def fold_events(events: Iterable[StreamEvent]) -> ConverseResponse:
    """Fold a complete event sequence into a response."""
    accumulator = MessageAccumulator()
    for event in events:
        accumulator.apply(event)
    return accumulator.result()
