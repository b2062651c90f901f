"""
Converse Bridge - Protocol translator.

Converts between the native block-oriented message model and the
OpenAI-compatible chat-completions format spoken by the proxy, in both
directions, for single-shot and streaming responses.

The streaming direction is a small state machine (``StreamState``) that
re-emits the proxy's partial chunks as the native event sequence::

    messageStart, (contentBlockStart?, contentBlockDelta*, contentBlockStop)*,
    messageStop, metadata

Proxy objects may be plain dicts or OpenAI SDK models; SDK models are
normalized with ``model_dump`` so vendor extension fields (reasoning
content, cache token counts) survive.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Iterator, Optional, Sequence, Union

from .config import InferenceParams
from .models import (
    CacheHintBlock,
    ContentBlock,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    ConverseResponse,
    ImageBlock,
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
    ToolResultBlock,
    ToolSpec,
)
from .session import CancellationToken

logger = logging.getLogger("conversebridge.translator")

EPHEMERAL_CACHE_CONTROL = {"type": "ephemeral"}

STOP_REASON_MAP: dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "content_filter": StopReason.CONTENT_FILTERED,
    "tool_calls": StopReason.TOOL_USE,
}

EMPTY_ARGUMENTS = "{}"

SystemInput = Union[str, Sequence[ContentBlock], None]


def map_stop_reason(finish_reason: Optional[str]) -> StopReason:
    """Map a proxy finish reason to a native stop reason.

    Unknown or missing reasons map to ``end_turn``.
    """
    return STOP_REASON_MAP.get(finish_reason or "", StopReason.END_TURN)


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return dict(vars(obj))


def convert_usage(usage: Any) -> Optional[TokenUsage]:
    """Convert proxy usage counters, billing cache reads separately.

    Input tokens exclude cache reads and the total includes cache writes.
    """
    data = _as_dict(usage)
    if not data:
        return None
    cache_read = data.get("cache_read_input_tokens")
    cache_write = data.get("cache_creation_input_tokens")
    return TokenUsage(
        input_tokens=(data.get("prompt_tokens") or 0) - (cache_read or 0),
        output_tokens=data.get("completion_tokens") or 0,
        total_tokens=(data.get("total_tokens") or 0) + (cache_write or 0),
        cache_read_input_tokens=cache_read,
        cache_write_input_tokens=cache_write,
    )


def prepare_model_id(model_id: str, prefix: str = "litellm:") -> str:
    """Strip the provider routing prefix from a model id."""
    if prefix and model_id.startswith(prefix):
        return model_id[len(prefix):]
    return model_id


def parse_tool_arguments(arguments: Union[str, dict[str, Any], None]) -> Union[dict[str, Any], str]:
    """Parse tool-call arguments, falling back to the raw string."""
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, dict):
        return arguments
    try:
        return json.loads(arguments)
    except (json.JSONDecodeError, TypeError):
        return arguments


# ---------------------------------------------------------------------------
# Outbound (native -> proxy)
# ---------------------------------------------------------------------------


def convert_tools(tools: Optional[Sequence[ToolSpec]]) -> Optional[list[dict[str, Any]]]:
    """Convert native tool specs to the proxy function-calling format.

    Specs without an input schema are skipped.
    """
    if not tools:
        return None
    converted = []
    for tool in tools:
        if tool.input_schema is None:
            logger.debug("Skipping tool %s without input schema", tool.name)
            continue
        converted.append(
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": {
                        "type": "object",
                        "properties": dict(tool.input_schema.get("properties") or {}),
                        "required": list(tool.input_schema.get("required") or []),
                    },
                },
            }
        )
    return converted or None


def _system_message(system: SystemInput) -> Optional[dict[str, Any]]:
    if system is None:
        return None
    if isinstance(system, str):
        blocks: Sequence[ContentBlock] = [TextBlock(system)]
    else:
        blocks = system
    text = next((b.text for b in blocks if isinstance(b, TextBlock)), None)
    if not text:
        return None
    message: dict[str, Any] = {"role": "system", "content": text}
    if any(isinstance(b, CacheHintBlock) for b in blocks):
        message["cache_control"] = dict(EPHEMERAL_CACHE_CONTROL)
    return message


def _convert_content(blocks: Sequence[ContentBlock]) -> Union[str, list[dict[str, Any]], None]:
    parts: list[dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            parts.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageBlock):
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {
                        "url": f"data:image/{block.format.value};base64,{block.base64_data}"
                    },
                }
            )
        elif isinstance(block, ReasoningBlock):
            if block.is_redacted:
                continue
            parts.append(
                {"type": "thinking", "thinking": block.text, "signature": block.signature}
            )
        elif isinstance(block, (ToolInvocationBlock, ToolResultBlock, CacheHintBlock)):
            # carried as tool_calls / tool messages / cache_control
            continue
        else:
            raise TypeError(f"Unsupported content block: {type(block).__name__}")

    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts or None


def _convert_tool_calls(blocks: Sequence[ContentBlock]) -> Optional[list[dict[str, Any]]]:
    calls = [
        {
            "id": block.tool_use_id,
            "type": "function",
            "function": {
                "name": block.name,
                "arguments": (
                    block.input if isinstance(block.input, str) else json.dumps(block.input)
                ),
            },
        }
        for block in blocks
        if isinstance(block, ToolInvocationBlock) and block.tool_use_id and block.name
    ]
    return calls or None


def _tool_result_text(block: ToolResultBlock) -> str:
    if all(item.is_text for item in block.content):
        return "\n".join(item.text or "" for item in block.content)
    return json.dumps([item.to_dict() for item in block.content], default=str)


def _convert_role(role: Role) -> str:
    if role is Role.TOOL:
        return Role.USER.value
    return role.value


def convert_message(message: Message) -> list[dict[str, Any]]:
    """Convert one native message to zero or more proxy messages."""
    if not message.content:
        return []

    cache_control = dict(EPHEMERAL_CACHE_CONTROL) if message.has_cache_hint else None

    results = [b for b in message.content if not isinstance(b, CacheHintBlock)]
    if results and all(isinstance(b, ToolResultBlock) for b in results):
        converted = [
            {"role": "tool", "tool_call_id": block.tool_use_id, "content": _tool_result_text(block)}
            for block in results
        ]
        if cache_control:
            converted[-1]["cache_control"] = cache_control
        return converted

    proxy_message: dict[str, Any] = {
        "role": _convert_role(message.role),
        "content": _convert_content(message.content),
    }
    tool_calls = _convert_tool_calls(message.content)
    if tool_calls:
        proxy_message["tool_calls"] = tool_calls
    if cache_control:
        proxy_message["cache_control"] = cache_control
    return [proxy_message]


def to_proxy_messages(messages: Sequence[Message], system: SystemInput = None) -> list[dict[str, Any]]:
    """Convert a conversation (plus optional system prompt) to proxy messages."""
    result: list[dict[str, Any]] = []
    system_message = _system_message(system)
    if system_message:
        result.append(system_message)
    for message in messages:
        result.extend(convert_message(message))
    return result


def to_proxy_request(
    messages: Sequence[Message],
    system: SystemInput = None,
    tools: Optional[Sequence[ToolSpec]] = None,
    params: Optional[InferenceParams] = None,
    model: str = "",
    model_prefix: str = "litellm:",
    stream: bool = False,
) -> dict[str, Any]:
    """Build a chat-completions request body.

    When thinking is enabled with a budget, temperature is forced to 1 and
    top-p is dropped, as reasoning models require.
    """
    params = params or InferenceParams()
    temperature: Optional[float] = params.temperature
    top_p = params.top_p
    thinking = params.thinking if params.thinking and params.thinking.enabled else None
    if thinking:
        temperature = 1
        top_p = None

    request: dict[str, Any] = {
        "model": prepare_model_id(model, model_prefix),
        "messages": to_proxy_messages(messages, system),
        "temperature": temperature,
        "max_tokens": params.max_tokens,
    }
    if top_p is not None:
        request["top_p"] = top_p
    converted_tools = convert_tools(tools)
    if converted_tools:
        request["tools"] = converted_tools
    if thinking:
        request["thinking"] = thinking.to_dict()
    if stream:
        request["stream"] = True
        request["stream_options"] = {"include_usage": True}
    return request


# ---------------------------------------------------------------------------
# Inbound, single shot (proxy -> native)
# ---------------------------------------------------------------------------


def _reasoning_signature(thinking_blocks: Any) -> Optional[str]:
    if not thinking_blocks:
        return None
    return _as_dict(thinking_blocks[0]).get("signature")


def from_proxy_response(response: Any) -> ConverseResponse:
    """Convert a non-streaming chat completion to a native response."""
    data = _as_dict(response)
    choices = data.get("choices") or []
    choice = _as_dict(choices[0]) if choices else {}
    proxy_message = _as_dict(choice.get("message"))

    content: list[ContentBlock] = []

    reasoning = proxy_message.get("reasoning_content")
    if reasoning:
        content.append(
            ReasoningBlock(
                text=reasoning,
                signature=_reasoning_signature(proxy_message.get("thinking_blocks")),
            )
        )

    text = proxy_message.get("content")
    if text:
        content.append(TextBlock(text))

    for raw_call in proxy_message.get("tool_calls") or []:
        tool_call = _as_dict(raw_call)
        if tool_call.get("type", "function") != "function":
            continue
        function = _as_dict(tool_call.get("function"))
        content.append(
            ToolInvocationBlock(
                tool_use_id=tool_call.get("id") or "",
                name=function.get("name") or "",
                input=parse_tool_arguments(function.get("arguments")),
            )
        )

    return ConverseResponse(
        message=Message(role=Role.ASSISTANT, content=content),
        stop_reason=map_stop_reason(choice.get("finish_reason")),
        usage=convert_usage(data.get("usage")),
    )


# ---------------------------------------------------------------------------
# Inbound, streaming (proxy chunks -> native events)
# ---------------------------------------------------------------------------


class BlockMode(str, Enum):
    """Kind of content block currently open in a stream."""

    NONE = "none"
    TEXT = "text"
    THINKING = "thinking"
    TOOL = "tool"


@dataclass
class StreamState:
    """Entire state of the chunk reassembly state machine."""

    is_first_chunk: bool = True
    current_block_index: int = 0
    current_mode: BlockMode = BlockMode.NONE


class StreamTranslator:
    """Re-emits proxy chat-completion chunks as native stream events.

    One translator handles one response stream. ``process_chunk`` is the
    pure transition function; ``translate`` and ``translate_sync`` drive it
    lazily over an async or plain iterable without buffering.

    Example::

        translator = StreamTranslator()
        async for event in translator.translate(sdk_stream):
            accumulator.apply(event)
    """

    def __init__(self, state: Optional[StreamState] = None) -> None:
        self.state = state or StreamState()

    def _close_open_block(self, events: list[StreamEvent]) -> None:
        state = self.state
        if state.current_mode is not BlockMode.NONE:
            events.append(ContentBlockStop(state.current_block_index))
            state.current_block_index += 1
            state.current_mode = BlockMode.NONE

    def _enter_mode(self, mode: BlockMode, events: list[StreamEvent]) -> None:
        if self.state.current_mode is not mode:
            self._close_open_block(events)
            self.state.current_mode = mode

    def process_chunk(self, chunk: Any) -> list[StreamEvent]:
        """Advance the state machine by one proxy chunk."""
        data = _as_dict(chunk)
        events: list[StreamEvent] = []
        state = self.state

        usage = data.get("usage")
        if usage:
            converted = convert_usage(usage)
            if converted is not None:
                events.append(MetadataEvent(converted))

        choices = data.get("choices") or []
        if not choices:
            return events

        if state.is_first_chunk:
            events.append(MessageStart(Role.ASSISTANT))
            state.is_first_chunk = False

        choice = _as_dict(choices[0])
        delta = _as_dict(choice.get("delta"))

        text = delta.get("content")
        if text:
            self._enter_mode(BlockMode.TEXT, events)
            events.append(ContentBlockDelta(state.current_block_index, text=text))

        reasoning = delta.get("reasoning_content")
        if reasoning:
            self._enter_mode(BlockMode.THINKING, events)
            events.append(ContentBlockDelta(state.current_block_index, reasoning_text=reasoning))

        thinking_blocks = delta.get("thinking_blocks") or []
        if thinking_blocks:
            block = _as_dict(thinking_blocks[0])
            if block.get("type") == "redacted_thinking" and block.get("data"):
                self._enter_mode(BlockMode.THINKING, events)
                events.append(ContentBlockDelta(state.current_block_index, redacted=block["data"]))
            elif block.get("signature"):
                self._enter_mode(BlockMode.THINKING, events)
                events.append(
                    ContentBlockDelta(
                        state.current_block_index, reasoning_signature=block["signature"]
                    )
                )

        for raw_call in delta.get("tool_calls") or []:
            tool_call = _as_dict(raw_call)
            function = _as_dict(tool_call.get("function"))
            name = function.get("name")
            if name:
                self._close_open_block(events)
                state.current_mode = BlockMode.TOOL
                events.append(
                    ContentBlockStart(
                        state.current_block_index,
                        tool_use_id=tool_call.get("id") or "",
                        name=name,
                    )
                )
            elif state.current_mode is not BlockMode.TOOL:
                logger.debug("Dropping tool-call fragment with no open tool block")
                continue

            arguments = function.get("arguments")
            if arguments and arguments.strip() != EMPTY_ARGUMENTS:
                events.append(ContentBlockDelta(state.current_block_index, tool_input=arguments))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            self._close_open_block(events)
            events.append(MessageStop(map_stop_reason(finish_reason)))

        return events

    async def translate(
        self,
        chunks: AsyncIterable[Any],
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Lazily translate an async chunk stream.

        ``token`` is checked before each chunk; a cancelled token raises
        ``OperationCancelledError``.
        """
        async for chunk in chunks:
            if token is not None:
                token.raise_if_cancelled()
            for event in self.process_chunk(chunk):
                yield event

    def translate_sync(self, chunks: Iterable[Any]) -> Iterator[StreamEvent]:
        """Lazily translate a plain iterable of chunks."""
        for chunk in chunks:
            yield from self.process_chunk(chunk)
