"""
Converse Bridge - Message model shared by both wire formats.

A conversation is an ordered list of messages; each message carries an
ordered sequence of typed content blocks. Content blocks are a closed set
of frozen dataclasses discriminated by ``ContentBlockType``.
"""

import base64
import json
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar, Optional, Union


class Role(str, Enum):
    """Role of a message author."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ContentBlockType(str, Enum):
    """Discriminant of a content block."""

    TEXT = "text"
    IMAGE = "image"
    REASONING = "reasoning"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_RESULT = "tool_result"
    CACHE_HINT = "cache_hint"


class ImageFormat(str, Enum):
    """Supported image encodings."""

    PNG = "png"
    JPEG = "jpeg"
    GIF = "gif"
    WEBP = "webp"

    @classmethod
    def from_mime_type(cls, mime_type: str) -> "ImageFormat":
        subtype = mime_type.split("/")[-1].lower()
        if subtype == "jpg":
            subtype = "jpeg"
        return cls(subtype)


class ToolResultStatus(str, Enum):
    """Outcome of a tool execution."""

    SUCCESS = "success"
    ERROR = "error"


class CacheScope(str, Enum):
    """Scope of a prompt-cache hint."""

    DEFAULT = "default"


class StopReason(str, Enum):
    """Why a model turn ended."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    CONTENT_FILTERED = "content_filtered"
    TOOL_USE = "tool_use"


def generate_message_id() -> str:
    """Generate a unique message identifier."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str

    block_type: ClassVar[ContentBlockType] = ContentBlockType.TEXT

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.block_type.value, "text": self.text}


@dataclass(frozen=True)
class ImageBlock:
    format: ImageFormat
    data: bytes

    block_type: ClassVar[ContentBlockType] = ContentBlockType.IMAGE

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.block_type.value,
            "format": self.format.value,
            "data": self.base64_data,
        }


@dataclass(frozen=True)
class ReasoningBlock:
    """Model reasoning, either visible (``text`` + ``signature``) or ``redacted``.

    The two forms are mutually exclusive.
    """

    text: Optional[str] = None
    signature: Optional[str] = None
    redacted: Optional[Any] = None

    block_type: ClassVar[ContentBlockType] = ContentBlockType.REASONING

    def __post_init__(self) -> None:
        if (self.text is None) == (self.redacted is None):
            raise ValueError("ReasoningBlock requires exactly one of text or redacted")
        if self.redacted is not None and self.signature is not None:
            raise ValueError("Redacted reasoning cannot carry a signature")

    @property
    def is_redacted(self) -> bool:
        return self.redacted is not None

    def to_dict(self) -> dict[str, Any]:
        if self.is_redacted:
            return {"type": self.block_type.value, "redacted": self.redacted}
        return {
            "type": self.block_type.value,
            "text": self.text,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class ToolInvocationBlock:
    """A model-requested tool call.

    ``input`` is the parsed argument object, or the raw argument string
    when it was not valid JSON.
    """

    tool_use_id: str
    name: str
    input: Union[dict[str, Any], str] = field(default_factory=dict)

    block_type: ClassVar[ContentBlockType] = ContentBlockType.TOOL_INVOCATION

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.block_type.value,
            "tool_use_id": self.tool_use_id,
            "name": self.name,
            "input": self.input,
        }


@dataclass(frozen=True)
class ToolResultContent:
    """One item of tool output: plain text or a structured JSON value."""

    text: Optional[str] = None
    structured: Optional[Any] = None

    @property
    def is_text(self) -> bool:
        return self.structured is None

    def to_dict(self) -> dict[str, Any]:
        if self.is_text:
            return {"text": self.text or ""}
        return {"json": self.structured}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResultContent":
        if "json" in data:
            return cls(structured=data["json"])
        return cls(text=data.get("text", ""))


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: tuple[ToolResultContent, ...] = ()
    status: ToolResultStatus = ToolResultStatus.SUCCESS

    block_type: ClassVar[ContentBlockType] = ContentBlockType.TOOL_RESULT

    @property
    def text(self) -> str:
        """Tool output flattened to text."""
        parts = []
        for item in self.content:
            if item.is_text:
                parts.append(item.text or "")
            else:
                parts.append(json.dumps(item.structured, default=str))
        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.block_type.value,
            "tool_use_id": self.tool_use_id,
            "content": [c.to_dict() for c in self.content],
            "status": self.status.value,
        }


@dataclass(frozen=True)
class CacheHintBlock:
    """Annotation asking the proxy to cache the prompt up to this message."""

    scope: CacheScope = CacheScope.DEFAULT

    block_type: ClassVar[ContentBlockType] = ContentBlockType.CACHE_HINT

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.block_type.value, "scope": self.scope.value}


ContentBlock = Union[
    TextBlock,
    ImageBlock,
    ReasoningBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    CacheHintBlock,
]


def content_block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Rebuild a content block from its ``to_dict`` form."""
    block_type = ContentBlockType(data["type"])
    if block_type is ContentBlockType.TEXT:
        return TextBlock(text=data.get("text", ""))
    if block_type is ContentBlockType.IMAGE:
        return ImageBlock(
            format=ImageFormat(data["format"]),
            data=base64.b64decode(data.get("data", "")),
        )
    if block_type is ContentBlockType.REASONING:
        if "redacted" in data and data["redacted"] is not None:
            return ReasoningBlock(redacted=data["redacted"])
        return ReasoningBlock(text=data.get("text", ""), signature=data.get("signature"))
    if block_type is ContentBlockType.TOOL_INVOCATION:
        return ToolInvocationBlock(
            tool_use_id=data["tool_use_id"],
            name=data["name"],
            input=data.get("input", {}),
        )
    if block_type is ContentBlockType.TOOL_RESULT:
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=tuple(ToolResultContent.from_dict(c) for c in data.get("content", [])),
            status=ToolResultStatus(data.get("status", "success")),
        )
    if block_type is ContentBlockType.CACHE_HINT:
        return CacheHintBlock(scope=CacheScope(data.get("scope", "default")))
    raise TypeError(f"Unsupported content block type: {block_type}")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    """Token accounting for one model response.

    ``input_tokens`` excludes cache reads; ``total_tokens`` includes cache
    writes.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_input_tokens: Optional[int] = None
    cache_write_input_tokens: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "cache_write_input_tokens": self.cache_write_input_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenUsage":
        return cls(
            input_tokens=data.get("input_tokens", 0),
            output_tokens=data.get("output_tokens", 0),
            total_tokens=data.get("total_tokens", 0),
            cache_read_input_tokens=data.get("cache_read_input_tokens"),
            cache_write_input_tokens=data.get("cache_write_input_tokens"),
        )


@dataclass
class Message:
    """A conversation message.

    The identifier is assigned at creation and never changes; it is how
    late-arriving metadata finds the message it belongs to.
    """

    role: Role
    content: list[ContentBlock] = field(default_factory=list)
    id: str = field(default_factory=generate_message_id)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return " ".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_invocations(self) -> list[ToolInvocationBlock]:
        return [b for b in self.content if isinstance(b, ToolInvocationBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def is_tool_result_message(self) -> bool:
        """True when the content is entirely tool results."""
        return bool(self.content) and all(
            isinstance(b, ToolResultBlock) for b in self.content
        )

    @property
    def has_cache_hint(self) -> bool:
        return any(isinstance(b, CacheHintBlock) for b in self.content)

    def copy(self, **changes: Any) -> "Message":
        """Return a copy with its own content list and metadata dict."""
        copied = replace(self, content=list(self.content), metadata=dict(self.metadata))
        for key, value in changes.items():
            setattr(copied, key, value)
        return copied

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": [b.to_dict() for b in self.content],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data.get("id") or generate_message_id(),
            role=Role(data.get("role", "user")),
            content=[content_block_from_dict(b) for b in data.get("content", [])],
            metadata=data.get("metadata") or {},
        )


@dataclass
class ToolSpec:
    """A tool the model may call, in the native schema.

    ``input_schema`` is a JSON-schema object with ``properties`` and
    ``required``. Specs without a schema are not offered to the model.
    """

    name: str
    description: str = ""
    input_schema: Optional[dict[str, Any]] = None


@dataclass
class ConverseResponse:
    """Result of one model round-trip in the native format."""

    message: Message
    stop_reason: StopReason = StopReason.END_TURN
    usage: Optional[TokenUsage] = None


# ---------------------------------------------------------------------------
# Native stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageStart:
    role: Role = Role.ASSISTANT

    def to_dict(self) -> dict[str, Any]:
        return {"messageStart": {"role": self.role.value}}


@dataclass(frozen=True)
class ContentBlockStart:
    """Opens a tool-invocation block; text and reasoning blocks open implicitly."""

    index: int
    tool_use_id: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "contentBlockStart": {
                "contentBlockIndex": self.index,
                "start": {"toolUse": {"toolUseId": self.tool_use_id, "name": self.name}},
            }
        }


@dataclass(frozen=True)
class ContentBlockDelta:
    """Incremental content for the block at ``index``.

    Exactly one payload field is set per event.
    """

    index: int
    text: Optional[str] = None
    reasoning_text: Optional[str] = None
    reasoning_signature: Optional[str] = None
    redacted: Optional[Any] = None
    tool_input: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if self.text is not None:
            delta: dict[str, Any] = {"text": self.text}
        elif self.reasoning_text is not None:
            delta = {"reasoningContent": {"text": self.reasoning_text}}
        elif self.reasoning_signature is not None:
            delta = {"reasoningContent": {"signature": self.reasoning_signature}}
        elif self.redacted is not None:
            delta = {"reasoningContent": {"redactedContent": self.redacted}}
        else:
            delta = {"toolUse": {"input": self.tool_input or ""}}
        return {"contentBlockDelta": {"contentBlockIndex": self.index, "delta": delta}}


@dataclass(frozen=True)
class ContentBlockStop:
    index: int

    def to_dict(self) -> dict[str, Any]:
        return {"contentBlockStop": {"contentBlockIndex": self.index}}


@dataclass(frozen=True)
class MessageStop:
    stop_reason: StopReason

    def to_dict(self) -> dict[str, Any]:
        return {"messageStop": {"stopReason": self.stop_reason.value}}


@dataclass(frozen=True)
class MetadataEvent:
    usage: TokenUsage

    def to_dict(self) -> dict[str, Any]:
        return {"metadata": {"usage": self.usage.to_dict()}}


StreamEvent = Union[
    MessageStart,
    ContentBlockStart,
    ContentBlockDelta,
    ContentBlockStop,
    MessageStop,
    MetadataEvent,
]
