"""
Converse Bridge - External collaborators of the agent orchestrator.

Tool execution and guardrail evaluation happen outside the bridge; this
module defines their call contracts, a local tool executor built from
``ToolDef`` handlers, and the hook configuration through which a UI
observes a turn.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .models import Message, ToolSpec
from .validation import validate_required

logger = logging.getLogger("conversebridge.collaborators")


# ---------------------------------------------------------------------------
# Tool execution
# ---------------------------------------------------------------------------


class ToolExecutor(ABC):
    """Runs a tool requested by the model.

    ``invocation`` is ``{"type": <tool name>, **input}``. Any exception is
    turned into an error tool result by the orchestrator.
    """

    @abstractmethod
    async def execute(self, invocation: dict[str, Any]) -> Any:
        ...


@dataclass
class ToolDef:
    """A locally handled tool.

    Example::

        ToolDef(
            name="search",
            description="Search the knowledge base.",
            parameters={
                "type": "object",
                "properties": {"q": {"type": "string", "description": "Query."}},
                "required": ["q"],
            },
            handler=search,
        )
    """

    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {
            "type": "object",
            "properties": {
                "input": {"type": "string", "description": "Input for the tool."},
            },
            "required": ["input"],
        }
    )
    handler: Optional[Callable] = None

    def to_spec(self) -> ToolSpec:
        """Return the native tool specification offered to the model."""
        return ToolSpec(name=self.name, description=self.description, input_schema=self.parameters)


def define_tool(
    name: Optional[str] = None,
    description: str = "",
    parameters: Optional[dict] = None,
) -> Callable:
    """Decorator that turns a function into a :class:`ToolDef`.

    Usage::

        @define_tool(description="Search the web.", parameters={
            "type": "object",
            "properties": {"q": {"type": "string"}},
            "required": ["q"],
        })
        async def search(q: str) -> dict:
            return {"results": [...]}
    """

    def decorator(func: Callable) -> ToolDef:
        tool_name = name or func.__name__
        tool = ToolDef(
            name=tool_name,
            description=description or func.__doc__ or f"Tool: {tool_name}",
            handler=func,
        )
        if parameters:
            tool.parameters = parameters
        return tool

    return decorator


class LocalToolExecutor(ToolExecutor):
    """Dispatches invocations to in-process ``ToolDef`` handlers."""

    def __init__(self, tools: Sequence[ToolDef]) -> None:
        for t in tools:
            validate_required(t.name, "name")
        self._tools = {t.name: t for t in tools}

    @property
    def specs(self) -> list[ToolSpec]:
        return [t.to_spec() for t in self._tools.values()]

    async def execute(self, invocation: dict[str, Any]) -> Any:
        arguments = dict(invocation)
        tool_name = arguments.pop("type", None)
        tool = self._tools.get(tool_name or "")
        if tool is None or tool.handler is None:
            raise LookupError(f"Unknown tool: {tool_name}")
        if asyncio.iscoroutinefunction(tool.handler):
            return await tool.handler(**arguments)
        return tool.handler(**arguments)


# ---------------------------------------------------------------------------
# Guardrail
# ---------------------------------------------------------------------------


class GuardrailAction(str, Enum):
    NONE = "NONE"
    GUARDRAIL_INTERVENED = "GUARDRAIL_INTERVENED"


class GuardrailSource(str, Enum):
    INPUT = "INPUT"
    OUTPUT = "OUTPUT"


@dataclass
class GuardrailResult:
    """Outcome of a guardrail evaluation.

    ``outputs`` holds the remediation text supplied on intervention.
    """

    action: GuardrailAction = GuardrailAction.NONE
    outputs: list[str] = field(default_factory=list)

    @property
    def intervened(self) -> bool:
        return self.action is GuardrailAction.GUARDRAIL_INTERVENED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GuardrailResult":
        outputs = []
        for output in data.get("outputs") or []:
            text = output.get("text") if isinstance(output, dict) else output
            if text:
                outputs.append(text)
        return cls(action=GuardrailAction(data.get("action", "NONE")), outputs=outputs)


class Guardrail(ABC):
    """Content-policy check applied to tool output."""

    @abstractmethod
    async def apply(
        self,
        identifier: str,
        version: str,
        source: GuardrailSource,
        content: str,
    ) -> GuardrailResult:
        ...


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


@dataclass
class OrchestratorHooks:
    """Callbacks through which a UI observes the orchestrator.

    Attributes:
        on_update: Called with a read-only snapshot of the conversation
            after every change, including each streamed delta.
            Signature: (messages: tuple[Message, ...]) -> None
        on_tool_start: Called before a tool runs. Signature: (name: str) -> None
        on_tool_end: Called after a tool finishes. Signature: (name: str) -> None
        on_turn_complete: Called once per completed turn with a short
            summary of the final answer. Signature: (summary: str) -> None
        on_error: Called when a turn fails with a request error.
            Signature: (error: Exception) -> None
        on_guardrail_intervention: Called when the guardrail replaces a
            tool result. Signature: (tool_name: str, text: str) -> None
        on_stopped: Called after a user abort. Signature: () -> None
    """

    on_update: Optional[Callable[[tuple[Message, ...]], None]] = None
    on_tool_start: Optional[Callable[[str], None]] = None
    on_tool_end: Optional[Callable[[str], None]] = None
    on_turn_complete: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_guardrail_intervention: Optional[Callable[[str, str], None]] = None
    on_stopped: Optional[Callable[[], None]] = None

    def invoke(self, name: str, *args: Any) -> None:
        """Invoke hook ``name`` if configured; hook failures are logged only."""
        hook = getattr(self, name, None)
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:
            logger.exception("Hook %s failed", name)
