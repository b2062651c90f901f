"""
Converse Bridge - Native converse protocol over OpenAI-compatible proxies.

Translates a block-oriented conversation model to and from the
chat-completions format, reassembles streamed responses, and runs an
agentic tool loop with guardrails, cancellation and session persistence.
"""

from .accumulator import MessageAccumulator, fold_events
from .catalog import ModelCatalog, ModelInfo
from .client import ConverseRequest, ProxyClient
from .collaborators import (
    Guardrail,
    GuardrailAction,
    GuardrailResult,
    GuardrailSource,
    LocalToolExecutor,
    OrchestratorHooks,
    ToolDef,
    ToolExecutor,
    define_tool,
)
from .config import (
    ChatConfig,
    GuardrailSettings,
    InferenceParams,
    ProxyConfig,
    ProxyCredentials,
    ThinkingMode,
)
from .exceptions import (
    ConfigurationError,
    ConverseBridgeError,
    MalformedStreamError,
    OperationCancelledError,
    RequestError,
    ValidationError,
)
from .history import InMemorySessionStore, SessionStore, StoredSession
from .models import (
    CacheHintBlock,
    ContentBlock,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    ConverseResponse,
    ImageBlock,
    ImageFormat,
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
    ToolResultContent,
    ToolResultStatus,
    ToolSpec,
)
from .orchestrator import AgentOrchestrator, Attachment, TurnResult, summarize_for_notification
from .retry import RetryPolicy
from .session import (
    CancellationToken,
    SessionState,
    TurnState,
    find_dangling_tool_invocations,
    limit_context_length,
    strip_traces,
)
from .translator import (
    StreamTranslator,
    from_proxy_response,
    map_stop_reason,
    to_proxy_messages,
    to_proxy_request,
)
from .validation import InputValidationError

__version__ = "0.1.0"
__all__ = [
    "AgentOrchestrator",
    "Attachment",
    "TurnResult",
    "summarize_for_notification",
    "ProxyClient",
    "ConverseRequest",
    "ModelCatalog",
    "ModelInfo",
    "RetryPolicy",
    "StreamTranslator",
    "to_proxy_request",
    "to_proxy_messages",
    "from_proxy_response",
    "map_stop_reason",
    "MessageAccumulator",
    "fold_events",
    "ChatConfig",
    "ProxyConfig",
    "ProxyCredentials",
    "InferenceParams",
    "ThinkingMode",
    "GuardrailSettings",
    "ToolExecutor",
    "ToolDef",
    "define_tool",
    "LocalToolExecutor",
    "Guardrail",
    "GuardrailAction",
    "GuardrailResult",
    "GuardrailSource",
    "OrchestratorHooks",
    "SessionStore",
    "InMemorySessionStore",
    "StoredSession",
    "CancellationToken",
    "SessionState",
    "TurnState",
    "limit_context_length",
    "strip_traces",
    "find_dangling_tool_invocations",
    "Message",
    "Role",
    "StopReason",
    "ContentBlock",
    "TextBlock",
    "ImageBlock",
    "ImageFormat",
    "ReasoningBlock",
    "ToolInvocationBlock",
    "ToolResultBlock",
    "ToolResultContent",
    "ToolResultStatus",
    "CacheHintBlock",
    "ToolSpec",
    "TokenUsage",
    "ConverseResponse",
    "StreamEvent",
    "MessageStart",
    "ContentBlockStart",
    "ContentBlockDelta",
    "ContentBlockStop",
    "MessageStop",
    "MetadataEvent",
    "ConverseBridgeError",
    "ValidationError",
    "InputValidationError",
    "ConfigurationError",
    "RequestError",
    "MalformedStreamError",
    "OperationCancelledError",
]
