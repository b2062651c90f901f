"""
Configuration for Converse Bridge.

All settings are passed explicitly to the client and orchestrator; nothing
is read from a process-wide store at call time. ``from_env`` constructors
exist for embedding applications that keep settings in the environment.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Optional

ENV_PREFIX = "CONVERSEBRIDGE_"

DEFAULT_TRACE_FIELDS: tuple[tuple[str, ...], ...] = (("result", "completion", "traces"),)


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _env_float(name: str) -> Optional[float]:
    value = _env(name)
    return float(value) if value not in (None, "") else None


def _env_int(name: str) -> Optional[int]:
    value = _env(name)
    return int(value) if value not in (None, "") else None


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class ProxyCredentials:
    """Endpoint and key for the OpenAI-compatible proxy."""

    api_key: str = ""
    base_url: str = "http://localhost:4000"

    @property
    def cache_key(self) -> str:
        return f"{self.base_url}-{self.api_key}"

    @classmethod
    def from_env(cls) -> "ProxyCredentials":
        return cls(
            api_key=_env("API_KEY", "") or "",
            base_url=_env("BASE_URL", "http://localhost:4000") or "http://localhost:4000",
        )


@dataclass
class ThinkingMode:
    """Extended reasoning request sent to models that support it."""

    type: str = "disabled"
    budget_tokens: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return self.type == "enabled" and bool(self.budget_tokens)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "budget_tokens": self.budget_tokens}


@dataclass
class InferenceParams:
    """Sampling parameters for a completion request."""

    max_tokens: int = 4096
    temperature: float = 0.5
    top_p: Optional[float] = None
    thinking: Optional[ThinkingMode] = None

    @classmethod
    def from_env(cls) -> "InferenceParams":
        budget = _env_int("THINKING_BUDGET")
        temperature = _env_float("TEMPERATURE")
        return cls(
            max_tokens=_env_int("MAX_TOKENS") or 4096,
            temperature=temperature if temperature is not None else 0.5,
            top_p=_env_float("TOP_P"),
            thinking=ThinkingMode(type="enabled", budget_tokens=budget) if budget else None,
        )


@dataclass
class GuardrailSettings:
    """Content-policy check applied to tool output.

    Tools listed in ``trusted_tools`` produce output that is already
    considered safe and is never submitted to the guardrail.
    """

    enabled: bool = False
    identifier: Optional[str] = None
    version: Optional[str] = None
    trusted_tools: frozenset[str] = field(default_factory=frozenset)

    @property
    def active(self) -> bool:
        return bool(self.enabled and self.identifier and self.version)

    @classmethod
    def from_env(cls) -> "GuardrailSettings":
        identifier = _env("GUARDRAIL_ID")
        version = _env("GUARDRAIL_VERSION")
        return cls(
            enabled=bool(identifier and version),
            identifier=identifier,
            version=version,
        )


@dataclass
class ProxyConfig:
    """Connection settings for ``ProxyClient``."""

    credentials: ProxyCredentials = field(default_factory=ProxyCredentials)
    model_prefix: str = "litellm:"
    timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        return cls(
            credentials=ProxyCredentials.from_env(),
            timeout=_env_float("TIMEOUT") or 60.0,
        )


@dataclass
class ChatConfig:
    """Per-conversation behavior of the agent orchestrator.

    Attributes:
        model_id: Model to converse with. Required before submitting.
        system_prompt: Optional system text.
        tools: Tool specifications offered to the model.
        inference: Sampling parameters.
        guardrail: Guardrail policy for tool output.
        context_length: Maximum number of messages sent per request.
            ``None`` sends the whole conversation.
        enable_history: Persist messages through the session store.
        notifications: Emit a turn-complete summary through the hooks.
        prompt_caching: Attach cache hints to the system prompt and the
            newest message of each request.
        trace_fields: Nested keys removed from structured tool results
            before they are re-submitted.
        max_tool_rounds: Optional cap on tool rounds per turn.
        agent_kind: Agent label recorded with new sessions.
        stream_idle_timeout: Seconds to wait for the next stream chunk.
            ``None`` waits until cancelled.
    """

    model_id: str = ""
    system_prompt: Optional[str] = None
    tools: list[Any] = field(default_factory=list)
    inference: InferenceParams = field(default_factory=InferenceParams)
    guardrail: GuardrailSettings = field(default_factory=GuardrailSettings)
    context_length: Optional[int] = 60
    enable_history: bool = True
    notifications: bool = True
    prompt_caching: bool = False
    trace_fields: tuple[tuple[str, ...], ...] = DEFAULT_TRACE_FIELDS
    max_tool_rounds: Optional[int] = None
    agent_kind: str = "defaultAgent"
    stream_idle_timeout: Optional[float] = None

    @classmethod
    def from_env(cls) -> "ChatConfig":
        """Create configuration from environment variables."""
        context_length = _env_int("CONTEXT_LENGTH")
        return cls(
            model_id=_env("MODEL", "") or "",
            system_prompt=_env("SYSTEM_PROMPT"),
            inference=InferenceParams.from_env(),
            guardrail=GuardrailSettings.from_env(),
            context_length=context_length if context_length is not None else 60,
            prompt_caching=_env_bool("PROMPT_CACHING"),
        )
