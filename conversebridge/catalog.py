"""
Converse Bridge - Model catalog.

Lists the models a LiteLLM-style proxy serves, from its
``/v2/model/info`` endpoint. Results are cached briefly per endpoint and
key; a failing proxy yields an empty catalog rather than an error.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from .config import ProxyCredentials

logger = logging.getLogger("conversebridge.catalog")

CACHE_LIFETIME = 5.0
DEFAULT_MAX_TOKENS = 4096


@dataclass
class ModelInfo:
    """A model offered by the proxy."""

    model_id: str
    model_name: str
    tool_use: bool = False
    max_tokens_limit: int = DEFAULT_MAX_TOKENS
    supports_thinking: bool = False
    provider: str = "litellm"
    regions: list[str] = field(default_factory=lambda: ["default"])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelInfo":
        """Build from one entry of the proxy's model info listing."""
        info = data.get("model_info") or {}
        model_id = data["model_name"]
        return cls(
            model_id=model_id,
            model_name=f"{model_id} (LiteLLM)",
            tool_use=bool(info.get("supports_function_calling") or info.get("supports_tool_choice")),
            max_tokens_limit=info.get("max_tokens") or DEFAULT_MAX_TOKENS,
            supports_thinking="thinking" in (info.get("supported_openai_params") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "model_name": self.model_name,
            "tool_use": self.tool_use,
            "max_tokens_limit": self.max_tokens_limit,
            "supports_thinking": self.supports_thinking,
            "provider": self.provider,
            "regions": list(self.regions),
        }


def parse_model_listing(data: Any) -> list[ModelInfo]:
    """Map a model info payload to ``ModelInfo`` entries, first entry per name wins."""
    entries = data.get("data") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        logger.warning("Invalid model data format from proxy")
        return []

    models: dict[str, ModelInfo] = {}
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("model_name"):
            continue
        if entry["model_name"] not in models:
            models[entry["model_name"]] = ModelInfo.from_dict(entry)
    return list(models.values())


class ModelCatalog:
    """Cached model listing for one or more proxy endpoints."""

    def __init__(
        self,
        credentials: ProxyCredentials,
        cache_lifetime: float = CACHE_LIFETIME,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self.cache_lifetime = cache_lifetime
        self._timeout = timeout
        self._transport = transport
        self._cache: dict[str, tuple[float, list[ModelInfo]]] = {}

    def invalidate(self) -> None:
        self._cache.clear()

    async def list_models(self, credentials: Optional[ProxyCredentials] = None) -> list[ModelInfo]:
        """List available models; returns ``[]`` if the proxy cannot be queried."""
        credentials = credentials or self.credentials
        cache_key = credentials.cache_key
        cached = self._cache.get(cache_key)
        if cached and time.monotonic() - cached[0] < self.cache_lifetime:
            return list(cached[1])

        try:
            async with httpx.AsyncClient(
                base_url=credentials.base_url.rstrip("/"),
                headers={
                    "Authorization": f"Bearer {credentials.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.get("/v2/model/info")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error fetching models from %s: %s", credentials.base_url, e)
            return []

        models = parse_model_listing(data)
        self._cache[cache_key] = (time.monotonic(), models)
        return list(models)
