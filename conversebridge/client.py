"""
Converse Bridge - Proxy client.

Sends native conversations to an OpenAI-compatible chat-completions proxy
through the OpenAI SDK and returns native responses or native stream
events. Retries are owned by ``RetryPolicy``; the SDK's own retry loop is
disabled.

Example::

    client = ProxyClient(ProxyConfig.from_env())
    request = ConverseRequest(model_id="litellm:claude-sonnet", messages=[...])

    async for event in client.converse_stream(request):
        accumulator.apply(event)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import openai

from .config import InferenceParams, ProxyConfig
from .exceptions import ConfigurationError, OperationCancelledError, RequestError
from .models import ConverseResponse, Message, StreamEvent, ToolSpec
from .retry import RetryPolicy, error_status
from .session import CancellationToken
from .translator import SystemInput, StreamTranslator, from_proxy_response, to_proxy_request
from .validation import validate_url

logger = logging.getLogger("conversebridge.client")

# Request keys accepted as keyword arguments by the SDK; any other key is
# forwarded to the proxy in the request body.
SDK_REQUEST_KEYS = frozenset(
    {"model", "messages", "temperature", "top_p", "max_tokens", "tools", "stream", "stream_options"}
)


@dataclass
class ConverseRequest:
    """One call to the model: conversation, prompt, tools and inference settings."""

    model_id: str
    messages: list[Message] = field(default_factory=list)
    system: SystemInput = None
    tools: Optional[list[ToolSpec]] = None
    inference: Optional[InferenceParams] = None

    @property
    def tool_count(self) -> int:
        return len(self.tools or [])

    def to_body(self, model_prefix: str = "litellm:", stream: bool = False) -> dict[str, Any]:
        return to_proxy_request(
            self.messages,
            system=self.system,
            tools=self.tools,
            params=self.inference,
            model=self.model_id,
            model_prefix=model_prefix,
            stream=stream,
        )


def sdk_kwargs(body: dict[str, Any]) -> dict[str, Any]:
    """Split a request body into SDK keyword arguments and ``extra_body``."""
    kwargs = {k: v for k, v in body.items() if k in SDK_REQUEST_KEYS}
    extra = {k: v for k, v in body.items() if k not in SDK_REQUEST_KEYS}
    if extra:
        kwargs["extra_body"] = extra
    return kwargs


class ProxyClient:
    """Async client for the chat-completions proxy."""

    def __init__(
        self,
        config: ProxyConfig,
        retry_policy: Optional[RetryPolicy] = None,
        openai_client: Any = None,
    ) -> None:
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        if openai_client is None:
            if not config.credentials.base_url:
                raise ConfigurationError("Proxy base URL is not configured")
            validate_url(config.credentials.base_url, "base_url")
            openai_client = openai.AsyncOpenAI(
                api_key=config.credentials.api_key or "sk-none",
                base_url=config.credentials.base_url,
                max_retries=0,
                timeout=config.timeout,
            )
        self._client = openai_client

    async def _open(self, request: ConverseRequest, stream: bool) -> Any:
        kwargs = sdk_kwargs(request.to_body(self.config.model_prefix, stream=stream))
        return await self.retry_policy.run(
            lambda: self._client.chat.completions.create(**kwargs),
            model=request.model_id,
            operation="converse_stream" if stream else "converse",
        )

    def _request_error(self, error: Exception, request: ConverseRequest, operation: str) -> RequestError:
        status = error_status(error)
        logger.error(
            "%s failed for model %s (status %s, %d tools): %s",
            operation,
            request.model_id,
            status,
            request.tool_count,
            error,
        )
        return RequestError(str(error) or type(error).__name__, status_code=status)

    async def converse(self, request: ConverseRequest) -> ConverseResponse:
        """Single-shot call returning the full native response."""
        try:
            response = await self._open(request, stream=False)
        except Exception as e:
            raise self._request_error(e, request, "converse") from e
        return from_proxy_response(response)

    async def converse_stream(
        self,
        request: ConverseRequest,
        token: Optional[CancellationToken] = None,
        idle_timeout: Optional[float] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream native events for one response.

        Cancelling ``token`` closes the underlying HTTP stream; the
        generator then raises ``OperationCancelledError``. A read that
        stalls longer than ``idle_timeout`` seconds is a request error.
        """
        if token is not None:
            token.raise_if_cancelled()
        try:
            stream = await self._open(request, stream=True)
        except Exception as e:
            if token is not None and token.cancelled:
                raise OperationCancelledError("Stream cancelled while opening") from e
            raise self._request_error(e, request, "converse_stream") from e

        close = getattr(stream, "close", None)
        if token is not None and close is not None:
            token.add_callback(close)

        translator = StreamTranslator()
        chunks = stream.__aiter__()
        try:
            while True:
                if token is not None:
                    token.raise_if_cancelled()
                try:
                    if idle_timeout:
                        chunk = await asyncio.wait_for(chunks.__anext__(), idle_timeout)
                    else:
                        chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise self._request_error(
                        TimeoutError(f"No data received for {idle_timeout}s"), request, "converse_stream"
                    ) from e
                except Exception as e:
                    if token is not None and token.cancelled:
                        raise OperationCancelledError("Stream cancelled") from e
                    raise self._request_error(e, request, "converse_stream") from e
                for event in translator.process_chunk(chunk):
                    yield event
        finally:
            if token is not None and close is not None:
                token.remove_callback(close)
