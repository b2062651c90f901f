"""
Converse Bridge - Agent orchestrator.

Runs one conversation: takes user input, streams the model's reply, runs
requested tools, re-submits their results until the model stops asking for
tools, and keeps the durable session history in step with the in-memory
conversation.

Example::

    orchestrator = AgentOrchestrator(
        config=ChatConfig(model_id="litellm:claude-sonnet", tools=executor.specs),
        client=ProxyClient(ProxyConfig.from_env()),
        tool_executor=executor,
        store=InMemorySessionStore(),
        hooks=OrchestratorHooks(on_update=render),
    )
    result = await orchestrator.submit("Search for cats")
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .accumulator import MessageAccumulator
from .client import ConverseRequest, ProxyClient
from .collaborators import Guardrail, GuardrailSource, OrchestratorHooks, ToolExecutor
from .config import ChatConfig
from .exceptions import MalformedStreamError, OperationCancelledError, RequestError
from .history import SessionStore
from .models import (
    CacheHintBlock,
    ContentBlock,
    ImageBlock,
    ImageFormat,
    Message,
    MessageStop,
    MetadataEvent,
    Role,
    StopReason,
    TextBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    ToolResultContent,
    ToolResultStatus,
    generate_message_id,
)
from .session import (
    CancellationToken,
    SessionState,
    TurnState,
    find_dangling_tool_invocations,
    limit_context_length,
    strip_traces,
)
from .validation import validate_positive_int, validate_submission

logger = logging.getLogger("conversebridge.orchestrator")

DEFAULT_COMPLETION_SUMMARY = "Chat complete"
GUARDRAIL_BLOCKED_MESSAGE = "The tool result was blocked by the guardrail."
NOTIFICATION_MAX_LENGTH = 100
MALFORMED_STREAM_RETRIES = 1

_SENTENCE_SPLIT = re.compile(r"[.。]")


@dataclass
class Attachment:
    """An image attached to a user message."""

    mime_type: str
    data: bytes

    def to_block(self) -> ImageBlock:
        return ImageBlock(format=ImageFormat.from_mime_type(self.mime_type), data=self.data)


@dataclass
class TurnResult:
    """Outcome of one submitted turn.

    ``stop_reason`` is None when the turn was aborted.
    """

    stop_reason: Optional[StopReason]
    messages: tuple[Message, ...]
    aborted: bool = False


def summarize_for_notification(text: str) -> str:
    """First one or two sentences of ``text``, at most 100 characters."""
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text or "") if s.strip()]
    summary = ". ".join(sentences[:2]).strip()
    if len(summary) > NOTIFICATION_MAX_LENGTH:
        summary = summary[:NOTIFICATION_MAX_LENGTH] + "..."
    return summary or DEFAULT_COMPLETION_SUMMARY


def tool_output_content(output: Any) -> tuple[ToolResultContent, ...]:
    """Wrap raw tool output as tool-result content."""
    if isinstance(output, (dict, list)):
        return (ToolResultContent(structured=output),)
    if output is None:
        return (ToolResultContent(text=""),)
    return (ToolResultContent(text=output if isinstance(output, str) else str(output)),)


class AgentOrchestrator:
    """Drives the stream, tool and persistence loop for one conversation.

    All state lives in ``self.state`` and is only mutated here; observers
    receive snapshots through ``hooks.on_update``.
    """

    def __init__(
        self,
        config: ChatConfig,
        client: ProxyClient,
        tool_executor: Optional[ToolExecutor] = None,
        store: Optional[SessionStore] = None,
        guardrail: Optional[Guardrail] = None,
        hooks: Optional[OrchestratorHooks] = None,
    ) -> None:
        validate_positive_int(config.inference.max_tokens, "max_tokens")
        validate_positive_int(config.max_tool_rounds, "max_tool_rounds")
        self.config = config
        self.client = client
        self.tool_executor = tool_executor
        self.store = store
        self.guardrail = guardrail
        self.hooks = hooks or OrchestratorHooks()
        self.state = SessionState()
        self._token: Optional[CancellationToken] = None

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.state.snapshot()

    @property
    def session_id(self) -> Optional[str]:
        return self.state.session_id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def _history_enabled(self) -> bool:
        return self.store is not None and self.config.enable_history

    def _publish(self) -> None:
        self.hooks.invoke("on_update", self.state.snapshot())

    def _open_scope(self) -> CancellationToken:
        """Retire the current cancellation scope and start a new one."""
        if self._token is not None:
            self._token.cancel()
        self._token = CancellationToken()
        return self._token

    async def _ensure_session(self) -> None:
        if not self._history_enabled or self.state.session_id is not None:
            return
        self.state.session_id = await self.store.create_session(
            self.config.agent_kind, self.config.model_id, self.config.system_prompt
        )

    async def _persist(self, message: Message) -> None:
        if not self._history_enabled or self.state.session_id is None:
            return
        await self.store.add_message(self.state.session_id, message)

    async def _flush_pending(self) -> None:
        """Persist an assistant message still waiting for its usage metadata."""
        pending_id = self.state.pending_metadata_id
        if pending_id is None:
            return
        self.state.pending_metadata_id = None
        message = self.state.find_message(pending_id)
        if message is not None:
            await self._persist(message)

    def _build_request(self, conversation: Sequence[Message]) -> ConverseRequest:
        config = self.config
        messages = limit_context_length(conversation, config.context_length)
        messages = strip_traces(messages, config.trace_fields)

        system: Any = config.system_prompt
        if config.prompt_caching:
            system = [TextBlock(config.system_prompt), CacheHintBlock()] if config.system_prompt else None
            if messages:
                newest = messages[-1]
                messages[-1] = newest.copy(content=[*newest.content, CacheHintBlock()])

        return ConverseRequest(
            model_id=config.model_id,
            messages=messages,
            system=system,
            tools=list(config.tools) or None,
            inference=config.inference,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        user_text: Optional[str],
        attachments: Sequence[Attachment] = (),
    ) -> TurnResult:
        """Send a user message and run the turn to completion.

        Raises:
            InputValidationError: Neither text nor attachments were given,
                or an attachment is not a supported image type.
            ConfigurationError: No model is configured.
            RequestError: The proxy call failed after retries.
        """
        validate_submission(user_text, attachments, self.config.model_id)

        content: list[ContentBlock] = [a.to_block() for a in attachments]
        if user_text:
            content.append(TextBlock(user_text))
        user_message = Message(role=Role.USER, content=content)

        state = self.state
        state.loading = True
        token = self._open_scope()
        try:
            await self._ensure_session()
            state.messages.append(user_message)
            self._publish()
            await self._persist(user_message)

            stop_reason = await self.stream_turn(token=token)
            if stop_reason is StopReason.TOOL_USE and state.messages:
                stop_reason = await self.execute_tools(state.messages[-1].content, token=token)
        except RequestError as e:
            await self._report_error(e)
            raise
        finally:
            await self._flush_pending()
            state.reset_flags()
            if state.turn_state is not TurnState.ABORTED:
                state.turn_state = TurnState.IDLE
            self._publish()

        aborted = stop_reason is None
        if not aborted:
            self._notify_complete()
        return TurnResult(stop_reason=stop_reason, messages=state.snapshot(), aborted=aborted)

    async def _report_error(self, error: RequestError) -> None:
        logger.error("Request failed for model %s: %s", self.config.model_id, error)
        error_message = Message(role=Role.ASSISTANT, content=[TextBlock(str(error))])
        self.state.draft = None
        self.state.messages.append(error_message)
        self.state.last_assistant_message_id = error_message.id
        self._publish()
        await self._persist(error_message)
        self.hooks.invoke("on_error", error)

    def _notify_complete(self) -> None:
        if not self.config.notifications:
            return
        last_assistant = next(
            (m for m in reversed(self.state.messages) if m.role is Role.ASSISTANT), None
        )
        summary = summarize_for_notification(last_assistant.text if last_assistant else "")
        self.hooks.invoke("on_turn_complete", summary)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_turn(
        self,
        conversation: Optional[Sequence[Message]] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[StopReason]:
        """Stream one model reply onto the conversation.

        Runs under ``token``, the scope of the enclosing turn; without one a
        fresh scope is opened. Returns the stop reason, or None if the scope
        is cancelled, in which case the client is not called at all. A
        stream that arrives malformed is retried once before
        ``MalformedStreamError`` is raised.
        """
        if token is None:
            token = self._open_scope()
        if token.cancelled:
            return None

        state = self.state
        state.loading = True
        state.turn_state = TurnState.STREAMING
        request = self._build_request(state.messages if conversation is None else conversation)

        try:
            for attempt in range(MALFORMED_STREAM_RETRIES + 1):
                try:
                    stop_reason = await self._consume_stream(request, token)
                except OperationCancelledError:
                    logger.info("Stream cancelled for model %s", self.config.model_id)
                    return None
                except RequestError:
                    if token.cancelled:
                        logger.debug("Ignoring transport error after cancellation")
                        return None
                    raise
                if token.cancelled:
                    return None
                if stop_reason is not None:
                    if stop_reason is StopReason.TOOL_USE:
                        state.turn_state = TurnState.TOOL_DETECTED
                    return stop_reason
                if attempt < MALFORMED_STREAM_RETRIES:
                    logger.warning(
                        "Malformed stream from model %s, retrying", self.config.model_id
                    )
            raise MalformedStreamError("Stream ended without a complete message")
        finally:
            state.draft = None
            state.reasoning = False
            await self._flush_pending()

    async def _consume_stream(
        self, request: ConverseRequest, token: CancellationToken
    ) -> Optional[StopReason]:
        """Fold one stream; None means the stream was malformed."""
        state = self.state
        accumulator = MessageAccumulator()
        draft_id = generate_message_id()
        stop_reason: Optional[StopReason] = None

        events = self.client.converse_stream(
            request, token=token, idle_timeout=self.config.stream_idle_timeout
        )
        try:
            async for event in events:
                if token.cancelled:
                    return None
                if isinstance(event, MetadataEvent) and stop_reason is not None:
                    await self._attach_metadata(event)
                    continue
                if isinstance(event, MessageStop) and not accumulator.started:
                    return None

                accumulator.apply(event)

                if isinstance(event, MessageStop):
                    stop_reason = accumulator.stop_reason
                    await self._append_assistant(accumulator, draft_id)
                elif not isinstance(event, MetadataEvent):
                    state.reasoning = accumulator.reasoning
                    state.draft = accumulator.snapshot(draft_id)
                    self._publish()
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
        return stop_reason

    async def _append_assistant(self, accumulator: MessageAccumulator, message_id: str) -> None:
        state = self.state
        message = accumulator.result().message
        message.id = message_id
        if accumulator.usage is not None:
            message.metadata["usage"] = accumulator.usage.to_dict()

        state.draft = None
        state.messages.append(message)
        state.last_assistant_message_id = message.id
        self._publish()

        if accumulator.usage is not None:
            await self._persist(message)
        else:
            state.pending_metadata_id = message.id

    async def _attach_metadata(self, event: MetadataEvent) -> None:
        state = self.state
        target_id = state.last_assistant_message_id
        message = state.find_message(target_id) if target_id else None
        if message is None:
            return
        message.metadata["usage"] = event.usage.to_dict()
        self._publish()
        if state.pending_metadata_id == message.id:
            state.pending_metadata_id = None
            await self._persist(message)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def execute_tools(
        self,
        content_blocks: Sequence[ContentBlock],
        conversation: Optional[Sequence[Message]] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[StopReason]:
        """Run requested tools and continue the conversation until no more are requested.

        Each round runs every invocation in ``content_blocks`` in order,
        appends one user message with all results, and streams the next
        reply over ``conversation`` (the session messages by default) plus
        everything appended since. Returns the final stop reason, or None
        if aborted.
        """
        if token is None:
            token = self._open_scope()
        stop_reason: Optional[StopReason] = StopReason.TOOL_USE
        accumulated = list(self.state.messages if conversation is None else conversation)
        blocks = list(content_blocks)
        rounds = 0
        needs_more_tool_rounds = True

        while needs_more_tool_rounds:
            invocations = [b for b in blocks if isinstance(b, ToolInvocationBlock) and b.name]
            if not invocations:
                break
            if self.config.max_tool_rounds is not None and rounds >= self.config.max_tool_rounds:
                logger.warning("Stopping after %d tool rounds", rounds)
                break

            self.state.turn_state = TurnState.EXECUTING
            results: list[ContentBlock] = []
            for invocation in invocations:
                result = await self._run_tool(invocation)
                if token.cancelled:
                    return None
                results.append(result)

            tool_message = Message(role=Role.USER, content=results)
            self.state.messages.append(tool_message)
            accumulated.append(tool_message)
            self._publish()
            await self._persist(tool_message)
            if token.cancelled:
                return None
            rounds += 1

            stop_reason = await self.stream_turn(accumulated, token)
            if stop_reason is None:
                return None
            reply = self.state.messages[-1]
            accumulated.append(reply)
            blocks = list(reply.content)
            needs_more_tool_rounds = stop_reason is StopReason.TOOL_USE

        return stop_reason

    async def _run_tool(self, invocation: ToolInvocationBlock) -> ToolResultBlock:
        state = self.state
        name = invocation.name
        if isinstance(invocation.input, dict):
            payload = {"type": name, **invocation.input}
        else:
            payload = {"type": name, "input": invocation.input}

        state.executing_tool = name
        self.hooks.invoke("on_tool_start", name)
        self._publish()
        try:
            if self.tool_executor is None:
                raise RuntimeError(f"No tool executor configured for {name}")
            output = await self.tool_executor.execute(payload)
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return ToolResultBlock(
                tool_use_id=invocation.tool_use_id,
                content=(ToolResultContent(text=str(e)),),
                status=ToolResultStatus.ERROR,
            )
        finally:
            state.executing_tool = None
            self.hooks.invoke("on_tool_end", name)

        result = ToolResultBlock(
            tool_use_id=invocation.tool_use_id,
            content=tool_output_content(output),
            status=ToolResultStatus.SUCCESS,
        )
        return await self._apply_guardrail(name, output, result)

    async def _apply_guardrail(self, name: str, output: Any, result: ToolResultBlock) -> ToolResultBlock:
        settings = self.config.guardrail
        if self.guardrail is None or not settings.active or name in settings.trusted_tools:
            return result

        text = output if isinstance(output, str) else json.dumps(output, default=str)
        try:
            verdict = await self.guardrail.apply(
                settings.identifier, settings.version, GuardrailSource.OUTPUT, text
            )
        except Exception:
            logger.warning("Guardrail evaluation failed for tool %s", name, exc_info=True)
            return result

        if not verdict.intervened:
            return result

        message = verdict.outputs[0] if verdict.outputs else GUARDRAIL_BLOCKED_MESSAGE
        logger.warning("Guardrail intervened for tool %s", name)
        self.hooks.invoke("on_guardrail_intervention", name, message)
        return ToolResultBlock(
            tool_use_id=result.tool_use_id,
            content=(ToolResultContent(text=message),),
            status=ToolResultStatus.ERROR,
        )

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    async def abort(self) -> None:
        """Stop the current turn and repair the conversation.

        Assistant messages whose tool invocations never got a result are
        removed from memory and from the session store. Never raises.
        """
        await self._abort()
        self.hooks.invoke("on_stopped")

    async def _abort(self) -> None:
        state = self.state
        if self._token is not None:
            self._token.cancel()
        try:
            await self._flush_pending()
        except Exception:
            logger.exception("Failed to persist pending message for session %s", state.session_id)
        state.reset_flags()
        state.turn_state = TurnState.ABORTED

        dangling = find_dangling_tool_invocations(state.messages)
        for index in dangling:
            del state.messages[index]
        self._publish()

        if dangling and self._history_enabled and state.session_id is not None:
            for index in dangling:
                try:
                    await self.store.delete_message(state.session_id, index)
                except Exception:
                    logger.exception("Failed to delete message %d from session %s", index, state.session_id)

    async def clear_session(self) -> Optional[str]:
        """Abort, then start a new empty session. The previous one is kept in the store."""
        await self._abort()
        self.state = SessionState()
        if self._history_enabled:
            self.state.session_id = await self.store.create_session(
                self.config.agent_kind, self.config.model_id, self.config.system_prompt
            )
        self._publish()
        return self.state.session_id

    async def switch_session(self, session_id: str) -> None:
        """Abort, then load ``session_id`` from the store and make it active."""
        await self._abort()
        if self.store is None:
            raise RuntimeError("No session store configured")
        stored = self.store.get_session(session_id)
        if stored is None:
            raise KeyError(f"Unknown session: {session_id}")
        await self.store.set_active_session(session_id)
        self.state = SessionState(session_id=session_id, messages=list(stored.messages))
        last_assistant = next(
            (m for m in reversed(stored.messages) if m.role is Role.ASSISTANT), None
        )
        self.state.last_assistant_message_id = last_assistant.id if last_assistant else None
        self._publish()
