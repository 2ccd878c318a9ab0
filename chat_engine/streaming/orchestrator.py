"""
Lifecycle of one conversation's connection to the generation service.

A conversation moves IDLE -> INITIALIZING -> STREAMING -> {COMPLETED,
CANCELLED, ERRORED} -> IDLE. Every public coroutine resolves to an observable
outcome; transport and credential failures end up as a single ``role=error``
message on the conversation instead of an exception.

Only one turn is live at a time. Starting a new turn, regenerating, editing
or cancelling retires the current one: its placeholder stops streaming at
once and any units its transport delivers afterwards are dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

from chat_engine.errors import INIT_FAILED_MESSAGE, GenerationError, classify_error
from chat_engine.logging_config import logger
from chat_engine.models import (
    Attachment,
    Conversation,
    GeneratedMedia,
    GenerationSettings,
    Message,
    MessageRole,
    UsageTotals,
    changed_fields,
)
from chat_engine.provider.key_pool import KeyHealthPool
from chat_engine.provider.transport import (
    GenerationTransport,
    GroundingRefs,
    MediaChunk,
    ReasoningDelta,
    SessionHandle,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
    TextDelta,
    UsageReport,
    to_transport_history,
)
from chat_engine.sanitizer import mask_credential


class StreamState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    STREAMING = "streaming"


class StreamOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass(frozen=True)
class MessageEvent:
    """
    A message-list mutation pushed to the UI shell.

    ``kind`` is "append", "update" or "truncate"; truncate carries no message.
    """

    kind: str
    conversation_id: str
    message: Optional[Message] = None


MessageListener = Callable[[MessageEvent], None]


@dataclass
class ActiveStreamContext:
    handle: SessionHandle
    credential: Optional[str]
    settings: GenerationSettings


@dataclass(frozen=True)
class InitFailure:
    error: GenerationError
    credential: Optional[str] = None
    # Torn down by a newer action while opening; nothing should be reported.
    superseded: bool = False


@dataclass(eq=False)
class _Turn:
    state: StreamState = StreamState.INITIALIZING
    retired: bool = False
    message: Optional[Message] = None


def pre_turn_history(messages: Sequence[Message]) -> List[Message]:
    """
    Messages the model should see before the next turn.

    A trailing user message has no answer yet; it is the prompt of the turn
    being started, so it is left out of the history.
    """
    finished = [m for m in messages if not m.is_streaming]
    if finished and finished[-1].role == MessageRole.USER:
        finished = finished[:-1]
    return finished


class StreamOrchestrator:
    def __init__(
        self,
        transport: GenerationTransport,
        key_pool: KeyHealthPool,
        *,
        default_credential: Optional[str] = None,
        listener: Optional[MessageListener] = None,
    ) -> None:
        self._transport = transport
        self._pool = key_pool
        self._default_credential = default_credential
        self._listener = listener
        self._context: Optional[ActiveStreamContext] = None
        self._turn: Optional[_Turn] = None
        self._epoch = 0
        self.last_outcome: Optional[StreamOutcome] = None

    @property
    def state(self) -> StreamState:
        return self._turn.state if self._turn is not None else StreamState.IDLE

    @property
    def active_context(self) -> Optional[ActiveStreamContext]:
        return self._context

    def set_listener(self, listener: Optional[MessageListener]) -> None:
        self._listener = listener

    # -- notifications -------------------------------------------------

    def _emit(self, kind: str, conversation: Conversation, message: Optional[Message]) -> None:
        if self._listener is None:
            return
        try:
            self._listener(MessageEvent(kind=kind, conversation_id=conversation.id, message=message))
        except Exception:
            logger.exception("orchestrator: message listener failed for %s", conversation.id)

    def _append(self, conversation: Conversation, message: Message) -> None:
        conversation.messages.append(message)
        conversation.touch()
        self._emit("append", conversation, message)

    # -- context management --------------------------------------------

    def _retire_turn(self, conversation: Optional[Conversation] = None) -> None:
        turn = self._turn
        if turn is None:
            return
        turn.retired = True
        self._turn = None
        message = turn.message
        if message is not None and message.is_streaming:
            message.is_streaming = False
            if conversation is not None:
                self._emit("update", conversation, message)

    def discard_context(self, conversation: Optional[Conversation] = None) -> None:
        """
        Drop the live service connection and retire any in-flight turn.
        """
        self._retire_turn(conversation)
        self._epoch += 1
        ctx = self._context
        self._context = None
        if ctx is not None:
            ctx.handle.close()
            logger.debug("orchestrator: context for %s discarded", mask_credential(ctx.credential))

    async def ensure_session(
        self,
        conversation: Conversation,
        history_override: Optional[Sequence[Message]] = None,
    ) -> Union[ActiveStreamContext, InitFailure]:
        """
        Reuse the live context when its settings still match, otherwise open a new one.
        """
        return await self._open_or_reuse(conversation, history_override, owner=None)

    async def _open_or_reuse(
        self,
        conversation: Conversation,
        history_override: Optional[Sequence[Message]],
        *,
        owner: Optional[_Turn],
    ) -> Union[ActiveStreamContext, InitFailure]:
        settings = conversation.settings
        ctx = self._context
        if ctx is not None and ctx.settings == settings:
            return ctx

        if ctx is not None:
            logger.info(
                "orchestrator: settings changed for %s (%s); reinitializing",
                conversation.id,
                ", ".join(changed_fields(settings, ctx.settings)),
            )
            ctx.handle.close()
            self._context = None
        if self._turn is not None and self._turn is not owner:
            self._retire_turn(conversation)
        self._epoch += 1
        epoch = self._epoch

        source = history_override if history_override is not None else conversation.messages
        history = to_transport_history(pre_turn_history(source))
        credential = self._pool.select_healthy() or self._default_credential

        try:
            handle = await self._transport.open(
                model=settings.model_id,
                settings=settings,
                history=history,
                credential=credential,
            )
        except Exception as exc:
            error = classify_error(exc)
            if epoch != self._epoch:
                return InitFailure(error=error, credential=credential, superseded=True)
            logger.warning(
                "orchestrator: session init failed for %s with %s: %r",
                conversation.id,
                mask_credential(credential),
                error,
            )
            if credential:
                self._pool.report_error(credential)
            return InitFailure(error=error, credential=credential)

        if epoch != self._epoch:
            handle.close()
            return InitFailure(
                error=GenerationError("session superseded during initialization"),
                credential=credential,
                superseded=True,
            )

        self._context = ActiveStreamContext(handle=handle, credential=credential, settings=settings)
        logger.info(
            "orchestrator: session ready for %s model=%s history=%d key=%s",
            conversation.id,
            settings.model_id,
            len(history),
            mask_credential(credential),
        )
        return self._context

    # -- turns -----------------------------------------------------------

    def _apply(self, conversation: Conversation, message: Message, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            message.content += event.text
        elif isinstance(event, ReasoningDelta):
            message.thoughts = (message.thoughts or "") + event.text
        elif isinstance(event, GroundingRefs):
            message.grounding_refs = list(event.refs)
        elif isinstance(event, UsageReport):
            message.usage = UsageTotals(
                prompt_tokens=event.prompt_tokens,
                output_tokens=event.output_tokens,
                total_tokens=event.total_tokens,
            )
        elif isinstance(event, MediaChunk):
            message.generated_media = GeneratedMedia(data=event.data, mime_type=event.mime_type)
        else:
            logger.debug("orchestrator: ignoring unknown stream event %r", event)
            return
        self._emit("update", conversation, message)

    def _fail_turn(
        self,
        conversation: Conversation,
        message: Message,
        ctx: ActiveStreamContext,
        error: GenerationError,
    ) -> None:
        logger.warning(
            "orchestrator: stream failed for %s (kind=%s retryable=%s): %s",
            conversation.id,
            error.kind.value,
            error.retryable,
            error,
        )
        if error.credential_level and ctx.credential:
            self._pool.report_error(ctx.credential)
        message.role = MessageRole.ERROR
        message.content = error.user_message
        message.is_streaming = False
        conversation.touch()
        self._emit("update", conversation, message)
        # The next turn should pick a credential again.
        if self._context is ctx:
            self.discard_context()

    def _finish(self, turn: _Turn, outcome: StreamOutcome) -> StreamOutcome:
        if self._turn is turn:
            self._turn = None
        self.last_outcome = outcome
        return outcome

    async def send(
        self,
        conversation: Conversation,
        text: str,
        attachments: Sequence[Attachment] = (),
        history_override: Optional[Sequence[Message]] = None,
    ) -> StreamOutcome:
        """
        Stream a model reply to ``text`` into a new placeholder message.

        The user message itself is expected to be on the conversation already.
        """
        if self._turn is not None:
            logger.info("orchestrator: abandoning in-flight turn for %s", conversation.id)
            self.discard_context(conversation)

        turn = _Turn()
        self._turn = turn

        result = await self._open_or_reuse(conversation, history_override, owner=turn)
        if isinstance(result, InitFailure):
            if result.superseded or turn.retired:
                return self._finish(turn, StreamOutcome.CANCELLED)
            self._append(
                conversation,
                Message.error(f"{INIT_FAILED_MESSAGE} ({result.error.user_message})"),
            )
            return self._finish(turn, StreamOutcome.ERRORED)
        if turn.retired:
            return self._finish(turn, StreamOutcome.CANCELLED)

        ctx = result
        message = Message.placeholder()
        turn.message = message
        turn.state = StreamState.STREAMING
        self._append(conversation, message)

        outcome = await self._drive(conversation, ctx, turn, message, text, attachments)
        logger.info("orchestrator: turn for %s finished: %s", conversation.id, outcome.value)
        return self._finish(turn, outcome)

    async def _drive(
        self,
        conversation: Conversation,
        ctx: ActiveStreamContext,
        turn: _Turn,
        message: Message,
        text: str,
        attachments: Sequence[Attachment],
    ) -> StreamOutcome:
        stream = self._transport.stream_turn(ctx.handle, text, list(attachments))
        try:
            async for event in stream:
                if turn.retired:
                    return StreamOutcome.CANCELLED
                if isinstance(event, StreamCompleted):
                    break
                if isinstance(event, StreamFailed):
                    self._fail_turn(conversation, message, ctx, event.error)
                    return StreamOutcome.ERRORED
                self._apply(conversation, message, event)
        except Exception as exc:
            if turn.retired:
                return StreamOutcome.CANCELLED
            self._fail_turn(conversation, message, ctx, classify_error(exc))
            return StreamOutcome.ERRORED
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("orchestrator: closing transport stream failed", exc_info=True)

        if turn.retired:
            return StreamOutcome.CANCELLED
        message.is_streaming = False
        conversation.touch()
        self._emit("update", conversation, message)
        return StreamOutcome.COMPLETED

    def cancel(self, conversation: Optional[Conversation] = None) -> None:
        """
        Stop the in-flight turn; partial content stays as it is.
        """
        if self._turn is None:
            return
        logger.info("orchestrator: cancel requested")
        self.discard_context(conversation)
        self.last_outcome = StreamOutcome.CANCELLED

    async def regenerate(self, conversation: Conversation) -> Optional[StreamOutcome]:
        """
        Drop the last answer and stream a fresh one for the same user turn.
        """
        messages = conversation.messages
        if not messages or messages[-1].role not in (MessageRole.MODEL, MessageRole.ERROR):
            return None
        if len(messages) < 2 or messages[-2].role != MessageRole.USER:
            logger.warning(
                "orchestrator: regenerate skipped for %s; no user turn precedes the last answer",
                conversation.id,
            )
            return None

        self.discard_context(conversation)
        del messages[-1]
        conversation.touch()
        self._emit("truncate", conversation, None)

        user_message = messages[-1]
        return await self.send(
            conversation,
            user_message.content,
            user_message.attachments or [],
            history_override=list(messages),
        )

    def edit_and_resend(
        self, conversation: Conversation, message_id: str, new_text: str
    ) -> Optional[Message]:
        """
        Cut the conversation back to before a user message.

        Returns the replacement user message (new text, original attachments)
        for the caller to append and send; None when the edit is not allowed.
        """
        idx = conversation.find_message(message_id)
        if idx is None or conversation.messages[idx].role != MessageRole.USER:
            return None

        original = conversation.messages[idx]
        self.discard_context(conversation)
        del conversation.messages[idx:]
        conversation.touch()
        self._emit("truncate", conversation, None)
        return Message.user(new_text, original.attachments)


__all__ = [
    "ActiveStreamContext",
    "InitFailure",
    "MessageEvent",
    "MessageListener",
    "StreamOrchestrator",
    "StreamOutcome",
    "StreamState",
    "pre_turn_history",
]
