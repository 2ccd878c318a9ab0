"""
Application shell around the streaming engine.

Owns the in-memory conversation list, one StreamOrchestrator per
conversation, the shared key pool and the session store. Every terminal
outcome of a turn is followed by a persistence attempt.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence, Set

from chat_engine.logging_config import conversation_context, logger
from chat_engine.models import (
    DEFAULT_CONVERSATION_TITLE,
    Attachment,
    Conversation,
    GenerationSettings,
    Message,
    MessageRole,
    derive_title,
)
from chat_engine.provider.key_pool import KeyHealthPool
from chat_engine.provider.transport import GenerationTransport
from chat_engine.storage.session_store import PersistResult, SessionStore
from chat_engine.streaming.orchestrator import (
    MessageEvent,
    MessageListener,
    StreamOrchestrator,
    StreamOutcome,
    StreamState,
)


class ConversationNotFoundError(LookupError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class EmptyMessageError(ValueError):
    pass


class ChatService:
    def __init__(
        self,
        *,
        transport: GenerationTransport,
        store: SessionStore,
        key_pool: KeyHealthPool,
        default_credential: Optional[str] = None,
        storage_limit_bytes: Optional[int] = None,
        auto_title_with_model: bool = False,
        title_model_id: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._pool = key_pool
        self._default_credential = default_credential
        self._storage_limit_bytes = storage_limit_bytes
        self._auto_title_with_model = auto_title_with_model
        self._title_model_id = title_model_id
        self._conversations: Dict[str, Conversation] = {}
        self._orchestrators: Dict[str, StreamOrchestrator] = {}
        self._listeners: List[MessageListener] = []
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def key_pool(self) -> KeyHealthPool:
        return self._pool

    # -- listeners -------------------------------------------------------

    def subscribe(self, listener: MessageListener) -> Callable[[], None]:
        """
        Register a message-mutation listener; returns the unsubscribe callable.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _dispatch(self, event: MessageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("chat service: listener failed for %s", event.conversation_id)

    # -- background turns ------------------------------------------------

    @property
    def background_tasks(self) -> frozenset:
        return frozenset(self._background_tasks)

    def start_background(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """
        Run ``coro`` as a task held by the service until it finishes.

        Its failure is logged even when nobody awaits the task, e.g. after the
        client that started a turn has disconnected.
        """
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("chat service: background turn failed: %s", exc, exc_info=exc)

    # -- lookup ----------------------------------------------------------

    def list_conversations(self) -> List[Conversation]:
        return sorted(
            self._conversations.values(), key=lambda c: c.last_modified_at, reverse=True
        )

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def orchestrator_for(self, conversation_id: str) -> StreamOrchestrator:
        self.get_conversation(conversation_id)
        orchestrator = self._orchestrators.get(conversation_id)
        if orchestrator is None:
            orchestrator = StreamOrchestrator(
                self._transport,
                self._pool,
                default_credential=self._default_credential,
                listener=self._dispatch,
            )
            self._orchestrators[conversation_id] = orchestrator
        return orchestrator

    def stream_state(self, conversation_id: str) -> StreamState:
        orchestrator = self._orchestrators.get(conversation_id)
        return orchestrator.state if orchestrator is not None else StreamState.IDLE

    def _drop_orchestrator(self, conversation_id: str) -> None:
        orchestrator = self._orchestrators.pop(conversation_id, None)
        if orchestrator is not None:
            orchestrator.discard_context(self._conversations.get(conversation_id))

    # -- persistence -----------------------------------------------------

    async def load(self) -> List[Conversation]:
        for conversation_id in list(self._orchestrators):
            self._drop_orchestrator(conversation_id)
        loaded = await self._store.load()
        self._conversations = {c.id: c for c in loaded}
        logger.info("chat service: loaded %d conversation(s)", len(loaded))
        return self.list_conversations()

    async def persist(self) -> PersistResult:
        result = await self._store.persist(
            list(self._conversations.values()), self._storage_limit_bytes
        )
        if result.removed_count:
            logger.warning(
                "chat service: %d conversation(s) did not fit the storage limit and were not saved",
                result.removed_count,
            )
        if result.pii_redaction_occurred:
            logger.info("chat service: personal data was redacted in the stored payload")
        return result

    # -- conversation management -----------------------------------------

    async def create_conversation(
        self,
        settings: Optional[GenerationSettings] = None,
        title: Optional[str] = None,
    ) -> Conversation:
        conversation = Conversation(
            title=title or DEFAULT_CONVERSATION_TITLE,
            settings=settings or GenerationSettings(),
        )
        self._conversations[conversation.id] = conversation
        logger.info("chat service: created conversation %s", conversation.id)
        await self.persist()
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        self.get_conversation(conversation_id)
        self._drop_orchestrator(conversation_id)
        del self._conversations[conversation_id]
        logger.info("chat service: deleted conversation %s", conversation_id)
        await self.persist()

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        conversation.title = title.strip() or DEFAULT_CONVERSATION_TITLE
        conversation.touch()
        await self.persist()
        return conversation

    async def clear_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        self._drop_orchestrator(conversation_id)
        conversation.messages.clear()
        conversation.touch()
        await self.persist()
        return conversation

    async def update_settings(
        self, conversation_id: str, settings: GenerationSettings
    ) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        if settings == conversation.settings:
            return conversation
        conversation.settings = settings
        conversation.touch()
        orchestrator = self._orchestrators.get(conversation_id)
        ctx = orchestrator.active_context if orchestrator is not None else None
        if orchestrator is not None and (
            orchestrator.state != StreamState.IDLE or (ctx is not None and ctx.settings != settings)
        ):
            orchestrator.discard_context(conversation)
        await self.persist()
        return conversation

    def set_api_keys(self, keys: Sequence[str]) -> int:
        cleaned = [k.strip() for k in keys if k and k.strip()]
        self._pool.initialize(cleaned)
        return len(self._pool)

    # -- turns -----------------------------------------------------------

    async def _settle(self, conversation: Conversation, outcome: StreamOutcome) -> StreamOutcome:
        logger.debug("chat service: %s turn outcome %s", conversation.id, outcome.value)
        await self.persist()
        return outcome

    async def _maybe_retitle(self, conversation: Conversation, text: str) -> None:
        if not self._auto_title_with_model or not text.strip():
            return
        generate_title = getattr(self._transport, "generate_title", None)
        if generate_title is None:
            return
        title = await generate_title(
            text,
            credential=self._pool.select_healthy() or self._default_credential,
            model=self._title_model_id or conversation.settings.model_id,
        )
        if title:
            conversation.title = title

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[Attachment] = (),
    ) -> StreamOutcome:
        """
        Append the user message and stream the model reply into the conversation.
        """
        conversation = self.get_conversation(conversation_id)
        if not text.strip() and not attachments:
            raise EmptyMessageError("message text or an attachment is required")

        with conversation_context(conversation_id):
            first_turn = not any(m.role == MessageRole.USER for m in conversation.messages)
            user_message = Message.user(text, list(attachments))
            conversation.messages.append(user_message)
            if first_turn and conversation.title == DEFAULT_CONVERSATION_TITLE:
                conversation.title = derive_title(text)
            conversation.touch()
            self._dispatch(MessageEvent("append", conversation.id, user_message))

            orchestrator = self.orchestrator_for(conversation_id)
            outcome = await orchestrator.send(conversation, text, attachments)
            if first_turn:
                await self._maybe_retitle(conversation, text)
            return await self._settle(conversation, outcome)

    async def regenerate(self, conversation_id: str) -> Optional[StreamOutcome]:
        conversation = self.get_conversation(conversation_id)
        with conversation_context(conversation_id):
            outcome = await self.orchestrator_for(conversation_id).regenerate(conversation)
            if outcome is None:
                return None
            return await self._settle(conversation, outcome)

    async def edit_message(
        self, conversation_id: str, message_id: str, new_text: str
    ) -> Optional[StreamOutcome]:
        """
        Replace a user message and everything after it, then resubmit.
        """
        conversation = self.get_conversation(conversation_id)
        with conversation_context(conversation_id):
            orchestrator = self.orchestrator_for(conversation_id)
            replacement = orchestrator.edit_and_resend(conversation, message_id, new_text)
            if replacement is None:
                return None

            conversation.messages.append(replacement)
            conversation.touch()
            self._dispatch(MessageEvent("append", conversation.id, replacement))
            outcome = await orchestrator.send(
                conversation, replacement.content, replacement.attachments or []
            )
            return await self._settle(conversation, outcome)

    def cancel_nowait(self, conversation_id: str) -> bool:
        """
        Stop the in-flight turn without persisting; the turn persists itself.
        """
        conversation = self.get_conversation(conversation_id)
        orchestrator = self._orchestrators.get(conversation_id)
        if orchestrator is None or orchestrator.state == StreamState.IDLE:
            return False
        orchestrator.cancel(conversation)
        return True

    async def cancel(self, conversation_id: str) -> bool:
        if not self.cancel_nowait(conversation_id):
            return False
        await self.persist()
        return True


__all__ = ["ChatService", "ConversationNotFoundError", "EmptyMessageError"]
