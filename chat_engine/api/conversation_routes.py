"""
Conversation management and streaming turn endpoints.

Turn endpoints answer with ``text/event-stream``: one ``data:`` frame per
message mutation (append / update / truncate) and a final ``done`` frame
carrying the outcome.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse

from chat_engine.deps import get_chat_service
from chat_engine.errors import bad_request, not_found
from chat_engine.logging_config import logger
from chat_engine.models import Conversation, GenerationSettings
from chat_engine.schemas import (
    CancelResponse,
    ConversationCreateRequest,
    ConversationRenameRequest,
    ConversationSummary,
    EditMessageRequest,
    SendMessageRequest,
)
from chat_engine.services.chat_service import (
    ChatService,
    ConversationNotFoundError,
)
from chat_engine.streaming.orchestrator import MessageEvent, StreamOutcome

router = APIRouter(tags=["conversations"], prefix="/conversations")


def _get_conversation_or_404(service: ChatService, conversation_id: str) -> Conversation:
    try:
        return service.get_conversation(conversation_id)
    except ConversationNotFoundError:
        raise not_found(f"Conversation {conversation_id} not found")


def _sse(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _event_payload(event: MessageEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": event.kind, "conversation_id": event.conversation_id}
    if event.message is not None:
        payload["message"] = event.message.model_dump(mode="json", exclude_none=True)
    return payload


async def _stream_turn(
    service: ChatService,
    conversation_id: str,
    run: Callable[[], Awaitable[Optional[StreamOutcome]]],
) -> AsyncIterator[bytes]:
    """
    Run one turn in the background and relay its message mutations.
    """
    queue: asyncio.Queue[MessageEvent] = asyncio.Queue()

    def _listener(event: MessageEvent) -> None:
        if event.conversation_id == conversation_id:
            queue.put_nowait(event)

    unsubscribe = service.subscribe(_listener)
    task = service.start_background(run())
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield _sse(_event_payload(getter.result()))
                continue
            getter.cancel()
            break

        while not queue.empty():
            yield _sse(_event_payload(queue.get_nowait()))

        outcome = task.result()
        yield _sse(
            {
                "type": "done",
                "conversation_id": conversation_id,
                "outcome": outcome.value if outcome is not None else None,
            }
        )
    finally:
        unsubscribe()
        if not task.done():
            logger.info("conversation routes: client left, cancelling turn for %s", conversation_id)
            try:
                service.cancel_nowait(conversation_id)
            except ConversationNotFoundError:
                task.cancel()


def _event_stream(
    service: ChatService,
    conversation_id: str,
    run: Callable[[], Awaitable[Optional[StreamOutcome]]],
) -> StreamingResponse:
    return StreamingResponse(
        _stream_turn(service, conversation_id, run),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("", response_model=list[ConversationSummary])
async def list_conversations_endpoint(
    service: ChatService = Depends(get_chat_service),
) -> list[ConversationSummary]:
    return [
        ConversationSummary.from_conversation(c, service.stream_state(c.id))
        for c in service.list_conversations()
    ]


@router.post("", response_model=Conversation, status_code=status.HTTP_201_CREATED)
async def create_conversation_endpoint(
    payload: ConversationCreateRequest,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return await service.create_conversation(settings=payload.settings, title=payload.title)


@router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation_endpoint(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return _get_conversation_or_404(service, conversation_id)


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation_endpoint(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> None:
    _get_conversation_or_404(service, conversation_id)
    await service.delete_conversation(conversation_id)


@router.put("/{conversation_id}/title", response_model=Conversation)
async def rename_conversation_endpoint(
    conversation_id: str,
    payload: ConversationRenameRequest,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    _get_conversation_or_404(service, conversation_id)
    return await service.rename_conversation(conversation_id, payload.title)


@router.post("/{conversation_id}/clear", response_model=Conversation)
async def clear_conversation_endpoint(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    _get_conversation_or_404(service, conversation_id)
    return await service.clear_conversation(conversation_id)


@router.put("/{conversation_id}/settings", response_model=Conversation)
async def update_settings_endpoint(
    conversation_id: str,
    payload: GenerationSettings,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    _get_conversation_or_404(service, conversation_id)
    return await service.update_settings(conversation_id, payload)


@router.post("/{conversation_id}/messages")
async def send_message_endpoint(
    conversation_id: str,
    payload: SendMessageRequest,
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    _get_conversation_or_404(service, conversation_id)
    if not payload.text.strip() and not payload.attachments:
        raise bad_request("Message text or at least one attachment is required")

    return _event_stream(
        service,
        conversation_id,
        lambda: service.send_message(conversation_id, payload.text, payload.attachments),
    )


@router.post("/{conversation_id}/regenerate")
async def regenerate_endpoint(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    _get_conversation_or_404(service, conversation_id)
    return _event_stream(service, conversation_id, lambda: service.regenerate(conversation_id))


@router.put("/{conversation_id}/messages/{message_id}")
async def edit_message_endpoint(
    conversation_id: str,
    message_id: str,
    payload: EditMessageRequest,
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    conversation = _get_conversation_or_404(service, conversation_id)
    if conversation.find_message(message_id) is None:
        raise not_found(f"Message {message_id} not found")

    return _event_stream(
        service,
        conversation_id,
        lambda: service.edit_message(conversation_id, message_id, payload.text),
    )


@router.post("/{conversation_id}/cancel", response_model=CancelResponse)
async def cancel_endpoint(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> CancelResponse:
    _get_conversation_or_404(service, conversation_id)
    return CancelResponse(cancelled=await service.cancel(conversation_id))
