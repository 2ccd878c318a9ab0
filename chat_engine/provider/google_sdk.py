"""
Generation transport backed by the official google-genai SDK.

The SDK's chat streaming is synchronous, so every turn is consumed on a
background thread and handed back to the event loop through a queue, one
chunk at a time.
"""

from __future__ import annotations

import base64
import json
import threading
from queue import SimpleQueue
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import anyio
from google import genai

from chat_engine.errors import ErrorKind, GenerationError, classify_error, safety_blocked
from chat_engine.logging_config import logger
from chat_engine.models import Attachment, GenerationSettings, derive_title
from chat_engine.sanitizer import mask_credential

from .transport import (
    GroundingRefs,
    MediaChunk,
    ReasoningDelta,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
    TextDelta,
    UsageReport,
    build_generation_config,
    build_prompt_parts,
)

_BLOCKING_FINISH_REASONS = frozenset(
    {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "IMAGE_SAFETY"}
)
_TITLE_PROMPT = (
    "Write a short title (at most 15 words) describing the topic of the following "
    "message. Output only the title:\n\n\"{message}\""
)


def _create_client(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _response_to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    dump = getattr(obj, "model_dump", None)
    if callable(dump):
        try:
            return dump(exclude_none=True)
        except Exception:
            pass
    to_json = getattr(obj, "to_json", None)
    if callable(to_json):
        try:
            return json.loads(to_json())
        except Exception:
            pass
    return {"text": str(obj)}


def _inline_data_to_base64(data: Any) -> str:
    if isinstance(data, (bytes, bytearray)):
        return base64.b64encode(data).decode("utf-8")
    return str(data)


def _to_sdk_parts(parts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Decode base64 inline payloads into bytes, which is what the SDK expects.
    """
    converted: List[Dict[str, Any]] = []
    for part in parts:
        inline = part.get("inline_data")
        if isinstance(inline, dict) and isinstance(inline.get("data"), str):
            try:
                raw = base64.b64decode(inline["data"])
            except ValueError as exc:
                raise GenerationError(
                    f"attachment is not valid base64: {exc}", ErrorKind.MALFORMED
                ) from exc
            converted.append({"inline_data": {"mime_type": inline["mime_type"], "data": raw}})
        else:
            converted.append(part)
    return converted


def response_to_events(payload: Dict[str, Any]) -> List[StreamEvent]:
    """
    Split one streamed GenerateContentResponse into engine events.

    Order inside a chunk: grounding, usage, then content parts as they appear.
    A blocked prompt or a safety finish reason ends the list with StreamFailed.
    """
    events: List[StreamEvent] = []

    feedback = payload.get("prompt_feedback") or {}
    block_reason = _enum_value(feedback.get("block_reason"))
    if block_reason:
        events.append(StreamFailed(safety_blocked(str(block_reason))))
        return events

    candidates = payload.get("candidates") or []
    candidate = candidates[0] if candidates else {}

    grounding = candidate.get("grounding_metadata") or {}
    refs = grounding.get("grounding_chunks")
    if refs:
        events.append(GroundingRefs(refs=list(refs)))

    usage = payload.get("usage_metadata")
    if usage:
        events.append(
            UsageReport(
                prompt_tokens=usage.get("prompt_token_count") or 0,
                output_tokens=usage.get("candidates_token_count") or 0,
                total_tokens=usage.get("total_token_count") or 0,
            )
        )

    content = candidate.get("content") or {}
    for part in content.get("parts") or []:
        inline = part.get("inline_data")
        thought = part.get("thought")
        if inline:
            events.append(
                MediaChunk(
                    data=_inline_data_to_base64(inline.get("data")),
                    mime_type=inline.get("mime_type") or "application/octet-stream",
                )
            )
        elif thought:
            # Newer SDKs flag the text part; older payloads carried the trace itself.
            text = thought if isinstance(thought, str) else part.get("text") or ""
            if text:
                events.append(ReasoningDelta(text=text))
        elif part.get("text"):
            events.append(TextDelta(text=part["text"]))

    finish_reason = _enum_value(candidate.get("finish_reason"))
    if finish_reason in _BLOCKING_FINISH_REASONS:
        events.append(StreamFailed(safety_blocked(str(finish_reason))))
    return events


class GoogleChatHandle:
    """
    One google-genai chat; the SDK object keeps the turn history itself.
    """

    def __init__(self, chat: Any, credential: Optional[str]) -> None:
        self.chat = chat
        self.credential = credential
        self._stop = threading.Event()

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        self._stop.set()


class GoogleGenAITransport:
    def __init__(self, client_factory: Callable[[str], Any] = _create_client) -> None:
        self._client_factory = client_factory

    async def open(
        self,
        *,
        model: str,
        settings: GenerationSettings,
        history: List[Dict[str, Any]],
        credential: Optional[str],
    ) -> GoogleChatHandle:
        if not credential:
            raise GenerationError(
                "no API key configured", ErrorKind.INVALID_CREDENTIAL, status_code=401
            )

        config = build_generation_config(settings)
        sdk_history = [
            {"role": item["role"], "parts": _to_sdk_parts(item["parts"])} for item in history
        ]

        def _call():
            client = self._client_factory(credential)
            return client.chats.create(model=model, config=config, history=sdk_history)

        try:
            chat = await anyio.to_thread.run_sync(_call)
        except Exception as exc:
            raise classify_error(exc) from exc

        logger.info(
            "google_sdk: chat opened model=%s history=%d key=%s",
            model,
            len(sdk_history),
            mask_credential(credential),
        )
        return GoogleChatHandle(chat, credential)

    async def stream_turn(
        self, handle: GoogleChatHandle, text: str, attachments: Sequence[Attachment]
    ) -> AsyncIterator[StreamEvent]:
        try:
            parts = _to_sdk_parts(build_prompt_parts(text, attachments))
        except GenerationError as exc:
            yield StreamFailed(exc)
            return

        queue: SimpleQueue[Any] = SimpleQueue()
        sentinel = object()
        turn_done = threading.Event()

        def _worker():
            try:
                for chunk in handle.chat.send_message_stream(parts):
                    if handle.closed or turn_done.is_set():
                        break
                    queue.put(chunk)
            except Exception as exc:
                queue.put(exc)
            finally:
                queue.put(sentinel)

        thread = threading.Thread(target=_worker, daemon=True)
        thread.start()

        try:
            while True:
                item = await anyio.to_thread.run_sync(queue.get)
                if item is sentinel:
                    break
                if isinstance(item, Exception):
                    logger.warning("google_sdk: stream failed: %s", item)
                    yield StreamFailed(classify_error(item))
                    return
                for event in response_to_events(_response_to_dict(item)):
                    yield event
                    if isinstance(event, StreamFailed):
                        return
            yield StreamCompleted()
        finally:
            # Lets the worker drop out after its current chunk when the reader leaves early.
            turn_done.set()

    async def generate_title(
        self, first_message: str, *, credential: Optional[str], model: str
    ) -> str:
        """
        Ask a small model for a conversation title; truncation on any failure.
        """
        fallback = derive_title(first_message)
        if not credential:
            return fallback

        def _call():
            client = self._client_factory(credential)
            return client.models.generate_content(
                model=model,
                contents=_TITLE_PROMPT.format(message=first_message[:200]),
                config={"max_output_tokens": 30, "temperature": 0.3},
            )

        try:
            response = await anyio.to_thread.run_sync(_call)
        except Exception as exc:
            logger.warning("google_sdk: title generation failed: %s", exc)
            return fallback

        title = (getattr(response, "text", None) or "").strip().strip("'\"")
        if title and len(title) <= 60:
            return title
        return fallback


__all__ = [
    "GoogleChatHandle",
    "GoogleGenAITransport",
    "response_to_events",
]
