"""
Size-bounded persistence of the conversation list.

The stored payload is a JSON envelope ``{"version": 1, "conversations": [...]}``
ordered most recent first. Message text is passed through the PII sanitizer
before it is serialized; the in-memory conversations handed to ``persist`` are
never modified.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from chat_engine.errors import StorageWriteError
from chat_engine.logging_config import logger
from chat_engine.models import Conversation
from chat_engine.sanitizer import sanitize_text
from chat_engine.settings import settings as app_settings
from chat_engine.storage.substrate import StorageSubstrate

PAYLOAD_VERSION = 1


@dataclass
class PersistResult:
    retained_conversations: List[Conversation] = field(default_factory=list)
    removed_count: int = 0
    pii_redaction_occurred: bool = False
    final_byte_size: int = 0
    write_succeeded: bool = True


def _encode(entries: Sequence[Dict[str, Any]]) -> bytes:
    envelope = {"version": PAYLOAD_VERSION, "conversations": list(entries)}
    return json.dumps(envelope, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class SessionStore:
    def __init__(self, storage: StorageSubstrate, *, key: Optional[str] = None) -> None:
        self._storage = storage
        self._key = key or app_settings.session_storage_key

    @property
    def key(self) -> str:
        return self._key

    @staticmethod
    def sanitize(text: str) -> tuple[str, bool]:
        return sanitize_text(text)

    def _sanitized_entry(self, conversation: Conversation) -> tuple[Dict[str, Any], bool]:
        entry = conversation.model_dump(mode="json", exclude_none=True)
        redacted = False
        for message in entry.get("messages", []):
            content = message.get("content")
            if not content:
                continue
            clean, fired = self.sanitize(content)
            if fired:
                message["content"] = clean
                redacted = True
        return entry, redacted

    async def persist(
        self,
        conversations: Sequence[Conversation],
        limit_bytes: Optional[int] = None,
    ) -> PersistResult:
        """
        Redact, fit under ``limit_bytes`` by evicting whole conversations
        (least recently modified first) and write the payload.

        A failed write leaves the previously stored payload in place and is
        reported through ``write_succeeded``.
        """
        limit = limit_bytes if limit_bytes is not None else app_settings.session_storage_limit_bytes
        ordered = sorted(conversations, key=lambda c: c.last_modified_at, reverse=True)

        entries: List[Dict[str, Any]] = []
        flags: List[bool] = []
        for conversation in ordered:
            entry, redacted = self._sanitized_entry(conversation)
            entries.append(entry)
            flags.append(redacted)

        payload = _encode(entries)
        removed = 0
        while len(payload) > limit and entries:
            dropped = ordered[len(entries) - 1]
            entries.pop()
            flags.pop()
            removed += 1
            logger.info(
                "session store: evicting conversation %s (last modified %s) to fit %d bytes",
                dropped.id,
                dropped.last_modified_at.isoformat(),
                limit,
            )
            payload = _encode(entries)

        result = PersistResult(
            retained_conversations=list(ordered[: len(entries)]),
            removed_count=removed,
            pii_redaction_occurred=any(flags),
            final_byte_size=len(payload),
        )

        try:
            await self._storage.write(self._key, payload)
        except StorageWriteError as exc:
            result.write_succeeded = False
            logger.error("session store: write of %d bytes failed: %s", len(payload), exc)
            return result

        logger.debug(
            "session store: persisted %d conversation(s), %d bytes, %d evicted",
            len(entries),
            len(payload),
            removed,
        )
        return result

    async def load(self) -> List[Conversation]:
        """
        Read the stored conversation list; unreadable data yields ``[]``.
        """
        try:
            raw = await self._storage.read(self._key)
        except Exception as exc:  # storage backends raise their own error types
            logger.warning("session store: read failed: %s", exc)
            return []
        if not raw:
            return []

        try:
            decoded = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as exc:
            logger.warning("session store: stored payload is not valid JSON: %s", exc)
            return []

        if isinstance(decoded, dict):
            items = decoded.get("conversations")
        else:
            items = decoded
        if not isinstance(items, list):
            logger.warning("session store: unexpected payload shape %s", type(decoded).__name__)
            return []

        conversations: List[Conversation] = []
        for item in items:
            conversation = _restore_conversation(item)
            if conversation is not None:
                conversations.append(conversation)
        return conversations


def _restore_conversation(item: Any) -> Optional[Conversation]:
    if not isinstance(item, dict) or not item.get("id") or not isinstance(item.get("messages"), list):
        logger.warning("session store: skipping entry without id or message list")
        return None
    try:
        conversation = Conversation.model_validate(item)
    except ValidationError as exc:
        # Settings written by another schema version fall back to defaults.
        if "settings" not in item:
            logger.warning("session store: skipping unreadable conversation: %s", exc)
            return None
        stripped = {k: v for k, v in item.items() if k != "settings"}
        try:
            conversation = Conversation.model_validate(stripped)
        except ValidationError as inner:
            logger.warning("session store: skipping unreadable conversation: %s", inner)
            return None
        logger.info("session store: reset settings of conversation %s to defaults", conversation.id)

    # A turn that was streaming when the process stopped is finished as-is.
    for message in conversation.messages:
        if message.is_streaming:
            message.is_streaming = False
    return conversation


__all__ = ["PAYLOAD_VERSION", "PersistResult", "SessionStore"]
