from __future__ import annotations

import datetime
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .generation import GenerationSettings

DEFAULT_CONVERSATION_TITLE = "New chat"
_TITLE_MAX_CHARS = 30


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class MessageRole(str, Enum):
    USER = "user"
    MODEL = "model"
    ERROR = "error"


class AttachmentCategory(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    PDF = "pdf"
    TEXT = "text"


class Attachment(BaseModel):
    """
    A user supplied file. ``data`` is base64 for binary files and raw text
    for the ``text`` category.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    name: str
    mime_type: str = Field(validation_alias=AliasChoices("mime_type", "mimeType"))
    data: str
    category: AttachmentCategory


class UsageTotals(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt_tokens: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("prompt_tokens", "promptTokenCount")
    )
    output_tokens: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("output_tokens", "candidatesTokenCount"),
    )
    total_tokens: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("total_tokens", "totalTokenCount")
    )


class GeneratedMedia(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str = Field(..., description="Base64 payload")
    mime_type: str = Field(validation_alias=AliasChoices("mime_type", "mimeType"))


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str = ""
    created_at: datetime.datetime = Field(
        default_factory=utcnow, validation_alias=AliasChoices("created_at", "timestamp")
    )
    thoughts: Optional[str] = None
    attachments: Optional[List[Attachment]] = None
    generated_media: Optional[GeneratedMedia] = Field(
        default=None, validation_alias=AliasChoices("generated_media", "modelAttachment")
    )
    usage: Optional[UsageTotals] = Field(
        default=None, validation_alias=AliasChoices("usage", "usageMetadata")
    )
    grounding_refs: Optional[List[Dict[str, Any]]] = None
    is_streaming: bool = Field(
        default=False, validation_alias=AliasChoices("is_streaming", "isLoading")
    )

    @classmethod
    def user(cls, text: str, attachments: Optional[List[Attachment]] = None) -> "Message":
        return cls(role=MessageRole.USER, content=text, attachments=attachments or None)

    @classmethod
    def error(cls, text: str) -> "Message":
        return cls(role=MessageRole.ERROR, content=text)

    @classmethod
    def placeholder(cls) -> "Message":
        return cls(role=MessageRole.MODEL, content="", thoughts="", is_streaming=True)


class Conversation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    title: str = DEFAULT_CONVERSATION_TITLE
    messages: List[Message] = Field(default_factory=list)
    last_modified_at: datetime.datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("last_modified_at", "lastModified"),
    )
    settings: GenerationSettings = Field(default_factory=GenerationSettings)

    def touch(self) -> None:
        self.last_modified_at = utcnow()

    def find_message(self, message_id: str) -> Optional[int]:
        for idx, message in enumerate(self.messages):
            if message.id == message_id:
                return idx
        return None

    def streaming_messages(self) -> List[Message]:
        return [m for m in self.messages if m.is_streaming]


def derive_title(text: str) -> str:
    """
    Title taken from the first user message: 30 characters plus an ellipsis.
    """
    stripped = text.strip()
    if len(stripped) > _TITLE_MAX_CHARS:
        return stripped[:_TITLE_MAX_CHARS] + "..."
    return stripped or DEFAULT_CONVERSATION_TITLE


__all__ = [
    "Attachment",
    "AttachmentCategory",
    "Conversation",
    "DEFAULT_CONVERSATION_TITLE",
    "GeneratedMedia",
    "Message",
    "MessageRole",
    "UsageTotals",
    "derive_title",
    "new_id",
    "utcnow",
]
