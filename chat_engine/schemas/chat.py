from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from chat_engine.models import Attachment, Conversation, GenerationSettings
from chat_engine.streaming.orchestrator import StreamState


class ConversationCreateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    settings: GenerationSettings | None = Field(
        default=None, description="Generation settings; omitted means defaults"
    )


class ConversationRenameRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)


class ConversationSummary(BaseModel):
    id: str
    title: str
    last_modified_at: datetime
    message_count: int
    state: StreamState = StreamState.IDLE

    @classmethod
    def from_conversation(
        cls, conversation: Conversation, state: StreamState = StreamState.IDLE
    ) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            title=conversation.title,
            last_modified_at=conversation.last_modified_at,
            message_count=len(conversation.messages),
            state=state,
        )


class SendMessageRequest(BaseModel):
    text: str = Field(default="", description="User prompt; may be empty when files are attached")
    attachments: list[Attachment] = Field(default_factory=list)


class EditMessageRequest(BaseModel):
    text: str = Field(..., min_length=1)


class CancelResponse(BaseModel):
    cancelled: bool


class ApiKeysUpdateRequest(BaseModel):
    keys: list[str] = Field(
        default_factory=list, description="Replaces the whole key pool; empty clears it"
    )


class KeyHealthResponse(BaseModel):
    key: str = Field(..., description="Masked key label")
    error_count: int
    last_error_at: float | None = None


class ApiKeysResponse(BaseModel):
    count: int
    keys: list[KeyHealthResponse] = Field(default_factory=list)


__all__ = [
    "ApiKeysResponse",
    "ApiKeysUpdateRequest",
    "CancelResponse",
    "ConversationCreateRequest",
    "ConversationRenameRequest",
    "ConversationSummary",
    "EditMessageRequest",
    "KeyHealthResponse",
    "SendMessageRequest",
]
