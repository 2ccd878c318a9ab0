from .chat import (
    ApiKeysResponse,
    ApiKeysUpdateRequest,
    CancelResponse,
    ConversationCreateRequest,
    ConversationRenameRequest,
    ConversationSummary,
    EditMessageRequest,
    KeyHealthResponse,
    SendMessageRequest,
)

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
