from .conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Attachment,
    AttachmentCategory,
    Conversation,
    GeneratedMedia,
    Message,
    MessageRole,
    UsageTotals,
    derive_title,
)
from .generation import (
    FunctionDeclaration,
    GenerationSettings,
    SafetyThreshold,
    ToolSettings,
    changed_fields,
)

__all__ = [
    "Attachment",
    "AttachmentCategory",
    "Conversation",
    "DEFAULT_CONVERSATION_TITLE",
    "FunctionDeclaration",
    "GeneratedMedia",
    "GenerationSettings",
    "Message",
    "MessageRole",
    "SafetyThreshold",
    "ToolSettings",
    "UsageTotals",
    "changed_fields",
    "derive_title",
]
