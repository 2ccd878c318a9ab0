"""
Transport contract between the stream orchestrator and a generation service,
plus the pure helpers that translate engine state into Gemini request shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from chat_engine.errors import GenerationError
from chat_engine.models import Attachment, AttachmentCategory, GenerationSettings, Message, MessageRole

IMAGE_MODEL_MAX_OUTPUT_TOKENS = 32768

_HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class GroundingRefs:
    refs: List[Dict[str, Any]]


@dataclass(frozen=True)
class UsageReport:
    prompt_tokens: int
    output_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class MediaChunk:
    data: str
    mime_type: str


@dataclass(frozen=True)
class StreamCompleted:
    pass


@dataclass(frozen=True)
class StreamFailed:
    error: GenerationError


StreamEvent = Union[
    TextDelta, ReasoningDelta, GroundingRefs, UsageReport, MediaChunk, StreamCompleted, StreamFailed
]


class SessionHandle(Protocol):
    credential: Optional[str]

    def close(self) -> None:
        """Stop any in-flight read; must be safe to call repeatedly."""


class GenerationTransport(Protocol):
    async def open(
        self,
        *,
        model: str,
        settings: GenerationSettings,
        history: List[Dict[str, Any]],
        credential: Optional[str],
    ) -> SessionHandle:
        """Create a model session; raises GenerationError on failure."""

    def stream_turn(
        self, handle: SessionHandle, text: str, attachments: Sequence[Attachment]
    ) -> AsyncIterator[StreamEvent]:
        """Send one user turn and yield its typed events in arrival order."""


@dataclass
class _ThinkingConfig:
    include_thoughts: bool
    thinking_budget: Optional[int] = None
    thinking_level: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"include_thoughts": self.include_thoughts}
        if self.thinking_budget is not None:
            out["thinking_budget"] = self.thinking_budget
        if self.thinking_level is not None:
            out["thinking_level"] = self.thinking_level
        return out


def _thinking_config(settings: GenerationSettings) -> _ThinkingConfig:
    model_id = settings.model_id
    is_gemini_3 = model_id.startswith("gemini-3-")
    if not settings.show_thoughts:
        if is_gemini_3:
            return _ThinkingConfig(include_thoughts=False)
        return _ThinkingConfig(include_thoughts=False, thinking_budget=0)

    if is_gemini_3:
        return _ThinkingConfig(include_thoughts=True, thinking_level="high")

    budget = 16384 if "2.5-pro" in model_id else 8192
    budget = min(budget, int(settings.max_output_tokens * 0.8))
    return _ThinkingConfig(include_thoughts=True, thinking_budget=budget)


def build_generation_config(settings: GenerationSettings) -> Dict[str, Any]:
    """
    Translate a settings snapshot into a google-genai GenerateContentConfig dict.

    Search grounding and JSON output are mutually exclusive upstream; JSON mode
    turns the search tool off. Image models never get JSON output or a
    thinking config.
    """
    is_image_model = settings.is_image_model
    max_output = settings.max_output_tokens
    if is_image_model:
        max_output = min(max_output, IMAGE_MODEL_MAX_OUTPUT_TOKENS)

    config: Dict[str, Any] = {
        "temperature": settings.temperature,
        "top_p": settings.top_p,
        "top_k": settings.top_k,
        "max_output_tokens": max_output,
    }
    if settings.system_instruction:
        config["system_instruction"] = settings.system_instruction
    if settings.stop_sequences:
        config["stop_sequences"] = list(settings.stop_sequences)

    tools: List[Dict[str, Any]] = []
    use_search = settings.use_search and not settings.json_mode
    if use_search:
        tools.append({"google_search": {}})
    if settings.json_mode and not is_image_model and not use_search:
        config["response_mime_type"] = "application/json"

    config["safety_settings"] = [
        {"category": category, "threshold": settings.safety_threshold.value}
        for category in _HARM_CATEGORIES
    ]

    if is_image_model:
        config["image_config"] = {"aspect_ratio": "1:1", "image_size": "1K"}
    else:
        config["thinking_config"] = _thinking_config(settings).to_dict()

    tool_settings = settings.tool_settings
    if tool_settings is not None:
        if tool_settings.enable_function_calling and tool_settings.functions:
            tools.append(
                {
                    "function_declarations": [
                        fn.model_dump(exclude_none=True) for fn in tool_settings.functions
                    ]
                }
            )
        if tool_settings.enable_code_execution:
            tools.append({"code_execution": {}})
        if tool_settings.enable_url_grounding:
            tools.append({"url_context": {}})

    if tools:
        config["tools"] = tools
    return config


def _attachment_part(attachment: Attachment) -> Dict[str, Any]:
    if attachment.category == AttachmentCategory.TEXT:
        return {"text": f"[File Context: {attachment.name}]\n{attachment.data}\n"}
    return {"inline_data": {"mime_type": attachment.mime_type, "data": attachment.data}}


def build_prompt_parts(text: str, attachments: Iterable[Attachment] = ()) -> List[Dict[str, Any]]:
    """
    Parts for one user turn: attachments first, then the text.
    """
    parts = [_attachment_part(att) for att in attachments]
    if text and text.strip():
        parts.append({"text": text})
    if not parts:
        parts.append({"text": " "})
    return parts


def to_transport_history(messages: Iterable[Message]) -> List[Dict[str, Any]]:
    """
    Convert finished user/model messages into Gemini ``contents`` entries.

    Error messages and streaming placeholders are not part of the model's
    view of the conversation.
    """
    history: List[Dict[str, Any]] = []
    for message in messages:
        if message.is_streaming or message.role not in (MessageRole.USER, MessageRole.MODEL):
            continue
        parts: List[Dict[str, Any]] = []
        if message.role == MessageRole.USER and message.attachments:
            parts.extend(_attachment_part(att) for att in message.attachments)
        if message.content:
            parts.append({"text": message.content})
        if not parts:
            parts.append({"text": " "})
        history.append({"role": message.role.value, "parts": parts})
    return history


__all__ = [
    "GenerationTransport",
    "GroundingRefs",
    "IMAGE_MODEL_MAX_OUTPUT_TOKENS",
    "MediaChunk",
    "ReasoningDelta",
    "SessionHandle",
    "StreamCompleted",
    "StreamEvent",
    "StreamFailed",
    "TextDelta",
    "UsageReport",
    "build_generation_config",
    "build_prompt_parts",
    "to_transport_history",
]
