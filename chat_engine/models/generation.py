from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

DEFAULT_MODEL_ID = "gemini-3-pro-preview"
DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful and friendly AI assistant."
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.95
DEFAULT_TOP_K = 40
DEFAULT_MAX_OUTPUT_TOKENS = 8192


class SafetyThreshold(str, Enum):
    BLOCK_NONE = "BLOCK_NONE"
    BLOCK_LOW_AND_ABOVE = "BLOCK_LOW_AND_ABOVE"
    BLOCK_MEDIUM_AND_ABOVE = "BLOCK_MEDIUM_AND_ABOVE"
    BLOCK_ONLY_HIGH = "BLOCK_ONLY_HIGH"


class FunctionDeclaration(BaseModel):
    """
    A callable tool exposed to the model.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Function name as seen by the model")
    description: Optional[str] = Field(default=None)
    parameters: Optional[Dict[str, Any]] = Field(
        default=None, description="JSON schema describing the arguments"
    )


class ToolSettings(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enable_function_calling: bool = Field(
        default=False,
        validation_alias=AliasChoices("enable_function_calling", "enableFunctionCalling"),
    )
    functions: Tuple[FunctionDeclaration, ...] = Field(default=())
    enable_code_execution: bool = Field(
        default=False,
        validation_alias=AliasChoices("enable_code_execution", "enableCodeExecution"),
    )
    enable_url_grounding: bool = Field(
        default=False,
        validation_alias=AliasChoices("enable_url_grounding", "enableUrlGrounding"),
    )


class GenerationSettings(BaseModel):
    """
    Immutable snapshot of everything that shapes a model session.

    Two snapshots are equal only when every field is equal, including the
    ordered stop sequences and the nested tool configuration. A difference in
    any field means the live model session has to be rebuilt.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    model_id: str = Field(
        default=DEFAULT_MODEL_ID, validation_alias=AliasChoices("model_id", "modelId")
    )
    system_instruction: str = Field(
        default=DEFAULT_SYSTEM_INSTRUCTION,
        validation_alias=AliasChoices("system_instruction", "systemInstruction"),
    )
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    top_p: float = Field(
        default=DEFAULT_TOP_P, ge=0.0, le=1.0, validation_alias=AliasChoices("top_p", "topP")
    )
    top_k: int = Field(
        default=DEFAULT_TOP_K, ge=1, validation_alias=AliasChoices("top_k", "topK")
    )
    max_output_tokens: int = Field(
        default=DEFAULT_MAX_OUTPUT_TOKENS,
        gt=0,
        validation_alias=AliasChoices("max_output_tokens", "maxOutputTokens"),
    )
    show_thoughts: bool = Field(
        default=True, validation_alias=AliasChoices("show_thoughts", "showThoughts")
    )
    use_search: bool = Field(
        default=True, validation_alias=AliasChoices("use_search", "useGoogleSearch")
    )
    json_mode: bool = Field(
        default=False, validation_alias=AliasChoices("json_mode", "jsonMode")
    )
    safety_threshold: SafetyThreshold = Field(
        default=SafetyThreshold.BLOCK_MEDIUM_AND_ABOVE,
        validation_alias=AliasChoices("safety_threshold", "safetySettings"),
    )
    stop_sequences: Tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("stop_sequences", "stopSequences")
    )
    tool_settings: Optional[ToolSettings] = Field(
        default_factory=ToolSettings,
        validation_alias=AliasChoices("tool_settings", "toolSettings"),
    )

    @property
    def is_image_model(self) -> bool:
        return "image" in self.model_id.lower()


def changed_fields(current: GenerationSettings, active: GenerationSettings) -> list[str]:
    """
    Names of the fields whose values differ between two snapshots.
    """
    return [
        name
        for name in GenerationSettings.model_fields
        if getattr(current, name) != getattr(active, name)
    ]


__all__ = [
    "DEFAULT_MAX_OUTPUT_TOKENS",
    "DEFAULT_MODEL_ID",
    "DEFAULT_SYSTEM_INSTRUCTION",
    "DEFAULT_TEMPERATURE",
    "DEFAULT_TOP_K",
    "DEFAULT_TOP_P",
    "FunctionDeclaration",
    "GenerationSettings",
    "SafetyThreshold",
    "ToolSettings",
    "changed_fields",
]
