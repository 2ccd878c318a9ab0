"""
Error taxonomy for the streaming engine and helpers for the HTTP surface.

Every failure that reaches a public engine operation is folded into a
GenerationError carrying an ErrorKind; the orchestrator turns it into a
single ``role=error`` message instead of raising.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException, status
from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    NETWORK_UNAVAILABLE = "network_unavailable"
    SAFETY_BLOCKED = "safety_blocked"
    INVALID_CREDENTIAL = "invalid_credential"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"


_RETRYABLE_KINDS = frozenset(
    {ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED, ErrorKind.NETWORK_UNAVAILABLE}
)

# Failures tied to the key itself; always reported back to the key pool.
_CREDENTIAL_KINDS = frozenset({ErrorKind.INVALID_CREDENTIAL, ErrorKind.RATE_LIMITED})

_DEFAULT_USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMITED: "Request limit exceeded. Please try again in a moment.",
    ErrorKind.OVERLOADED: (
        "The model is currently overloaded. Try again shortly or pick another model."
    ),
    ErrorKind.NETWORK_UNAVAILABLE: "Network unavailable. Check your connection.",
    ErrorKind.SAFETY_BLOCKED: "The response was blocked by safety filters.",
    ErrorKind.INVALID_CREDENTIAL: "The API key was rejected. Check your key settings.",
    ErrorKind.MALFORMED: "The request was rejected as malformed.",
    ErrorKind.UNKNOWN: "An unknown error occurred while generating the response.",
}

INIT_FAILED_MESSAGE = (
    "Could not initialize the model session. Check your API key or network and try again."
)


class GenerationError(Exception):
    """
    Raised (or yielded inside StreamFailed) by transports; classified failure.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        *,
        status_code: Optional[int] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.user_message = user_message or _DEFAULT_USER_MESSAGES[kind]

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    @property
    def credential_level(self) -> bool:
        return self.kind in _CREDENTIAL_KINDS

    def __repr__(self) -> str:
        return (
            f"GenerationError(kind={self.kind.value!r}, status_code={self.status_code!r}, "
            f"message={str(self)!r})"
        )


class StorageWriteError(Exception):
    """Raised by a storage substrate when a payload could not be written."""


def _status_code_of(exc: BaseException) -> Optional[int]:
    # google-genai APIError exposes `.code`; httpx errors carry a response.
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


def classify_error(exc: BaseException) -> GenerationError:
    """
    Map an SDK / transport exception onto the engine taxonomy.

    HTTP status codes win when present; otherwise the message is inspected
    for the markers the Gemini API uses in its error strings.
    """
    if isinstance(exc, GenerationError):
        return exc

    message = str(exc) or exc.__class__.__name__
    status_code = _status_code_of(exc)

    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return GenerationError(message, ErrorKind.NETWORK_UNAVAILABLE, status_code=status_code)

    if status_code in (401, 403):
        return GenerationError(message, ErrorKind.INVALID_CREDENTIAL, status_code=status_code)
    if status_code == 429:
        return GenerationError(message, ErrorKind.RATE_LIMITED, status_code=status_code)
    if status_code in (503, 504):
        return GenerationError(message, ErrorKind.OVERLOADED, status_code=status_code)
    if status_code == 400:
        # Gemini answers a bad key with 400 INVALID_ARGUMENT / API_KEY_INVALID.
        if "API key" in message or "API_KEY_INVALID" in message:
            return GenerationError(message, ErrorKind.INVALID_CREDENTIAL, status_code=status_code)
        return GenerationError(message, ErrorKind.MALFORMED, status_code=status_code)

    lowered = message.lower()
    if "503" in message or "overloaded" in lowered or "UNAVAILABLE" in message:
        return GenerationError(message, ErrorKind.OVERLOADED, status_code=status_code or 503)
    if "429" in message or "RESOURCE_EXHAUSTED" in message:
        return GenerationError(message, ErrorKind.RATE_LIMITED, status_code=status_code or 429)
    if "SAFETY" in message or "Recitation" in message:
        return GenerationError(message, ErrorKind.SAFETY_BLOCKED, status_code=status_code)
    if (
        "API key" in message
        or "API_KEY_INVALID" in message
        or "401" in message
        or "PERMISSION_DENIED" in message
    ):
        return GenerationError(
            message, ErrorKind.INVALID_CREDENTIAL, status_code=status_code or 401
        )
    if "network" in lowered or "fetch" in lowered or "connection" in lowered:
        return GenerationError(message, ErrorKind.NETWORK_UNAVAILABLE, status_code=status_code)

    return GenerationError(message, ErrorKind.UNKNOWN, status_code=status_code)


def safety_blocked(reason: str) -> GenerationError:
    """
    Build a SAFETY_BLOCKED error whose user message carries the upstream reason.
    """
    return GenerationError(
        f"Response blocked: {reason}",
        ErrorKind.SAFETY_BLOCKED,
        user_message=f"{_DEFAULT_USER_MESSAGES[ErrorKind.SAFETY_BLOCKED]} ({reason})",
    )


class ErrorResponse(BaseModel):
    """
    Standard error payload used by the HTTP surface.
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_400_BAD_REQUEST, error="bad_request", message=message, details=details
    )


def not_found(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_404_NOT_FOUND, error="not_found", message=message, details=details
    )


__all__ = [
    "ErrorKind",
    "ErrorResponse",
    "GenerationError",
    "INIT_FAILED_MESSAGE",
    "StorageWriteError",
    "bad_request",
    "classify_error",
    "http_error",
    "not_found",
    "safety_blocked",
]
