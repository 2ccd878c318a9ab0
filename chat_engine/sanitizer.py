from __future__ import annotations

import re
from typing import Tuple

REDACTED = "***REDACTED***"

# Applied in order; each match is replaced by REDACTED.
_PII_PATTERNS: Tuple[re.Pattern[str], ...] = (
    # e-mail address
    re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE),
    # phone number, e.g. 010-1234-5678 / 02-123-4567
    re.compile(r"\b\d{2,3}-\d{3,4}-\d{4}\b"),
    # national id, e.g. 123-45-6789
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
)


def sanitize_text(text: str, *, mask_token: str = REDACTED) -> tuple[str, bool]:
    """
    Replace personal data in free text before it is written to storage.

    Returns the cleaned text and whether any rule matched.
    """
    redacted = False
    for pattern in _PII_PATTERNS:
        text, count = pattern.subn(mask_token, text)
        if count:
            redacted = True
    return text, redacted


def mask_credential(raw_key: str | None) -> str:
    """
    Log-safe label for an API key; only the last four characters survive.
    """
    if not raw_key:
        return "<none>"
    tail = raw_key[-4:] if len(raw_key) > 8 else ""
    return f"key-***{tail}"


__all__ = ["REDACTED", "mask_credential", "sanitize_text"]
