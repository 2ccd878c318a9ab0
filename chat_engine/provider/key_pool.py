"""
Failure-aware selection over a pool of API keys.

Selection is deterministic: keys that failed within the cooldown window rank
after every other key, then fewer recorded errors win, then the original
insertion order. Error counts only grow; a fresh ``initialize`` is the only
reset.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from chat_engine.logging_config import logger
from chat_engine.sanitizer import mask_credential

ERROR_COOLDOWN_SECONDS = 5 * 60

_GEMINI_KEY_SHAPE = re.compile(r"^AIza[0-9A-Za-z_-]{35}$")


@dataclass
class CredentialRecord:
    key: str
    error_count: int = 0
    last_error_at: Optional[float] = None


def is_valid_api_key(key: str) -> bool:
    return bool(_GEMINI_KEY_SHAPE.match(key))


class KeyHealthPool:
    def __init__(
        self,
        keys: Sequence[str] = (),
        *,
        cooldown_seconds: float = ERROR_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._records: List[CredentialRecord] = []
        if keys:
            self.initialize(keys)

    def initialize(self, keys: Sequence[str]) -> None:
        """
        Replace the whole pool with fresh records for ``keys``.

        Repeated keys share one record, kept at their first position.
        """
        records = [CredentialRecord(key=k) for k in dict.fromkeys(keys)]
        for record in records:
            if not is_valid_api_key(record.key):
                logger.warning(
                    "key pool: %s does not look like a Gemini API key",
                    mask_credential(record.key),
                )
        with self._lock:
            self._records = records
        logger.info("key pool initialized with %d key(s)", len(records))

    def _cooling_down(self, record: CredentialRecord, now: float) -> bool:
        return (
            record.last_error_at is not None
            and now - record.last_error_at < self._cooldown_seconds
        )

    def select_healthy(self) -> Optional[str]:
        """
        Return the key least likely to be rate limited right now, or None.
        """
        with self._lock:
            if not self._records:
                return None
            now = self._clock()
            # sorted() is stable, so equal ranks keep insertion order.
            ranked = sorted(
                self._records,
                key=lambda r: (1 if self._cooling_down(r, now) else 0, r.error_count),
            )
            return ranked[0].key

    def report_error(self, key: str) -> None:
        with self._lock:
            record = next((r for r in self._records if r.key == key), None)
            if record is None:
                return
            record.error_count += 1
            record.last_error_at = self._clock()
            error_count = record.error_count
        logger.warning(
            "key pool: %s reported failure (errors=%d), cooling down for %.0fs",
            mask_credential(key),
            error_count,
            self._cooldown_seconds,
        )

    def snapshot(self) -> List[CredentialRecord]:
        with self._lock:
            return [
                CredentialRecord(r.key, r.error_count, r.last_error_at) for r in self._records
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = [
    "CredentialRecord",
    "ERROR_COOLDOWN_SECONDS",
    "KeyHealthPool",
    "is_valid_api_key",
]
