"""
Logging setup for the engine.

Every record handled here carries ``conversation_id``: the conversation whose
turn produced it, or "-" outside a turn. Anything shaped like a Gemini API key
is masked before a handler writes it, tracebacks included.
"""

import contextlib
import contextvars
import datetime
import logging
import re
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .sanitizer import mask_credential
from .settings import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(conversation_id)s] - %(message)s"
LOG_FILENAME = "engine.log"
LOG_BACKUP_DAYS = 7

_API_KEY_IN_TEXT = re.compile(r"AIza[0-9A-Za-z_-]{35}")

_current_conversation: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "chat_engine_conversation", default=None
)

_LOGGING_CONFIGURED = False


@contextlib.contextmanager
def conversation_context(conversation_id: str) -> Iterator[None]:
    """
    Tag every record logged inside the block (and in tasks started from it)
    with ``conversation_id``.
    """
    token = _current_conversation.set(conversation_id)
    try:
        yield
    finally:
        _current_conversation.reset(token)


def current_conversation_id() -> Optional[str]:
    return _current_conversation.get()


def mask_api_keys(text: str) -> str:
    return _API_KEY_IN_TEXT.sub(lambda m: mask_credential(m.group(0)), text)


class ConversationContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        # An explicit extra={"conversation_id": ...} wins over the context.
        if not hasattr(record, "conversation_id"):
            record.conversation_id = _current_conversation.get() or "-"
        return True


class CredentialMaskFilter(logging.Filter):
    """
    Rewrite records so raw API keys never reach a log sink.

    Provider errors quote request URLs and headers, which may hold the key.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_api_keys(message)
        if masked != message:
            record.msg = masked
            record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = mask_api_keys(record.exc_text)
        return True


class LocalTimezoneFormatter(logging.Formatter):
    """
    Formatter with ISO timestamps in LOG_TIMEZONE (system timezone when unset
    or unknown).
    """

    def __init__(self, fmt: str = LOG_FORMAT, *, timezone_name: str | None = None):
        super().__init__(fmt)
        self._tzinfo = self._resolve_tzinfo(timezone_name)

    @staticmethod
    def _resolve_tzinfo(timezone_name: str | None) -> datetime.tzinfo:
        if timezone_name:
            try:
                return ZoneInfo(timezone_name)
            except ZoneInfoNotFoundError:
                pass
        return datetime.datetime.now().astimezone().tzinfo or datetime.timezone.utc

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.datetime.fromtimestamp(record.created, tz=self._tzinfo)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")


def _engine_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(ConversationContextFilter())
    handler.addFilter(CredentialMaskFilter())
    return handler


def setup_logging() -> None:
    """
    Configure engine logging once per process.

    Engine records (logger "chat_engine") also go to LOG_DIR/engine.log,
    rotated at midnight with a week of history kept.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    level_value = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    formatter = LocalTimezoneFormatter(timezone_name=settings.log_timezone)

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = _engine_handler(
        TimedRotatingFileHandler(
            log_dir / LOG_FILENAME,
            when="midnight",
            backupCount=LOG_BACKUP_DAYS,
            encoding="utf-8",
        ),
        formatter,
    )
    file_handler.addFilter(logging.Filter("chat_engine"))

    engine_logger = logging.getLogger("chat_engine")
    engine_logger.setLevel(level_value)
    engine_logger.addHandler(file_handler)

    # uvicorn and library records share the console with engine records.
    root_logger = logging.getLogger()
    root_logger.setLevel(level_value)
    root_logger.addHandler(_engine_handler(logging.StreamHandler(), formatter))

    _LOGGING_CONFIGURED = True


logger = logging.getLogger("chat_engine")
