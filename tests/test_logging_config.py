import asyncio
import logging
import sys

import pytest

from chat_engine.logging_config import (
    ConversationContextFilter,
    CredentialMaskFilter,
    LocalTimezoneFormatter,
    conversation_context,
    current_conversation_id,
    mask_api_keys,
)

KEY = "AIza" + "x" * 31 + "WXYZ"


def _record(msg, *args, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord("chat_engine.test", logging.INFO, __file__, 1, msg, args, exc_info)


def test_mask_api_keys_keeps_tail_only():
    text = f"request to ...?key={KEY} failed"

    masked = mask_api_keys(text)

    assert KEY not in masked
    assert "key-***WXYZ" in masked
    assert mask_api_keys("nothing secret here") == "nothing secret here"


def test_credential_filter_masks_args_and_traceback():
    try:
        raise RuntimeError(f"401 for key {KEY}")
    except RuntimeError:
        record = _record("open failed with %s", KEY, exc_info=sys.exc_info())

    assert CredentialMaskFilter().filter(record) is True

    formatted = logging.Formatter("%(message)s").format(record)
    assert KEY not in formatted
    assert formatted.startswith("open failed with key-***WXYZ")
    assert "RuntimeError: 401 for key key-***WXYZ" in formatted


def test_credential_filter_leaves_plain_records_alone():
    record = _record("loaded %d conversation(s)", 3)

    CredentialMaskFilter().filter(record)

    assert record.args == (3,)
    assert record.getMessage() == "loaded 3 conversation(s)"


def test_conversation_filter_uses_context():
    context_filter = ConversationContextFilter()

    outside = _record("idle")
    context_filter.filter(outside)
    assert outside.conversation_id == "-"

    with conversation_context("conv-1"):
        inside = _record("turn")
        context_filter.filter(inside)
        assert current_conversation_id() == "conv-1"
    assert inside.conversation_id == "conv-1"
    assert current_conversation_id() is None


def test_conversation_filter_keeps_explicit_extra():
    record = _record("explicit")
    record.conversation_id = "given"

    with conversation_context("conv-1"):
        ConversationContextFilter().filter(record)

    assert record.conversation_id == "given"


@pytest.mark.asyncio
async def test_conversation_context_is_isolated_per_task():
    seen = {}

    async def _turn(conversation_id):
        with conversation_context(conversation_id):
            await asyncio.sleep(0)
            seen[conversation_id] = current_conversation_id()

    await asyncio.gather(_turn("a"), _turn("b"))

    assert seen == {"a": "a", "b": "b"}
    assert current_conversation_id() is None


def test_formatter_renders_conversation_and_timezone():
    formatter = LocalTimezoneFormatter(timezone_name="UTC")
    record = _record("hello")
    record.created = 0
    ConversationContextFilter().filter(record)

    line = formatter.format(record)

    assert line.startswith("1970-01-01T00:00:00.000+00:00 [INFO] chat_engine.test [-] - hello")


def test_formatter_falls_back_on_unknown_timezone():
    formatter = LocalTimezoneFormatter(timezone_name="Not/AZone")
    record = _record("hello")
    ConversationContextFilter().filter(record)

    assert formatter.format(record).endswith("[-] - hello")
