import datetime
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_engine.errors import StorageWriteError
from chat_engine.models import Conversation, Message, MessageRole
from chat_engine.models.generation import DEFAULT_TOP_K, SafetyThreshold
from chat_engine.sanitizer import REDACTED
from chat_engine.storage.session_store import SessionStore
from chat_engine.storage.substrate import FileStorage, RedisStorage
from tests.utils import InMemoryRedis, InMemoryStorage

KEY = "gemini_chat_sessions"


def _at(minutes: int) -> datetime.datetime:
    base = datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)
    return base + datetime.timedelta(minutes=minutes)


def _conversation(content: str, minutes: int) -> Conversation:
    return Conversation(
        messages=[Message.user(content)],
        last_modified_at=_at(minutes),
    )


def _stored(storage: InMemoryStorage) -> dict:
    return json.loads(storage.data[KEY].decode("utf-8"))


def test_sanitize_reports_matches():
    clean, redacted = SessionStore.sanitize("call 010-1234-5678 or mail a.b@example.org")
    assert redacted
    assert "010-1234-5678" not in clean
    assert "a.b@example.org" not in clean
    assert clean.count(REDACTED) == 2

    text, redacted = SessionStore.sanitize("nothing personal here")
    assert text == "nothing personal here"
    assert not redacted


def test_sanitize_national_id_shape():
    clean, redacted = SessionStore.sanitize("id 123-45-6789 end")
    assert redacted
    assert clean == f"id {REDACTED} end"


@pytest.mark.asyncio
async def test_persist_evicts_least_recently_modified_conversation():
    storage = InMemoryStorage()
    store = SessionStore(storage, key=KEY)
    large = _conversation("x" * 3600, minutes=0)
    small = _conversation("hi", minutes=5)

    result = await store.persist([large, small], 1024)

    assert result.removed_count == 1
    assert [c.id for c in result.retained_conversations] == [small.id]
    assert result.write_succeeded
    assert result.final_byte_size == len(storage.data[KEY])
    assert result.final_byte_size <= 1024
    assert [c["id"] for c in _stored(storage)["conversations"]] == [small.id]


@pytest.mark.asyncio
async def test_persist_orders_most_recent_first():
    storage = InMemoryStorage()
    store = SessionStore(storage, key=KEY)
    older = _conversation("a", minutes=1)
    newer = _conversation("b", minutes=2)

    result = await store.persist([older, newer], 1_000_000)

    assert result.removed_count == 0
    assert [c.id for c in result.retained_conversations] == [newer.id, older.id]
    assert [c["id"] for c in _stored(storage)["conversations"]] == [newer.id, older.id]


@pytest.mark.asyncio
async def test_persist_can_evict_everything():
    storage = InMemoryStorage()
    store = SessionStore(storage, key=KEY)

    result = await store.persist([_conversation("a", 1), _conversation("b", 2)], 10)

    assert result.removed_count == 2
    assert result.retained_conversations == []
    assert _stored(storage)["conversations"] == []


@pytest.mark.asyncio
async def test_persist_redacts_stored_copy_only():
    storage = InMemoryStorage()
    store = SessionStore(storage, key=KEY)
    text = "이메일은 test@example.com 입니다."
    conversation = _conversation(text, minutes=0)

    result = await store.persist([conversation], 1_000_000)

    raw = storage.data[KEY].decode("utf-8")
    assert result.pii_redaction_occurred
    assert "test@example.com" not in raw
    assert REDACTED in raw
    assert conversation.messages[0].content == text


@pytest.mark.asyncio
async def test_redaction_flag_ignores_evicted_conversations():
    storage = InMemoryStorage()
    store = SessionStore(storage, key=KEY)
    leaky = _conversation("mail me at someone@example.com " + "x" * 3000, minutes=0)
    clean = _conversation("hello", minutes=1)

    result = await store.persist([leaky, clean], 1024)

    assert result.removed_count == 1
    assert not result.pii_redaction_occurred


@pytest.mark.asyncio
async def test_failed_write_keeps_previous_payload():
    storage = InMemoryStorage()
    store = SessionStore(storage, key=KEY)
    first = _conversation("first", minutes=0)
    await store.persist([first], 1_000_000)
    before = storage.data[KEY]

    storage.fail_writes = True
    result = await store.persist([first, _conversation("second", minutes=1)], 1_000_000)

    assert not result.write_succeeded
    assert storage.data[KEY] == before
    loaded = await store.load()
    assert [c.id for c in loaded] == [first.id]


@pytest.mark.asyncio
async def test_load_round_trips_persisted_conversations():
    storage = InMemoryStorage()
    store = SessionStore(storage, key=KEY)
    conversation = _conversation("hello", minutes=3)
    conversation.messages.append(Message(role=MessageRole.MODEL, content="hi there"))

    await store.persist([conversation], 1_000_000)
    [loaded] = await store.load()

    assert loaded.id == conversation.id
    assert loaded.last_modified_at == conversation.last_modified_at
    assert [m.content for m in loaded.messages] == ["hello", "hi there"]
    assert loaded.settings == conversation.settings


@pytest.mark.asyncio
async def test_load_accepts_legacy_list_and_backfills_settings():
    storage = InMemoryStorage()
    legacy = [
        {
            "id": "c1",
            "title": "Old chat",
            "lastModified": 1704067200000,
            "settings": {"modelId": "gemini-2.5-flash", "temperature": 0.2},
            "messages": [
                {"id": "m1", "role": "user", "content": "hi", "timestamp": "2024-01-01T00:00:00Z"},
                {
                    "id": "m2",
                    "role": "model",
                    "content": "par",
                    "timestamp": "2024-01-01T00:00:01Z",
                    "isLoading": True,
                },
            ],
        }
    ]
    storage.data[KEY] = json.dumps(legacy).encode("utf-8")

    [conversation] = await SessionStore(storage, key=KEY).load()

    assert conversation.settings.model_id == "gemini-2.5-flash"
    assert conversation.settings.temperature == 0.2
    assert conversation.settings.top_k == DEFAULT_TOP_K
    assert conversation.settings.safety_threshold is SafetyThreshold.BLOCK_MEDIUM_AND_ABOVE
    assert conversation.last_modified_at.year == 2024
    assert isinstance(conversation.messages[0].created_at, datetime.datetime)
    assert conversation.messages[1].is_streaming is False


@pytest.mark.asyncio
async def test_load_skips_unreadable_entries():
    storage = InMemoryStorage()
    payload = {
        "version": 1,
        "conversations": [
            {"title": "no id", "messages": []},
            "garbage",
            {"id": "bad-settings", "messages": [], "settings": {"temperature": 9}},
            {"id": "ok", "messages": [{"role": "user", "content": "hi"}]},
        ],
    }
    storage.data[KEY] = json.dumps(payload).encode("utf-8")

    loaded = await SessionStore(storage, key=KEY).load()

    assert [c.id for c in loaded] == ["bad-settings", "ok"]
    assert loaded[0].settings.temperature == 0.7


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [b"not json", b'{"conversations": "x"}', b"42", b"\xff\xfe"])
async def test_load_malformed_payload_is_empty(raw):
    storage = InMemoryStorage()
    storage.data[KEY] = raw

    assert await SessionStore(storage, key=KEY).load() == []


@pytest.mark.asyncio
async def test_load_without_payload_is_empty():
    assert await SessionStore(InMemoryStorage(), key=KEY).load() == []


@pytest.mark.asyncio
async def test_file_storage_round_trip(tmp_path):
    storage = FileStorage(tmp_path / "data")

    assert await storage.read(KEY) is None
    await storage.write(KEY, b'{"a": 1}')
    await storage.write(KEY, b'{"a": 2}')

    assert await storage.read(KEY) == b'{"a": 2}'
    assert [p.name for p in (tmp_path / "data").iterdir()] == [f"{KEY}.json"]


@pytest.mark.asyncio
async def test_file_storage_write_failure_raises_storage_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(StorageWriteError):
        await FileStorage(blocker).write(KEY, b"{}")


@pytest.mark.asyncio
@pytest.mark.parametrize("decode_responses", [False, True])
async def test_redis_storage_returns_bytes(decode_responses):
    redis = InMemoryRedis(decode_responses=decode_responses)
    storage = RedisStorage(redis)

    await storage.write(KEY, "데이터".encode("utf-8"))

    assert await storage.read(KEY) == "데이터".encode("utf-8")
    assert f"chat_engine:{KEY}" in redis.store


@pytest.mark.asyncio
async def test_redis_storage_wraps_write_errors():
    class _DownRedis(InMemoryRedis):
        async def set(self, key, value):
            raise RedisConnectionError("connection refused")

    with pytest.raises(StorageWriteError):
        await RedisStorage(_DownRedis()).write(KEY, b"{}")
