import base64
from types import SimpleNamespace

import pytest

from chat_engine.errors import ErrorKind, GenerationError
from chat_engine.models import GenerationSettings
from chat_engine.provider.google_sdk import GoogleGenAITransport, response_to_events
from chat_engine.provider.transport import (
    GroundingRefs,
    MediaChunk,
    ReasoningDelta,
    StreamCompleted,
    StreamFailed,
    TextDelta,
    UsageReport,
)


def test_response_chunk_is_split_into_events():
    payload = {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "let me think", "thought": True},
                        {"text": "Answer"},
                        {"inline_data": {"mime_type": "image/png", "data": b"\x89PNG"}},
                    ]
                },
                "grounding_metadata": {"grounding_chunks": [{"web": {"uri": "https://a"}}]},
            }
        ],
        "usage_metadata": {
            "prompt_token_count": 3,
            "candidates_token_count": 5,
            "total_token_count": 8,
        },
    }

    events = response_to_events(payload)

    assert events == [
        GroundingRefs(refs=[{"web": {"uri": "https://a"}}]),
        UsageReport(prompt_tokens=3, output_tokens=5, total_tokens=8),
        ReasoningDelta(text="let me think"),
        TextDelta(text="Answer"),
        MediaChunk(data=base64.b64encode(b"\x89PNG").decode(), mime_type="image/png"),
    ]


def test_blocked_prompt_yields_safety_failure():
    events = response_to_events({"prompt_feedback": {"block_reason": "SAFETY"}})

    assert len(events) == 1
    assert isinstance(events[0], StreamFailed)
    assert events[0].error.kind is ErrorKind.SAFETY_BLOCKED
    assert "SAFETY" in events[0].error.user_message


def test_safety_finish_reason_ends_with_failure():
    events = response_to_events(
        {"candidates": [{"content": {"parts": [{"text": "par"}]}, "finish_reason": "RECITATION"}]}
    )

    assert isinstance(events[0], TextDelta)
    assert isinstance(events[-1], StreamFailed)


class _FakeChat:
    def __init__(self, chunks):
        self.chunks = chunks
        self.sent = []

    def send_message_stream(self, parts):
        self.sent.append(parts)
        yield from self.chunks


class _FakeClient:
    def __init__(self, chat):
        self.created = []
        self.chats = SimpleNamespace(create=self._create)
        self._chat = chat

    def _create(self, *, model, config, history):
        self.created.append({"model": model, "config": config, "history": history})
        return self._chat


@pytest.mark.asyncio
async def test_transport_streams_sdk_chunks():
    chunk = {"candidates": [{"content": {"parts": [{"text": "Hi"}]}}]}
    chat = _FakeChat([chunk, chunk])
    client = _FakeClient(chat)
    transport = GoogleGenAITransport(client_factory=lambda key: client)

    handle = await transport.open(
        model="gemini-2.5-flash",
        settings=GenerationSettings(model_id="gemini-2.5-flash"),
        history=[],
        credential="AIza" + "k" * 35,
    )
    events = [event async for event in transport.stream_turn(handle, "hello", [])]

    assert events == [TextDelta("Hi"), TextDelta("Hi"), StreamCompleted()]
    assert chat.sent == [[{"text": "hello"}]]
    assert client.created[0]["model"] == "gemini-2.5-flash"
    assert not handle.closed


@pytest.mark.asyncio
async def test_open_without_credential_is_invalid_credential():
    transport = GoogleGenAITransport(client_factory=lambda key: None)

    with pytest.raises(GenerationError) as excinfo:
        await transport.open(
            model="gemini-3-pro-preview",
            settings=GenerationSettings(),
            history=[],
            credential=None,
        )
    assert excinfo.value.kind is ErrorKind.INVALID_CREDENTIAL


@pytest.mark.asyncio
async def test_sdk_exception_mid_stream_is_classified():
    class _Boom:
        def send_message_stream(self, parts):
            raise RuntimeError("429 RESOURCE_EXHAUSTED")
            yield  # pragma: no cover

    client = _FakeClient(_Boom())
    transport = GoogleGenAITransport(client_factory=lambda key: client)
    handle = await transport.open(
        model="m", settings=GenerationSettings(), history=[], credential="key"
    )

    events = [event async for event in transport.stream_turn(handle, "hi", [])]

    assert len(events) == 1
    assert events[0].error.kind is ErrorKind.RATE_LIMITED
