"""
In-memory fakes shared by the engine tests.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from chat_engine.errors import StorageWriteError
from chat_engine.provider.transport import StreamCompleted, TextDelta


class InMemoryStorage:
    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.fail_writes = False
        self.writes = 0

    async def read(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    async def write(self, key: str, data: bytes) -> None:
        if self.fail_writes:
            raise StorageWriteError("disk full")
        self.data[key] = data
        self.writes += 1


class InMemoryRedis:
    def __init__(self, *, decode_responses: bool = False) -> None:
        self.store: Dict[str, Any] = {}
        self.decode_responses = decode_responses

    async def get(self, key: str):
        return self.store.get(key)

    async def set(self, key: str, value: bytes) -> bool:
        self.store[key] = value.decode("utf-8") if self.decode_responses else value
        return True


class FakeHandle:
    def __init__(self, credential: Optional[str]) -> None:
        self.credential = credential
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """
    Scripted generation transport.

    Each ``stream_turn`` plays the next script: stream events are yielded,
    exceptions raised and ``asyncio.Event`` items awaited before continuing.
    """

    def __init__(
        self,
        scripts: Optional[List[List[Any]]] = None,
        *,
        open_error: Optional[BaseException] = None,
    ) -> None:
        self.scripts = list(scripts or [])
        self.open_error = open_error
        self.open_calls: List[Dict[str, Any]] = []
        self.handles: List[FakeHandle] = []
        self.turns: List[tuple] = []
        self.open_gate: Optional[asyncio.Event] = None
        self.titles: List[str] = []

    async def open(self, *, model, settings, history, credential):
        self.open_calls.append(
            {"model": model, "settings": settings, "history": history, "credential": credential}
        )
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        handle = FakeHandle(credential)
        self.handles.append(handle)
        return handle

    async def stream_turn(self, handle, text, attachments):
        self.turns.append((text, list(attachments)))
        script = self.scripts.pop(0) if self.scripts else [TextDelta("ok"), StreamCompleted()]
        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if isinstance(item, BaseException):
                raise item
            await asyncio.sleep(0)
            yield item

    async def generate_title(self, first_message, *, credential, model):
        self.titles.append(first_message)
        return "Generated title"


async def wait_for(predicate: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")
