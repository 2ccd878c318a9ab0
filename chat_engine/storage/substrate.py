"""
Durable key/value surfaces the session store can write to.

A write either replaces the stored value completely or leaves the previous
value untouched; readers never observe a partial payload.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

import anyio
from redis.asyncio import Redis
from redis.exceptions import RedisError

from chat_engine.errors import StorageWriteError
from chat_engine.logging_config import logger


class StorageSubstrate(Protocol):
    async def read(self, key: str) -> Optional[bytes]:
        ...

    async def write(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``; raises StorageWriteError on failure."""


class RedisStorage:
    """
    Redis backed storage; a single SET replaces the value atomically.
    """

    def __init__(self, redis: Redis, *, prefix: str = "chat_engine:") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def read(self, key: str) -> Optional[bytes]:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, str):
            return raw.encode("utf-8")
        return bytes(raw)

    async def write(self, key: str, data: bytes) -> None:
        try:
            await self._redis.set(self._key(key), data)
        except RedisError as exc:
            raise StorageWriteError(f"redis write failed for {key}: {exc}") from exc


class FileStorage:
    """
    One file per key under ``root``; writes go to a temp file that is then
    renamed over the target.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self._root / f"{safe}.json"

    async def read(self, key: str) -> Optional[bytes]:
        path = self._path(key)

        def _read() -> Optional[bytes]:
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None

        return await anyio.to_thread.run_sync(_read)

    async def write(self, key: str, data: bytes) -> None:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise

        try:
            await anyio.to_thread.run_sync(_write)
        except OSError as exc:
            logger.warning("file storage: write to %s failed: %s", path, exc)
            raise StorageWriteError(f"file write failed for {key}: {exc}") from exc


__all__ = ["FileStorage", "RedisStorage", "StorageSubstrate"]
