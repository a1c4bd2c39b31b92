from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from pydantic import ValidationError
from redis import asyncio as aioredis

from reelstore.domain import VideoMetadata

from .config import Settings
from .logging import get_logger


def cache_key(video_id: str) -> str:
    return f"video:{video_id}"


class ResultCache(ABC):
    """Short-lived, non-authoritative cache of serialized video metadata."""

    def __init__(self, ttl_seconds: int) -> None:
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger(component="result_cache")

    async def get(self, video_id: str) -> VideoMetadata | None:
        raw = await self._get_raw(cache_key(video_id))
        if raw is None:
            return None
        try:
            return VideoMetadata.model_validate_json(raw)
        except ValidationError:
            self.logger.warning("cache_entry_unreadable", video_id=video_id)
            await self.invalidate(video_id)
            return None

    async def set(self, video_id: str, metadata: VideoMetadata, ttl: int | None = None) -> None:
        await self._set_raw(cache_key(video_id), metadata.model_dump_json(), ttl or self.ttl_seconds)

    async def invalidate(self, video_id: str) -> None:
        await self._delete_raw(cache_key(video_id))

    async def close(self) -> None:
        return None

    @abstractmethod
    async def _get_raw(self, key: str) -> str | None: ...

    @abstractmethod
    async def _set_raw(self, key: str, payload: str, ttl: int) -> None: ...

    @abstractmethod
    async def _delete_raw(self, key: str) -> None: ...


class MemoryResultCache(ResultCache):
    """In-process TTL map used in tests and single-process development."""

    def __init__(self, ttl_seconds: int = 3600, *, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    async def _get_raw(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return payload

    async def _set_raw(self, key: str, payload: str, ttl: int) -> None:
        self._entries[key] = (self._clock() + ttl, payload)

    async def _delete_raw(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class RedisResultCache(ResultCache):
    def __init__(self, client: Any, ttl_seconds: int = 3600) -> None:
        super().__init__(ttl_seconds)
        self._client = client

    async def _get_raw(self, key: str) -> str | None:
        value = await self._client.get(key)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def _set_raw(self, key: str, payload: str, ttl: int) -> None:
        await self._client.setex(key, ttl, payload)

    async def _delete_raw(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


def get_cache(settings: Settings) -> ResultCache:
    if settings.cache_backend == "memory":
        return MemoryResultCache(settings.cache_ttl_seconds)
    if settings.cache_backend == "redis":
        client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisResultCache(client, settings.cache_ttl_seconds)
    raise ValueError(f"Unsupported cache backend: {settings.cache_backend}")


__all__ = [
    "ResultCache",
    "MemoryResultCache",
    "RedisResultCache",
    "cache_key",
    "get_cache",
]
