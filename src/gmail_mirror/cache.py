"""Read-through cache for mailbox read paths.

Redis is used when `redis_url` is configured, otherwise an in-process map with
per-entry expiry. The cache sits beside the sync engine, never inside it:
every cache failure is logged and treated as a miss, and a Redis backend that
fails is swapped for the in-memory one for the rest of the process.
"""

from __future__ import annotations

import fnmatch
import json
import time
from typing import Any, Awaitable, Callable, Optional

import structlog
from redis import asyncio as aioredis

from gmail_mirror.config import Settings

logger = structlog.get_logger()


def conversations_key(user_id: int, label: str | None = None, limit: int | None = None, offset: int = 0) -> str:
    key = f"user:conversations:{user_id}"
    if label:
        key = f"{key}:{label}"
    if limit is not None:
        key = f"{key}:{limit}:{offset}"
    return key


def conversations_pattern(user_id: int) -> str:
    return f"user:conversations:{user_id}:*"


def conversation_messages_key(user_id: int, conversation_id: int) -> str:
    return f"conversation:messages:{user_id}:{conversation_id}"


def message_body_key(user_id: int, message_id: int) -> str:
    return f"message:body:{user_id}:{message_id}"


class MemoryBackend:
    """Dict-backed store with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ex: int) -> None:
        self._entries[key] = (self._clock() + ex, value)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._entries.pop(key, None) is not None)

    async def keys_matching(self, pattern: str) -> list[str]:
        return [key for key in list(self._entries) if fnmatch.fnmatchcase(key, pattern)]


class RedisBackend:
    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ex: int) -> None:
        await self._client.set(key, value, ex=ex)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def keys_matching(self, pattern: str) -> list[str]:
        return [key async for key in self._client.scan_iter(match=pattern)]


class CacheService:
    """JSON value cache with explicit TTLs and pattern invalidation.

    Args:
        settings: Application settings. If None, uses default settings.
        backend: Backend override (tests); chosen from settings otherwise.
    """

    def __init__(self, settings: Settings | None = None, *, backend: Any | None = None) -> None:
        from gmail_mirror.config import get_settings

        self.settings = settings or get_settings()
        self.enabled = self.settings.cache_enabled
        self._backend = backend or self._build_backend()

    @property
    def backend_name(self) -> str:
        return "redis" if isinstance(self._backend, RedisBackend) else "memory"

    async def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        try:
            raw = await self._backend.get(key)
        except Exception as exc:  # noqa: BLE001 - a broken cache is a miss
            self._degrade("get", exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("cache_value_corrupt", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        if not self.enabled:
            return
        try:
            await self._backend.set(key, json.dumps(value, default=str), ex=ttl or self.settings.cache_ttl)
        except Exception as exc:  # noqa: BLE001
            self._degrade("set", exc)

    async def delete(self, key: str) -> None:
        try:
            await self._backend.delete(key)
        except Exception as exc:  # noqa: BLE001
            self._degrade("delete", exc)

    async def invalidate(self, pattern: str) -> int:
        """Delete every key matching a glob-style pattern."""

        try:
            keys = await self._backend.keys_matching(pattern)
            deleted = await self._backend.delete(*keys) if keys else 0
        except Exception as exc:  # noqa: BLE001
            self._degrade("invalidate", exc)
            return 0
        logger.debug("cache_invalidated", pattern=pattern, deleted=deleted)
        return deleted

    async def get_or_set(self, key: str, compute: Callable[[], Awaitable[Any]], ttl: int | None = None) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await compute()
        await self.set(key, value, ttl)
        return value

    def _build_backend(self) -> MemoryBackend | RedisBackend:
        if self.settings.redis_url:
            logger.info("cache_backend_selected", backend="redis")
            return RedisBackend(aioredis.from_url(self.settings.redis_url, decode_responses=True))
        logger.info("cache_backend_selected", backend="memory")
        return MemoryBackend()

    def _degrade(self, operation: str, exc: Exception) -> None:
        """Log a backend failure; a failing Redis is replaced by the in-memory backend."""

        logger.warning("cache_operation_failed", operation=operation, backend=self.backend_name, error=str(exc))
        if isinstance(self._backend, RedisBackend):
            logger.warning("cache_backend_fallback", backend="memory")
            self._backend = MemoryBackend()
