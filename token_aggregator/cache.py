"""Redis-backed JSON cache.

Every operation is independently fault tolerant: a Redis failure is logged
and reported to the caller as a miss (or a no-op), never raised. With the
cache disabled no client is created at all.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import redis.asyncio as aioredis

from .config import Settings, get_settings
from .http import dumps, loads

logger = logging.getLogger(__name__)

AGGREGATED_KEY = "tokens:aggregated"
HEALTH_KEY = "health:check"


class CacheService:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: Any | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.enabled = bool(settings.cache.enabled)
        self.default_ttl = int(settings.cache.ttl)
        self._dsn = settings.redis.dsn
        self._client: Any | None = client if self.enabled else None
        if self.enabled and self._client is None:
            try:
                self._client = aioredis.from_url(self._dsn, decode_responses=True)
            except Exception:
                logger.exception("Cache: unable to create Redis client for %s; caching disabled", self._dsn)
                self.enabled = False

    def is_enabled(self) -> bool:
        return self.enabled and self._client is not None

    async def get(self, key: str) -> Any | None:
        if not self.is_enabled():
            return None
        try:
            raw = await self._client.get(key)
        except Exception as exc:
            logger.error("Cache get error for key %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return loads(raw)
        except ValueError as exc:
            logger.error("Cache get error for key %s: undecodable value: %s", key, exc)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.is_enabled():
            return False
        expire = ttl if ttl is not None else self.default_ttl
        try:
            payload = dumps(value).decode()
            await self._client.set(key, payload, ex=int(expire) if expire else None)
        except Exception as exc:
            logger.error("Cache set error for key %s: %s", key, exc)
            return False
        return True

    async def delete(self, key: str) -> bool:
        if not self.is_enabled():
            return False
        try:
            await self._client.delete(key)
        except Exception as exc:
            logger.error("Cache delete error for key %s: %s", key, exc)
            return False
        return True

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern``; returns how many were removed."""
        if not self.is_enabled():
            return 0
        try:
            keys: List[str] = [key async for key in self._client.scan_iter(match=pattern)]
            if not keys:
                return 0
            return int(await self._client.delete(*keys))
        except Exception as exc:
            logger.error("Cache delete pattern error for %s: %s", pattern, exc)
            return 0

    async def exists(self, key: str) -> bool:
        if not self.is_enabled():
            return False
        try:
            return bool(await self._client.exists(key))
        except Exception as exc:
            logger.error("Cache exists error for key %s: %s", key, exc)
            return False

    async def get_ttl(self, key: str) -> int:
        """Remaining TTL in seconds; ``-1`` without expiry, ``-2`` when absent or on error."""
        if not self.is_enabled():
            return -2
        try:
            return int(await self._client.ttl(key))
        except Exception as exc:
            logger.error("Cache ttl error for key %s: %s", key, exc)
            return -2

    async def ping(self) -> bool:
        if not self.is_enabled():
            return False
        try:
            return bool(await self._client.ping())
        except Exception as exc:
            logger.warning("Cache ping failed: %s", exc)
            return False

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except Exception as exc:  # pragma: no cover - best effort on shutdown
            logger.debug("Cache close failed: %s", exc)


__all__ = ["AGGREGATED_KEY", "HEALTH_KEY", "CacheService"]
