"""Async Redis helpers for the ranking cache.

redis>=5 bundles asyncio support via ``redis.asyncio``.  Every command is
bounded by the client's socket timeout (``CACHE_TIMEOUT``); callers decide
whether a failure here is fatal, so nothing in this module swallows errors
except the connection probe.
"""
from __future__ import annotations

import json
from typing import Any, List, Optional

import redis.asyncio as redis
from redis.exceptions import ResponseError

from .settings import settings as S
from .structured_logging import get_logger

logger = get_logger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """Return the process-wide Redis client (connections are opened lazily)."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            S.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=S.redis_max_connections,
            socket_timeout=S.cache_timeout,
            socket_connect_timeout=S.cache_timeout,
        )
    return _redis_client


async def ping(client: redis.Redis) -> bool:
    """Return True when Redis answers, False otherwise."""
    try:
        await client.ping()
        return True
    except Exception:  # noqa: BLE001
        logger.warning("Redis unavailable", exc_info=True)
        return False


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


class RedisCache:
    """JSON cache over a Redis client: get / set with TTL / delete / pattern delete."""

    def __init__(self, client: redis.Redis, scan_count: int = 100):
        self._redis = client
        self._scan_count = scan_count

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_millis: int) -> None:
        await self._redis.set(key, json.dumps(value, default=str), px=ttl_millis)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._redis.delete(*keys)

    async def keys_matching(self, pattern: str) -> List[str]:
        """Enumerate keys with cursor-based SCAN (never KEYS, which blocks Redis)."""
        return [key async for key in self._redis.scan_iter(match=pattern, count=self._scan_count)]

    async def delete_pattern(self, pattern: str, fallback_keys: List[str] | None = None) -> int:
        """Delete every key matching *pattern*.

        Backends that reject SCAN (some managed/proxied deployments) fall back
        to deleting *fallback_keys*.
        """
        try:
            keys = await self.keys_matching(pattern)
        except ResponseError:
            if fallback_keys is None:
                raise
            logger.warning(
                "Cache backend cannot enumerate keys, deleting well-known keys",
                extra={"pattern": pattern, "keys": fallback_keys},
            )
            keys = list(fallback_keys)
        return await self.delete(*keys)
