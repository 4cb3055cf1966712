"""Top-books ranking with a cache-aside layer.

Ranking reads go cache first (``top_books:<limit>``) and fall back to a live
aggregation over the raw intervals; the result is written back with a TTL.
Any interval insert wipes every ``top_books:*`` entry.

Cache problems never reach the caller: a failed read or write degrades to
live computation, and a failed invalidation leaves stale rankings for at
most one TTL window.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List, Optional, Protocol

from common.errors import InvalidArgumentError
from common.metrics import TOP_BOOKS_CACHE_TOTAL
from common.models import CacheStats, RankedBook
from common.settings import settings as S
from common.structured_logging import get_logger

from .merge import count_unique_pages
from .store import IntervalStore

logger = get_logger(__name__)


class Cache(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_millis: int) -> None: ...

    async def delete_pattern(self, pattern: str, fallback_keys: List[str] | None = None) -> int: ...


def rank_books(rows: List[RankedBook], limit: int) -> List[RankedBook]:
    """Unique pages read descending, then title ascending (book id breaks exact ties)."""
    return sorted(rows, key=lambda r: (-r.unique_pages_read, r.title, r.book_id))[:limit]


class TopBooksService:
    def __init__(
        self,
        store: IntervalStore,
        cache: Optional[Cache],
        enabled: bool | None = None,
        ttl_seconds: int | None = None,
        key_prefix: str | None = None,
        aggregation: str | None = None,
        timeout: float | None = None,
    ):
        self._store = store
        self._cache = cache
        self.enabled = (S.cache_enabled if enabled is None else enabled) and cache is not None
        self.ttl_seconds = S.cache_ttl if ttl_seconds is None else ttl_seconds
        self.key_prefix = key_prefix or S.top_books_cache_prefix
        self.aggregation = aggregation or S.ranking_aggregation
        self._timeout = S.cache_timeout if timeout is None else timeout
        if self.aggregation not in ("merge", "sql"):
            raise ValueError(f"Unknown ranking aggregation: {self.aggregation}")

    def cache_key(self, limit: int) -> str:
        return f"{self.key_prefix}:{limit}"

    async def _cache_call(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def get_top_books(self, limit: int | None = None) -> List[RankedBook]:
        if limit is None:
            limit = S.top_books_default_limit
        if not 1 <= limit <= S.top_books_max_limit:
            raise InvalidArgumentError(
                f"Limit must be between 1 and {S.top_books_max_limit}", field="limit",
                details={"limit": limit},
            )

        key = self.cache_key(limit)
        if self.enabled:
            try:
                cached = await self._cache_call(self._cache.get(key))
                # Malformed entries fall through to live computation
                hit = None if cached is None else [RankedBook(**row) for row in cached]
            except Exception:
                TOP_BOOKS_CACHE_TOTAL.labels(outcome="error").inc()
                logger.warning("Top books cache read failed, computing live", exc_info=True, extra={"cache_key": key})
            else:
                if hit is not None:
                    TOP_BOOKS_CACHE_TOTAL.labels(outcome="hit").inc()
                    logger.debug("Top books cache hit", extra={"cache_key": key})
                    return hit
                TOP_BOOKS_CACHE_TOTAL.labels(outcome="miss").inc()

        ranked = await self.compute_top_books(limit)

        if self.enabled:
            try:
                await self._cache_call(
                    self._cache.set(key, [r.model_dump() for r in ranked], self.ttl_seconds * 1000)
                )
                logger.debug("Top books cached", extra={"cache_key": key, "ttl": self.ttl_seconds})
            except Exception:
                logger.warning("Top books cache write failed", exc_info=True, extra={"cache_key": key})
        return ranked

    async def compute_top_books(self, limit: int) -> List[RankedBook]:
        """Live ranking straight from the intervals table, never from the denormalized count."""
        with logger.log_performance("compute_top_books", limit=limit, aggregation=self.aggregation):
            if self.aggregation == "sql":
                return await self._store.read_page_totals(limit=limit)

            books = await self._store.list_books()
            intervals = await self._store.intervals_by_book()
            rows = [
                RankedBook(
                    book_id=book.id,
                    title=book.title,
                    number_of_pages=book.number_of_pages,
                    unique_pages_read=count_unique_pages(intervals.get(book.id, []), presorted=True),
                )
                for book in books
            ]
            return rank_books(rows, limit)

    async def invalidate(self) -> bool:
        """Delete every cached ranking regardless of its limit. Never raises.

        Returns False when the cache is off or the delete failed.
        """
        if not self.enabled:
            return False
        pattern = f"{self.key_prefix}:*"
        fallback = [self.cache_key(n) for n in S.top_books_well_known_limits]
        try:
            deleted = await self._cache_call(self._cache.delete_pattern(pattern, fallback_keys=fallback))
        except Exception:
            logger.warning("Top books cache invalidation failed", exc_info=True, extra={"pattern": pattern})
            return False
        logger.info("Top books cache invalidated", extra={"pattern": pattern, "deleted": deleted})
        return True

    def get_cache_stats(self) -> CacheStats:
        return CacheStats(
            enabled=self.enabled,
            ttl=self.ttl_seconds,
            cache_key_prefix=self.key_prefix,
        )
