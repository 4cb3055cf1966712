"""Unique-pages-read calculation for a single book, always from the raw intervals."""

from __future__ import annotations

from common.errors import BookNotFoundError
from common.structured_logging import get_logger

from .merge import count_unique_pages
from .store import IntervalStore

logger = get_logger(__name__)


class ReadPagesCalculator:
    def __init__(self, store: IntervalStore):
        self._store = store

    async def total_unique_pages(self, book_id: int) -> int:
        """Live count of distinct pages read for *book_id* across all users."""
        book = await self._store.get_book(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        intervals = await self._store.intervals_for_book(book_id)
        return count_unique_pages(intervals, presorted=True)

    async def recompute(self, book_id: int) -> int:
        """Recompute the count and overwrite the book's denormalized field.

        Safe to repeat and to run out of order: the stored value is always
        derived from the full interval set at the time of the call.
        """
        intervals = await self._store.intervals_for_book(book_id)
        total = count_unique_pages(intervals, presorted=True)
        await self._store.set_read_pages(book_id, total)
        logger.info(
            "Calculated total unique pages read",
            extra={"book_id": book_id, "unique_pages_read": total, "interval_count": len(intervals)},
        )
        return total
