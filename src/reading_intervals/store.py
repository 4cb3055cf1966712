"""
Interval store: the narrow query surface the aggregation core needs from Postgres.

Every call is bounded by ``DB_STATEMENT_TIMEOUT``; driver failures and
timeouts surface as ``TransientError`` so callers never see raw SQLAlchemy
exceptions.  The unique (user, book, start, end) constraint is the only
concurrency guard for duplicate submissions and is reported as
``IntervalAlreadyExistsError``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from common.errors import (
    BookNotFoundError,
    IntervalAlreadyExistsError,
    ReadingTrackerError,
    TransientError,
)
from common.models import Base, Book, BookRecord, RankedBook, ReadingInterval
from common.settings import settings as S
from common.structured_logging import get_logger

logger = get_logger(__name__)

UNIQUE_INTERVAL_CONSTRAINT = "uq_reading_intervals_user_book_pages"

# Distinct pages per book computed inside Postgres by expanding every interval
# into its page numbers.  Must agree with ``merge.count_unique_pages``.
READ_PAGE_TOTALS_SQL = """
SELECT
    b.id AS book_id,
    b.title AS title,
    b.number_of_pages AS number_of_pages,
    COUNT(DISTINCT gs.page) AS unique_pages_read
FROM books b
LEFT JOIN (
    SELECT
        book_id,
        generate_series(start_page, end_page) AS page
    FROM reading_intervals
) gs ON gs.book_id = b.id
{where}
GROUP BY b.id, b.title, b.number_of_pages
ORDER BY unique_pages_read DESC, b.title ASC, b.id ASC
{limit}
"""


def create_engine(db_url: str | None = None) -> AsyncEngine:
    return create_async_engine(
        db_url or S.async_db_url,
        echo=False,
        pool_size=S.db_pool_size,
        max_overflow=S.db_max_overflow,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class IntervalStore:
    """Async query interface over the ``books`` and ``reading_intervals`` tables."""

    def __init__(self, session_factory, timeout: float | None = None):
        self._session_factory = session_factory
        self._timeout = timeout if timeout is not None else S.db_statement_timeout

    async def _bounded(self, operation: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(fn(), timeout=self._timeout)
        except ReadingTrackerError:
            raise
        except (asyncio.TimeoutError, SQLAlchemyError, OSError) as exc:
            logger.warning(
                "Store operation failed",
                exc_info=True,
                extra={"operation": operation, "error_type": type(exc).__name__},
            )
            raise TransientError(
                f"Store operation '{operation}' failed", dependency="database"
            ) from exc

    # ------------------------------------------------------------------
    # schema
    # ------------------------------------------------------------------
    @staticmethod
    async def create_schema(engine: AsyncEngine) -> None:
        logger.info("Ensuring database tables exist")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables verified/created successfully")

    # ------------------------------------------------------------------
    # books
    # ------------------------------------------------------------------
    async def get_book(self, book_id: int) -> Optional[BookRecord]:
        async def _op():
            async with self._session_factory() as session:
                book = await session.get(Book, book_id)
                return BookRecord.model_validate(book) if book is not None else None

        return await self._bounded("get_book", _op)

    async def create_book(self, title: str, number_of_pages: int) -> BookRecord:
        async def _op():
            async with self._session_factory() as session:
                book = Book(title=title, number_of_pages=number_of_pages, number_of_read_pages=0)
                session.add(book)
                await session.commit()
                await session.refresh(book)
                return BookRecord.model_validate(book)

        return await self._bounded("create_book", _op)

    async def update_book(self, book_id: int, **changes: Any) -> BookRecord:
        values = {k: v for k, v in changes.items() if v is not None}

        async def _op():
            async with self._session_factory() as session:
                book = await session.get(Book, book_id)
                if book is None:
                    raise BookNotFoundError(book_id)
                for key, value in values.items():
                    setattr(book, key, value)
                await session.commit()
                await session.refresh(book)
                return BookRecord.model_validate(book)

        return await self._bounded("update_book", _op)

    async def list_books(self) -> List[BookRecord]:
        async def _op():
            async with self._session_factory() as session:
                result = await session.execute(select(Book).order_by(Book.id))
                return [BookRecord.model_validate(b) for b in result.scalars()]

        return await self._bounded("list_books", _op)

    async def set_read_pages(self, book_id: int, read_pages: int) -> None:
        """Overwrite the denormalized read-page count (idempotent)."""

        async def _op():
            async with self._session_factory() as session:
                result = await session.execute(
                    update(Book).where(Book.id == book_id).values(number_of_read_pages=read_pages)
                )
                await session.commit()
                if result.rowcount == 0:
                    raise BookNotFoundError(book_id)

        await self._bounded("set_read_pages", _op)

    # ------------------------------------------------------------------
    # intervals
    # ------------------------------------------------------------------
    async def interval_exists(self, user_id: int, book_id: int, start_page: int, end_page: int) -> bool:
        async def _op():
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ReadingInterval.id).where(
                        ReadingInterval.user_id == user_id,
                        ReadingInterval.book_id == book_id,
                        ReadingInterval.start_page == start_page,
                        ReadingInterval.end_page == end_page,
                    ).limit(1)
                )
                return result.scalar_one_or_none() is not None

        return await self._bounded("interval_exists", _op)

    async def insert_interval(self, user_id: int, book_id: int, start_page: int, end_page: int) -> int:
        """Insert one interval and return its id.

        Raises ``IntervalAlreadyExistsError`` when the exact tuple is already stored,
        including when a concurrent request won the race.
        """

        async def _op():
            async with self._session_factory() as session:
                interval = ReadingInterval(
                    user_id=user_id,
                    book_id=book_id,
                    start_page=start_page,
                    end_page=end_page,
                )
                session.add(interval)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    if UNIQUE_INTERVAL_CONSTRAINT in str(exc.orig):
                        raise IntervalAlreadyExistsError(user_id, book_id, start_page, end_page) from exc
                    if "foreign key" in str(exc.orig).lower():
                        raise BookNotFoundError(book_id) from exc
                    raise
                return interval.id

        return await self._bounded("insert_interval", _op)

    async def intervals_for_book(self, book_id: int) -> List[Tuple[int, int]]:
        """All (start_page, end_page) pairs for *book_id*, ordered by start page."""

        async def _op():
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ReadingInterval.start_page, ReadingInterval.end_page)
                    .where(ReadingInterval.book_id == book_id)
                    .order_by(ReadingInterval.start_page)
                )
                return [(row.start_page, row.end_page) for row in result]

        return await self._bounded("intervals_for_book", _op)

    async def intervals_by_book(self) -> Dict[int, List[Tuple[int, int]]]:
        """Every book's intervals, each list ordered by start page."""

        async def _op():
            async with self._session_factory() as session:
                result = await session.execute(
                    select(
                        ReadingInterval.book_id,
                        ReadingInterval.start_page,
                        ReadingInterval.end_page,
                    ).order_by(ReadingInterval.book_id, ReadingInterval.start_page)
                )
                grouped: Dict[int, List[Tuple[int, int]]] = {}
                for row in result:
                    grouped.setdefault(row.book_id, []).append((row.start_page, row.end_page))
                return grouped

        return await self._bounded("intervals_by_book", _op)

    async def read_page_totals(
        self, limit: Optional[int] = None, book_id: Optional[int] = None
    ) -> List[RankedBook]:
        """Unique pages read per book via the ``generate_series`` aggregate, ranked."""
        params: Dict[str, Any] = {}
        where = ""
        limit_sql = ""
        if book_id is not None:
            where = "WHERE b.id = :book_id"
            params["book_id"] = book_id
        if limit is not None:
            limit_sql = "LIMIT :limit"
            params["limit"] = limit
        query = text(READ_PAGE_TOTALS_SQL.format(where=where, limit=limit_sql))

        async def _op():
            async with self._session_factory() as session:
                result = await session.execute(query, params)
                return [
                    RankedBook(
                        book_id=row.book_id,
                        title=row.title,
                        number_of_pages=row.number_of_pages,
                        unique_pages_read=row.unique_pages_read,
                    )
                    for row in result
                ]

        return await self._bounded("read_page_totals", _op)
