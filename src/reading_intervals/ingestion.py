"""
Reading interval ingestion.

``submit`` validates one interval against its book, stores it, and then runs
two secondary effects: ranking-cache invalidation and a recompute job.

Policy:
- book missing -> ``BookNotFoundError``; bad bounds -> ``InvalidRangeError``
- identical (user, book, start, end) already stored -> success, no side effects
- store failure -> propagated, no side effects
- invalidation or enqueue failure -> logged, submission still succeeds
"""

from __future__ import annotations

from typing import Iterable, List

from common.errors import (
    BookNotFoundError,
    IntervalAlreadyExistsError,
    InvalidRangeError,
    ReadingTrackerError,
)
from common.metrics import INTERVALS_SUBMITTED_TOTAL
from common.models import (
    BatchItemError,
    BatchSubmitResult,
    BookRecord,
    IntervalSubmission,
    SubmitResult,
)
from common.structured_logging import get_logger

from .jobs import RecomputeJobQueue
from .ranking import TopBooksService
from .store import IntervalStore

logger = get_logger(__name__)


def validate_page_range(book: BookRecord, start_page: int, end_page: int) -> None:
    """Enforce ``1 <= start_page <= end_page <= book.number_of_pages``."""
    if start_page < 1 or end_page < start_page or end_page > book.number_of_pages:
        raise InvalidRangeError(
            "Invalid page range",
            details={
                "book_id": book.id,
                "start_page": start_page,
                "end_page": end_page,
                "number_of_pages": book.number_of_pages,
            },
        )


class IntervalIngestionService:
    def __init__(
        self,
        store: IntervalStore,
        ranking: TopBooksService,
        jobs: RecomputeJobQueue,
    ):
        self._store = store
        self._ranking = ranking
        self._jobs = jobs

    async def submit(self, user_id: int, book_id: int, start_page: int, end_page: int) -> SubmitResult:
        """Submit a single reading interval (idempotent on the exact tuple)."""
        ctx = {"user_id": user_id, "book_id": book_id, "start_page": start_page, "end_page": end_page}

        book = await self._store.get_book(book_id)
        if book is None:
            INTERVALS_SUBMITTED_TOTAL.labels(result="rejected").inc()
            logger.info("Reading interval rejected: book not found", extra=ctx)
            raise BookNotFoundError(book_id)
        try:
            validate_page_range(book, start_page, end_page)
        except InvalidRangeError:
            INTERVALS_SUBMITTED_TOTAL.labels(result="rejected").inc()
            logger.info("Reading interval rejected: invalid page range", extra=ctx)
            raise

        if await self._store.interval_exists(user_id, book_id, start_page, end_page):
            return self._duplicate(book_id, ctx)
        try:
            interval_id = await self._store.insert_interval(user_id, book_id, start_page, end_page)
        except IntervalAlreadyExistsError:
            # Lost a race against an identical submission
            return self._duplicate(book_id, ctx)

        INTERVALS_SUBMITTED_TOTAL.labels(result="created").inc()
        logger.info("Reading interval stored", extra={**ctx, "interval_id": interval_id})

        invalidated = await self._ranking.invalidate()
        job_enqueued = await self._jobs.enqueue_recompute(book_id)
        if not job_enqueued:
            logger.warning("Recompute job not enqueued; read-page count stays stale", extra=ctx)

        return SubmitResult(
            created=True,
            book_id=book_id,
            invalidated=invalidated,
            job_enqueued=job_enqueued,
        )

    def _duplicate(self, book_id: int, ctx: dict) -> SubmitResult:
        INTERVALS_SUBMITTED_TOTAL.labels(result="duplicate").inc()
        logger.info("Reading interval already stored, ignoring", extra=ctx)
        return SubmitResult(created=False, book_id=book_id)

    async def submit_batch(
        self, user_id: int, intervals: Iterable[IntervalSubmission]
    ) -> BatchSubmitResult:
        """Submit many intervals independently; one bad item never fails the batch."""
        result = BatchSubmitResult()
        items: List[IntervalSubmission] = list(intervals)
        for index, item in enumerate(items):
            try:
                await self.submit(user_id, item.book_id, item.start_page, item.end_page)
            except ReadingTrackerError as exc:
                result.failed_count += 1
                result.errors.append(
                    BatchItemError(
                        index=index,
                        book_id=item.book_id,
                        start_page=item.start_page,
                        end_page=item.end_page,
                        error_code=exc.error_code,
                        message=exc.message,
                    )
                )
            else:
                result.success_count += 1

        logger.info(
            "Reading interval batch processed",
            extra={
                "user_id": user_id,
                "batch_size": len(items),
                "success_count": result.success_count,
                "failed_count": result.failed_count,
            },
        )
        return result
