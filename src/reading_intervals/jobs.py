"""Recompute job queue backed by a Kafka topic."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from common.events import READ_PAGES_JOBS_TOPIC, RECOMPUTE_READ_PAGES_JOB, RecomputeReadPagesJob
from common.kafka_utils import publish_event
from common.settings import settings as S
from common.structured_logging import get_logger

logger = get_logger(__name__)

Publisher = Callable[..., Awaitable[bool]]


class RecomputeJobQueue:
    """Enqueue side of the recompute pipeline.

    ``enqueue`` never raises: a job that cannot be published within
    ``QUEUE_TIMEOUT`` is logged and reported as ``False``.
    """

    def __init__(
        self,
        publisher: Publisher = publish_event,
        topic: str = READ_PAGES_JOBS_TOPIC,
        timeout: float | None = None,
    ):
        self._publish = publisher
        self._topic = topic
        self._timeout = timeout if timeout is not None else S.queue_timeout

    async def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
    ) -> bool:
        if job_type != RECOMPUTE_READ_PAGES_JOB:
            raise ValueError(f"Unknown job type: {job_type}")

        job = RecomputeReadPagesJob(
            book_id=payload["book_id"],
            delay=S.recompute_job_delay if delay is None else delay,
            max_attempts=S.recompute_max_attempts if max_attempts is None else max_attempts,
            backoff_delay=S.recompute_backoff_delay if backoff is None else backoff,
        )
        try:
            ok = await asyncio.wait_for(
                self._publish(self._topic, job.model_dump(mode="json"), key=job.book_id),
                timeout=self._timeout,
            )
        except Exception:
            logger.warning(
                "Failed to enqueue recompute job",
                exc_info=True,
                extra={"book_id": job.book_id, "job_id": job.job_id},
            )
            return False

        if ok:
            logger.debug("Recompute job enqueued", extra={"book_id": job.book_id, "job_id": job.job_id})
        else:
            logger.warning("Recompute job was not published", extra={"book_id": job.book_id})
        return bool(ok)

    async def enqueue_recompute(self, book_id: int) -> bool:
        return await self.enqueue(RECOMPUTE_READ_PAGES_JOB, {"book_id": book_id})
