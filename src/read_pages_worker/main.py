"""
Read Pages Worker - Kafka Consumer

Consumes recompute jobs and refreshes each book's denormalized read-page
count from its raw reading intervals.  Jobs are retried with exponential
backoff up to their attempt limit and then dropped, so one failing book
never holds up the rest of the topic.
"""

import asyncio
import signal
import time
from typing import Any, Dict, Optional

from pydantic import ValidationError
from prometheus_client import start_http_server

from common.errors import BookNotFoundError
from common.events import READ_PAGES_JOBS_TOPIC, RecomputeReadPagesJob
from common.kafka_utils import KafkaEventConsumer
from common.metrics import RECOMPUTE_JOBS_TOTAL, RECOMPUTE_JOB_DURATION_SECONDS
from common.retry import RetryConfig
from common.settings import settings as S
from common.structured_logging import get_logger, log_error_with_context
from reading_intervals.read_pages import ReadPagesCalculator
from reading_intervals.store import IntervalStore, create_engine, create_session_factory

logger = get_logger(__name__)

CONSUMER_GROUP = "read_pages_worker"


async def process_recompute_job(
    job: RecomputeReadPagesJob,
    calculator: ReadPagesCalculator,
    sleep=asyncio.sleep,
) -> Optional[int]:
    """Run one job to completion. Returns the stored count, or None if the job was dropped."""
    retry = RetryConfig(
        max_attempts=job.max_attempts,
        base_delay=job.backoff_delay,
        max_delay=S.recompute_backoff_max,
    )
    ctx = {"book_id": job.book_id, "job_id": job.job_id}

    if job.delay > 0:
        await sleep(job.delay)

    for attempt in range(1, retry.max_attempts + 1):
        started = time.perf_counter()
        try:
            total = await calculator.recompute(job.book_id)
        except BookNotFoundError:
            RECOMPUTE_JOBS_TOTAL.labels(status="failed").inc()
            logger.error("Recompute job dropped: book no longer exists", extra=ctx)
            return None
        except Exception as e:
            RECOMPUTE_JOB_DURATION_SECONDS.labels(status="error").observe(time.perf_counter() - started)
            if not retry.should_retry(attempt):
                RECOMPUTE_JOBS_TOTAL.labels(status="failed").inc()
                log_error_with_context(logger, e, "recompute_read_pages", attempts=attempt, **ctx)
                return None
            delay = retry.get_delay(attempt)
            RECOMPUTE_JOBS_TOTAL.labels(status="retry").inc()
            logger.warning(
                f"Attempt {attempt}/{retry.max_attempts} failed for recompute job: {e}. "
                f"Retrying in {delay:.2f}s",
                extra=ctx,
            )
            await sleep(delay)
        else:
            RECOMPUTE_JOB_DURATION_SECONDS.labels(status="success").observe(time.perf_counter() - started)
            RECOMPUTE_JOBS_TOTAL.labels(status="success").inc()
            return total
    return None


def make_message_handler(calculator: ReadPagesCalculator):
    async def handle(event_data: Dict[str, Any]):
        try:
            job = RecomputeReadPagesJob(**event_data)
        except ValidationError:
            logger.error("Discarding malformed recompute job", exc_info=True, extra={"event_data": event_data})
            return
        logger.info(
            "Processing recompute job",
            extra={"book_id": job.book_id, "job_id": job.job_id, "source": job.source},
        )
        await process_recompute_job(job, calculator)

    return handle


async def main():
    """Main worker loop with graceful shutdown handling"""
    logger.info("Starting Read Pages Worker")
    try:
        start_http_server(S.metrics_port)
        logger.info("Prometheus metrics server started", extra={"port": S.metrics_port})
    except OSError:
        logger.warning("Failed to start Prometheus metrics server", exc_info=True)

    engine = create_engine()
    calculator = ReadPagesCalculator(IntervalStore(create_session_factory(engine)))

    # Create shutdown event for graceful termination
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    consumer = KafkaEventConsumer(topic=READ_PAGES_JOBS_TOPIC, group_id=CONSUMER_GROUP)
    consumer_task = asyncio.create_task(consumer.start(make_message_handler(calculator)))
    shutdown_task = asyncio.create_task(shutdown_event.wait())

    try:
        # Wait for shutdown signal or consumer completion
        await asyncio.wait({consumer_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        logger.info("Initiating graceful shutdown")
        consumer_task.cancel()
        shutdown_task.cancel()
        await asyncio.gather(consumer_task, shutdown_task, return_exceptions=True)
        await consumer.stop()

        # Close database connections
        try:
            await engine.dispose()
            logger.info("Database connections closed")
        except Exception:
            logger.error("Error closing database connections", exc_info=True)

        logger.info("Read Pages Worker stopped gracefully")


if __name__ == "__main__":
    asyncio.run(main())
