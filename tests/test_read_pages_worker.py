import logging

import pytest

from common.errors import TransientError
from common.events import RecomputeReadPagesJob
from read_pages_worker.main import make_message_handler, process_recompute_job
from reading_intervals.read_pages import ReadPagesCalculator

from factories import FakeStore


class FlakyStore(FakeStore):
    """Fails ``set_read_pages`` a fixed number of times before succeeding."""

    def __init__(self, failures: int, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    async def set_read_pages(self, book_id, read_pages):
        if self.failures > 0:
            self.failures -= 1
            raise TransientError("db hiccup", dependency="database")
        await super().set_read_pages(book_id, read_pages)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _store_with_book(store):
    book = store.add_book(number_of_pages=100)
    store.intervals += [(1, book.id, 1, 10), (2, book.id, 8, 20)]
    return book


@pytest.mark.asyncio
async def test_recompute_updates_denormalized_count():
    store = FakeStore()
    book = _store_with_book(store)
    sleep = RecordingSleep()

    total = await process_recompute_job(RecomputeReadPagesJob(book_id=book.id), ReadPagesCalculator(store), sleep=sleep)

    assert total == 20
    assert store.books[book.id].number_of_read_pages == 20
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_initial_delay_is_honoured():
    store = FakeStore()
    book = _store_with_book(store)
    sleep = RecordingSleep()

    await process_recompute_job(RecomputeReadPagesJob(book_id=book.id, delay=2.5), ReadPagesCalculator(store), sleep=sleep)

    assert sleep.delays == [2.5]


@pytest.mark.asyncio
async def test_retries_with_exponential_backoff():
    store = FlakyStore(failures=2)
    book = _store_with_book(store)
    sleep = RecordingSleep()
    job = RecomputeReadPagesJob(book_id=book.id, max_attempts=3, backoff_delay=1.0)

    total = await process_recompute_job(job, ReadPagesCalculator(store), sleep=sleep)

    assert total == 20
    assert len(sleep.delays) == 2
    # 1s then 2s, each with up to 10% jitter
    assert 0.9 <= sleep.delays[0] <= 1.1
    assert 1.8 <= sleep.delays[1] <= 2.2


@pytest.mark.asyncio
async def test_job_dropped_after_max_attempts():
    store = FlakyStore(failures=5)
    book = _store_with_book(store)
    sleep = RecordingSleep()
    job = RecomputeReadPagesJob(book_id=book.id, max_attempts=3, backoff_delay=0.5)

    assert await process_recompute_job(job, ReadPagesCalculator(store), sleep=sleep) is None
    assert len(sleep.delays) == 2
    assert store.failures == 2
    assert store.books[book.id].number_of_read_pages == 0


@pytest.mark.asyncio
async def test_missing_book_is_not_retried():
    store = FakeStore()
    sleep = RecordingSleep()

    assert await process_recompute_job(RecomputeReadPagesJob(book_id=31337), ReadPagesCalculator(store), sleep=sleep) is None
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_repeated_jobs_converge():
    store = FakeStore()
    book = _store_with_book(store)
    calculator = ReadPagesCalculator(store)
    for _ in range(3):
        await process_recompute_job(RecomputeReadPagesJob(book_id=book.id), calculator, sleep=RecordingSleep())
    assert store.books[book.id].number_of_read_pages == 20


@pytest.mark.asyncio
async def test_message_handler_discards_malformed_jobs():
    store = FakeStore()
    handler = make_message_handler(ReadPagesCalculator(store))

    await handler({"job_type": "recompute_read_pages", "book_id": "not-a-number"})

    assert "set_read_pages" not in store.calls


@pytest.mark.asyncio
async def test_message_handler_runs_job():
    store = FakeStore()
    book = _store_with_book(store)
    handler = make_message_handler(ReadPagesCalculator(store))

    await handler(RecomputeReadPagesJob(book_id=book.id).model_dump(mode="json"))

    assert store.books[book.id].number_of_read_pages == 20


def test_backoff_is_capped_and_non_negative():
    from common.retry import RetryConfig

    policy = RetryConfig(max_attempts=10, base_delay=1.0, max_delay=5.0, jitter_ratio=0)
    assert [policy.get_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert policy.should_retry(9) is True
    assert policy.should_retry(10) is False


class RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.mark.asyncio
async def test_message_handler_logs_job_source():
    store = FakeStore()
    book = _store_with_book(store)
    handler = make_message_handler(ReadPagesCalculator(store))
    recorder = RecordingHandler()
    worker_logger = logging.getLogger("read_pages_worker.main")
    worker_logger.addHandler(recorder)
    try:
        await handler(RecomputeReadPagesJob(book_id=book.id, source="reading_api").model_dump(mode="json"))
    finally:
        worker_logger.removeHandler(recorder)

    processing = [r for r in recorder.records if r.getMessage() == "Processing recompute job"]
    assert processing[0].source == "reading_api"
    assert processing[0].book_id == book.id
