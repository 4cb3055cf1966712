import asyncio

import pytest

from common.errors import RateLimitedError, TransientError
from reading_intervals.admission import AdmissionController, RouteLimit

ROUTE = "/books/reading-interval"


def _controller(**kwargs):
    options = {
        "storage_uri": "async+memory://",
        "default_limit": 100,
        "default_duration": 60,
        "route_limits": {f"POST {ROUTE}": {"limit": 20, "duration": 30}},
    }
    options.update(kwargs)
    return AdmissionController(**options)


def test_route_rule_lookup():
    controller = _controller()
    assert controller.rule_for(ROUTE, "post") == RouteLimit(limit=20, duration=30)
    assert controller.rule_for("/books/top", "GET") == RouteLimit(limit=100, duration=60)


@pytest.mark.asyncio
async def test_twenty_first_request_in_window_is_rejected():
    controller = _controller()
    for _ in range(20):
        await controller.check("10.0.0.1", ROUTE, "POST")

    with pytest.raises(RateLimitedError) as exc:
        await controller.check("10.0.0.1", ROUTE, "POST")

    assert exc.value.http_status == 429
    assert 1 <= exc.value.retry_after <= 30


@pytest.mark.asyncio
async def test_windows_are_per_client_and_route():
    controller = _controller(route_limits={f"POST {ROUTE}": {"limit": 1, "duration": 30}})
    await controller.check("10.0.0.1", ROUTE, "POST")

    await controller.check("10.0.0.2", ROUTE, "POST")
    await controller.check("10.0.0.1", "/books/reading-intervals", "POST")
    with pytest.raises(RateLimitedError):
        await controller.check("10.0.0.1", ROUTE, "POST")


@pytest.mark.asyncio
async def test_new_window_admits_again():
    controller = _controller(route_limits={f"POST {ROUTE}": {"limit": 2, "duration": 1}})
    await controller.check("10.0.0.1", ROUTE, "POST")
    await controller.check("10.0.0.1", ROUTE, "POST")
    with pytest.raises(RateLimitedError):
        await controller.check("10.0.0.1", ROUTE, "POST")

    await asyncio.sleep(1.2)

    await controller.check("10.0.0.1", ROUTE, "POST")


@pytest.mark.asyncio
async def test_reset_clears_counters():
    controller = _controller(route_limits={f"POST {ROUTE}": {"limit": 1, "duration": 30}})
    await controller.check("10.0.0.1", ROUTE, "POST")
    await controller.reset()
    await controller.check("10.0.0.1", ROUTE, "POST")


class YieldingLimiter:
    """Wraps a real limiter and yields to the loop before every storage call,
    the way a network-backed storage would."""

    def __init__(self, inner):
        self._inner = inner

    async def test(self, item, *identifiers):
        await asyncio.sleep(0)
        return await self._inner.test(item, *identifiers)

    async def hit(self, item, *identifiers):
        await asyncio.sleep(0)
        return await self._inner.hit(item, *identifiers)

    async def get_window_stats(self, item, *identifiers):
        await asyncio.sleep(0)
        return await self._inner.get_window_stats(item, *identifiers)


class BrokenLimiter:
    def __init__(self, hang=False, full=False, stats_error=False):
        self.hang = hang
        self.full = full
        self.stats_error = stats_error

    async def hit(self, item, *identifiers):
        if self.hang:
            await asyncio.sleep(30)
        if not self.full:
            raise ConnectionError("rate limit storage down")
        return False

    async def get_window_stats(self, item, *identifiers):
        if self.stats_error:
            raise ConnectionError("rate limit storage down")
        return (0, 0)


@pytest.mark.asyncio
async def test_concurrent_requests_never_exceed_window():
    controller = _controller()
    controller._limiter = YieldingLimiter(controller._limiter)

    results = await asyncio.gather(
        *(controller.check("10.0.0.1", ROUTE, "POST") for _ in range(40)),
        return_exceptions=True,
    )

    admitted = [r for r in results if r is None]
    rejected = [r for r in results if isinstance(r, RateLimitedError)]
    assert len(admitted) == 20
    assert len(rejected) == 20


@pytest.mark.asyncio
async def test_hanging_storage_times_out_as_transient():
    controller = _controller(timeout=0.05)
    controller._limiter = BrokenLimiter(hang=True)

    with pytest.raises(TransientError) as exc:
        await asyncio.wait_for(controller.check("10.0.0.1", ROUTE, "POST"), timeout=2)

    assert exc.value.http_status == 503


@pytest.mark.asyncio
async def test_storage_failure_is_transient():
    controller = _controller()
    controller._limiter = BrokenLimiter()

    with pytest.raises(TransientError):
        await controller.check("10.0.0.1", ROUTE, "POST")


@pytest.mark.asyncio
async def test_window_stats_failure_is_transient():
    controller = _controller()
    controller._limiter = BrokenLimiter(full=True, stats_error=True)

    with pytest.raises(TransientError):
        await controller.check("10.0.0.1", ROUTE, "POST")
