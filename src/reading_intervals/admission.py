"""Fixed-window admission control for the ingestion routes.

Counters live in the ``limits`` storage (Redis in production) keyed by
client, method and route, so every API instance shares the same windows.
A window's expiry is set by its first hit and is not extended by later hits,
which bounds a client to ``limit`` requests per fixed window.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from limits import RateLimitItemPerSecond
from limits.aio.strategies import FixedWindowRateLimiter
from limits.storage import storage_from_string

from common.errors import RateLimitedError, TransientError
from common.metrics import ADMISSION_REJECTIONS_TOTAL
from common.settings import settings as S
from common.structured_logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RouteLimit:
    limit: int
    duration: int  # seconds


class AdmissionController:
    def __init__(
        self,
        storage_uri: str | None = None,
        default_limit: int | None = None,
        default_duration: int | None = None,
        route_limits: Optional[Mapping[str, Mapping[str, int]]] = None,
        timeout: float | None = None,
    ):
        self.storage = storage_from_string(storage_uri or S.rate_limit_storage_uri)
        self._limiter = FixedWindowRateLimiter(self.storage)
        self._timeout = S.cache_timeout if timeout is None else timeout
        self.default = RouteLimit(
            limit=S.rate_limit if default_limit is None else default_limit,
            duration=S.rate_duration if default_duration is None else default_duration,
        )
        raw_routes = S.rate_limit_routes if route_limits is None else route_limits
        self.routes: Dict[str, RouteLimit] = {
            key: RouteLimit(
                limit=rule.get("limit", self.default.limit),
                duration=rule.get("duration", self.default.duration),
            )
            for key, rule in raw_routes.items()
        }

    def rule_for(self, route: str, method: str) -> RouteLimit:
        return self.routes.get(f"{method.upper()} {route}", self.default)

    async def check(self, client_id: str, route: str, method: str) -> None:
        """Count one request, or raise ``RateLimitedError`` if the window is full."""
        rule = self.rule_for(route, method)
        item = RateLimitItemPerSecond(rule.limit, rule.duration)
        identifiers = ("throttle", client_id, method.upper(), route)

        try:
            # One atomic increment decides admission
            allowed = await asyncio.wait_for(self._limiter.hit(item, *identifiers), timeout=self._timeout)
            if not allowed:
                reset_at, _ = await asyncio.wait_for(
                    self._limiter.get_window_stats(item, *identifiers), timeout=self._timeout
                )
        except Exception as exc:
            logger.warning("Admission storage unavailable", exc_info=True, extra={"route": route})
            raise TransientError("Admission control unavailable", dependency="rate_limit_storage") from exc

        if not allowed:
            retry_after = max(1, math.ceil(reset_at - time.time()))
            ADMISSION_REJECTIONS_TOTAL.labels(route=route).inc()
            logger.warning(
                f"Rate limit hit by {client_id} on {method.upper()} {route}",
                extra={"client_id": client_id, "limit": rule.limit, "duration": rule.duration},
            )
            raise RateLimitedError(retry_after=retry_after)

    async def reset(self) -> None:
        await self.storage.reset()
