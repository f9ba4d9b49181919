"""Fixed-window rate limiting for endpoints that proxy to remote URLs."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import BaseModel

from ossstats.errors import RateLimited

if TYPE_CHECKING:
    from collections.abc import Callable

    from ossstats.storage.cache import CacheStore

WINDOW = timedelta(minutes=1)

RATE_LIMIT_PRESETS: dict[str, int] = {
    "template": 30,
    "addon": 30,
    "sensitive": 10,
    "deploy": 10,
}


class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def window_start(now: datetime) -> datetime:
    """Start of the one-minute window containing ``now``."""
    return now.replace(second=0, microsecond=0)


class RateLimiter:
    """Counts hits per ``(scope, identifier)`` in the cache store, one window per minute."""

    def __init__(self, store: CacheStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or store.now

    def check_rate_limit(self, identifier: str, scope: str, limit_per_minute: int | None = None) -> RateLimitResult:
        """Record one hit and report whether it fits in the current window."""

        limit = limit_per_minute if limit_per_minute is not None else RATE_LIMIT_PRESETS[scope]
        now = self._clock()
        start = window_start(now)
        count = self.store.increment_window(scope, identifier, start)
        if count == 1:
            # First hit of a window: earlier windows can no longer affect any decision
            self.store.prune_windows(start)
        result = RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=start + WINDOW,
            retry_after=max(0, math.ceil((start + WINDOW - now).total_seconds())),
        )
        if not result.allowed:
            logger.warning("Rate limit hit for {}:{} ({} > {})", scope, identifier, count, limit)
        return result

    def enforce(self, identifier: str, scope: str, limit_per_minute: int | None = None) -> RateLimitResult:
        """Like :meth:`check_rate_limit` but raises :class:`RateLimited` when over quota."""

        result = self.check_rate_limit(identifier, scope, limit_per_minute)
        if not result.allowed:
            raise RateLimited(scope, identifier, reset_at=result.reset_at, retry_after=result.retry_after)
        return result

    def prune(self, keep: timedelta = timedelta(hours=1)) -> None:
        """Drop windows older than ``keep``."""
        self.store.prune_windows(self._clock() - keep)
