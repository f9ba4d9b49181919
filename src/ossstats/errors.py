"""Error taxonomy shared by refreshers, synchronizers and the read path."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime


class OSSStatsError(Exception):
    """Base class for all ossstats errors."""


class UpstreamError(OSSStatsError):
    """An upstream API call failed."""

    def __init__(self, url: str, message: str, *, status_code: int | None = None) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class UpstreamUnavailable(UpstreamError):
    """Network failure, timeout, throttling or 5xx from an upstream. Retryable."""

    def __init__(
        self,
        url: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
        reset_at: datetime | None = None,
    ) -> None:
        self.reset_at = reset_at
        reason = detail or (f"HTTP {status_code}" if status_code is not None else "unavailable")
        super().__init__(url, f"Upstream unavailable ({reason}): {url}", status_code=status_code)


class UpstreamNotFound(UpstreamError):
    """Upstream answered 404. Permanent for the item, never retried."""

    def __init__(self, url: str) -> None:
        super().__init__(url, f"Upstream not found: {url}", status_code=404)


class ValidationError(OSSStatsError):
    """Malformed editorial input, rejected before anything is persisted."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems) or "invalid input")


class StoreUnavailable(OSSStatsError):
    """The cache backend could not be reached."""


class RateLimited(OSSStatsError):
    """Caller exceeded its quota for a scope."""

    def __init__(self, scope: str, identifier: str, *, reset_at: datetime, retry_after: int) -> None:
        self.scope = scope
        self.identifier = identifier
        self.reset_at = reset_at
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {scope}:{identifier}, retry in {retry_after}s")


class NoCachedData(OSSStatsError):
    """Nothing has ever been cached for the requested key."""
