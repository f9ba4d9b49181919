"""HTTP client and resilience helpers shared by the upstream clients."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx
from aiolimiter import AsyncLimiter
from loguru import logger
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from ossstats import __version__
from ossstats.errors import UpstreamNotFound, UpstreamUnavailable

if TYPE_CHECKING:
    from collections.abc import Mapping

    from ossstats.settings import Settings

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class RetryableStatusError(Exception):
    """Raised when a response has a retryable HTTP status code, so tenacity can retry."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"Retryable HTTP {status_code}")


class ThrottleMonitor:
    """Rolling window of response codes, used to report how throttled a run was."""

    def __init__(self, window: int) -> None:
        self.window = window
        self._codes: deque[int] = deque(maxlen=window)

    def push_status(self, code: int) -> None:
        self._codes.append(code)

    @property
    def sample_size(self) -> int:
        return len(self._codes)

    @property
    def throttled_percent(self) -> float:
        if not self._codes:
            return 0.0
        throttled = sum(1 for code in self._codes if code in {403, 429})
        return throttled * 100.0 / len(self._codes)


@dataclass
class RequestContext:
    """Fetch context passed to every upstream client."""

    limiter: AsyncLimiter
    monitor: ThrottleMonitor
    _limiter_loop_map: dict[int, AsyncLimiter] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> RequestContext:
        return cls(
            limiter=AsyncLimiter(settings.rate_limit_per_second, 1),
            monitor=ThrottleMonitor(settings.block_window),
        )

    def get_limiter(self) -> AsyncLimiter:
        """Return an AsyncLimiter bound to the current event loop.

        Prefect may run flows on different loops; a limiter created on one loop
        warns when awaited on another.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return self.limiter

        loop_id = id(loop)
        if loop_id not in self._limiter_loop_map:
            self._limiter_loop_map[loop_id] = AsyncLimiter(self.limiter.max_rate, self.limiter.time_period)
        return self._limiter_loop_map[loop_id]


def _log_before_sleep(retry_state: RetryCallState) -> None:
    """Loguru-compatible before_sleep callback for tenacity."""
    if retry_state.next_action:
        url = retry_state.args[2] if len(retry_state.args) > 2 else "unknown"
        logger.warning(
            "Retrying {} (attempt {}), sleeping {:.1f}s",
            url,
            retry_state.attempt_number,
            retry_state.next_action.sleep,
        )


async def create_http_client(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    """Create shared async client with predictable defaults."""

    return httpx.AsyncClient(
        transport=transport,
        http2=True,
        timeout=httpx.Timeout(
            connect=5.0,
            read=settings.request_timeout,
            write=10.0,
            pool=10.0,
        ),
        limits=httpx.Limits(
            max_connections=settings.max_connections,
            max_keepalive_connections=max(5, settings.max_connections // 2),
            keepalive_expiry=30.0,
        ),
        headers={
            "User-Agent": f"ossstats/{__version__}",
            "Accept": "application/json,text/html;q=0.9,*/*;q=0.8",
        },
        follow_redirects=True,
    )


@retry(
    retry=retry_if_exception_type((httpx.TransportError, httpx.TimeoutException, RetryableStatusError)),
    wait=wait_exponential(multiplier=1, min=1, max=30) + wait_random(0, 2),
    stop=stop_after_attempt(5),
    before_sleep=_log_before_sleep,
    reraise=True,
)
async def fetch_with_retry(
    client: httpx.AsyncClient,
    ctx: RequestContext,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
) -> httpx.Response:
    """Rate-limited resilient GET."""

    async with ctx.get_limiter():
        response = await client.get(url, headers=headers)
        ctx.monitor.push_status(response.status_code)
        if response.status_code in RETRYABLE_STATUS_CODES:
            status = response.status_code
            await response.aclose()
            raise RetryableStatusError(status)
        return response


def _rate_limit_reset(response: httpx.Response) -> datetime | None:
    raw = response.headers.get("X-RateLimit-Reset")
    if raw is None or not raw.isdigit():
        return None
    return datetime.fromtimestamp(int(raw), UTC)


async def fetch_response(
    client: httpx.AsyncClient,
    ctx: RequestContext,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
) -> httpx.Response:
    """Fetch with retries, mapping failures onto the upstream error taxonomy."""

    try:
        response = await fetch_with_retry(client, ctx, url, headers=headers)
    except RetryableStatusError as exc:
        raise UpstreamUnavailable(url, status_code=exc.status_code) from exc
    except httpx.TransportError as exc:
        raise UpstreamUnavailable(url, detail=type(exc).__name__) from exc

    if response.status_code == 404:
        raise UpstreamNotFound(url)
    if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
        reset_at = _rate_limit_reset(response)
        raise UpstreamUnavailable(url, status_code=403, detail="rate limit exhausted", reset_at=reset_at)
    if response.status_code >= 400:
        raise UpstreamUnavailable(url, status_code=response.status_code)
    return response


async def fetch_json(
    client: httpx.AsyncClient,
    ctx: RequestContext,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
) -> Any:
    """Fetch a JSON payload (object or array)."""

    response = await fetch_response(client, ctx, url, headers=headers)
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamUnavailable(url, detail="malformed JSON") from exc


async def fetch_text(
    client: httpx.AsyncClient,
    ctx: RequestContext,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
) -> str:
    """Fetch a text payload."""

    response = await fetch_response(client, ctx, url, headers=headers)
    return response.text
