"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from aiolimiter import AsyncLimiter
from tenacity import wait_none

from ossstats.clients.http import RequestContext, ThrottleMonitor, fetch_with_retry
from ossstats.settings import Settings
from ossstats.storage.cache import CacheStore
from tests.factories import FakeClock

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def no_retry_wait() -> Iterator[None]:
    original_wait = fetch_with_retry.retry.wait
    fetch_with_retry.retry.wait = wait_none()
    try:
        yield
    finally:
        fetch_with_retry.retry.wait = original_wait


@pytest.fixture
def request_context() -> RequestContext:
    return RequestContext(
        limiter=AsyncLimiter(1000, 1),
        monitor=ThrottleMonitor(window=10),
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=tmp_path / "ossstats.db",
        rate_limit_per_second=1000,
        npm_dispatch_delay=0,
        github_request_delay=0,
        github_token=None,
        blog_source=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> Iterator[CacheStore]:
    cache = CacheStore.open(tmp_path / "cache.db", clock=clock)
    try:
        yield cache
    finally:
        cache.close()


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def repo_page_html() -> str:
    return (FIXTURES_DIR / "repo_page.html").read_text()
