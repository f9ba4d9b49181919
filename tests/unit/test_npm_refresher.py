"""Tests for the npm stats refresher."""

from __future__ import annotations

import asyncio
from datetime import date, timedelta

import httpx
import pytest

from ossstats.clients.http import RequestContext, create_http_client
from ossstats.clients.npm import NpmClient
from ossstats.errors import UpstreamUnavailable
from ossstats.models.library import Library
from ossstats.models.stats import ChunkKey, NpmRefreshResult
from ossstats.refresh.npm_stats import NpmStatsRefresher, build_chunk_ranges, compute_rate_per_day
from ossstats.settings import Settings
from ossstats.storage.cache import CacheStore
from tests.factories import FakeClock, make_downloads

LIBRARIES = [
    Library(id="query", name="TanStack Query", repo="tanstack/query", legacy_packages=("react-query",)),
    Library(id="table", name="TanStack Table", repo="tanstack/table"),
]


class FakeNpm:
    """Registry plus downloads API serving a constant daily count per package."""

    def __init__(self, daily: dict[str, int], *, failing: set[str] | None = None, delay: float = 0.0) -> None:
        self.daily = daily
        self.failing = failing or set()
        self.delay = delay
        self.listing_status = 200
        self.metadata_failing: set[str] = set()
        self.range_requests: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/-/org/"):
            if self.listing_status != 200:
                return httpx.Response(self.listing_status)
            return httpx.Response(200, json={name: "write" for name in self.daily if name.startswith("@")})
        if path.startswith("/downloads/range/"):
            _, _, _, span, name = path.split("/", 4)
            self.range_requests.append(f"{name} {span}")
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                if self.delay:
                    await asyncio.sleep(self.delay)
                if name in self.failing:
                    return httpx.Response(503)
                if name not in self.daily:
                    return httpx.Response(404, json={"error": f"package {name} not found"})
                start, end = (date.fromisoformat(part) for part in span.split(":"))
                days = (end - start).days + 1
                points = [
                    {"day": (start + timedelta(days=offset)).isoformat(), "downloads": self.daily[name]}
                    for offset in range(days)
                ]
                return httpx.Response(200, json={"start": start.isoformat(), "end": end.isoformat(), "downloads": points})
            finally:
                self.in_flight -= 1
        if path.lstrip("/") in self.metadata_failing:
            return httpx.Response(503)
        return httpx.Response(200, json={"time": {"created": "2024-06-01T00:00:00.000Z"}})


async def _refresh(
    store: CacheStore,
    settings: Settings,
    ctx: RequestContext,
    upstream: FakeNpm,
    libraries: list[Library] = LIBRARIES,
) -> NpmRefreshResult:
    async with await create_http_client(settings, transport=httpx.MockTransport(upstream)) as client:
        npm = NpmClient(client, ctx, settings)
        return await NpmStatsRefresher(store, npm, settings, libraries).refresh_org_stats("tanstack")


def test_build_chunk_ranges() -> None:
    ranges = build_chunk_ranges(date(2024, 1, 1), date(2024, 1, 25), 10)
    assert ranges == [
        (date(2024, 1, 1), date(2024, 1, 10)),
        (date(2024, 1, 11), date(2024, 1, 20)),
        (date(2024, 1, 21), date(2024, 1, 25)),
    ]


def test_build_chunk_ranges_single_day_and_empty() -> None:
    assert build_chunk_ranges(date(2024, 1, 1), date(2024, 1, 1), 510) == [(date(2024, 1, 1), date(2024, 1, 1))]
    assert build_chunk_ranges(date(2024, 1, 2), date(2024, 1, 1), 510) == []


def test_compute_rate_per_day() -> None:
    assert compute_rate_per_day(make_downloads(date(2024, 1, 1), [10] * 7)) == 10.0
    assert compute_rate_per_day(make_downloads(date(2024, 1, 1), [0, 0, 0, 7, 7, 7, 7, 7, 7, 7])) == 7.0
    assert compute_rate_per_day(make_downloads(date(2024, 1, 1), [10] * 6)) == 0.0


@pytest.mark.asyncio
async def test_refresh_org_stats_rolls_up(
    store: CacheStore, settings: Settings, request_context: RequestContext
) -> None:
    upstream = FakeNpm({"@tanstack/react-query": 10, "@tanstack/vue-table": 5, "react-query": 1})
    result = await _refresh(store, settings, request_context, upstream)

    assert result.success
    assert result.org_stats is not None
    # 2024-06-01 through 2024-06-15 inclusive
    assert result.org_stats.total_downloads == 15 * 16
    assert result.org_stats.package_count == 3
    assert result.org_stats.rate_per_day == pytest.approx(16.0)
    assert result.org_stats.package_stats["react-query"].library_id == "query"

    query = store.get_npm_library_stats("query")
    assert query is not None
    assert query.total_downloads == 15 * 11
    assert sorted(query.packages) == ["@tanstack/react-query", "react-query"]
    assert query.previous_total_downloads is None

    table = store.get_npm_library_stats("table")
    assert table is not None
    assert table.total_downloads == 75
    assert store.get_npm_org_stats("tanstack") is not None


@pytest.mark.asyncio
async def test_library_previous_total_tracked(
    store: CacheStore, settings: Settings, request_context: RequestContext, clock: FakeClock
) -> None:
    upstream = FakeNpm({"@tanstack/react-query": 10})
    libraries = [Library(id="query", name="TanStack Query", repo="tanstack/query")]
    await _refresh(store, settings, request_context, upstream, libraries)
    clock.advance(days=1)
    await _refresh(store, settings, request_context, upstream, libraries)

    query = store.get_npm_library_stats("query")
    assert query is not None
    assert query.previous_total_downloads == 150
    assert query.total_downloads == 160


@pytest.mark.asyncio
async def test_immutable_chunks_fetched_once(
    store: CacheStore, settings: Settings, request_context: RequestContext, clock: FakeClock
) -> None:
    settings = settings.model_copy(update={"npm_chunk_days": 10})
    upstream = FakeNpm({"@tanstack/react-query": 10})

    await _refresh(store, settings, request_context, upstream, libraries=[])
    assert len(upstream.range_requests) == 2

    await _refresh(store, settings, request_context, upstream, libraries=[])
    assert len(upstream.range_requests) == 2

    clock.advance(days=1)
    await _refresh(store, settings, request_context, upstream, libraries=[])
    closed = [request for request in upstream.range_requests if request.endswith("2024-06-01:2024-06-10")]
    assert len(closed) == 1
    assert upstream.range_requests[-1] == "@tanstack/react-query 2024-06-11:2024-06-16"

    closed_chunk = store.get_chunk(
        ChunkKey(package_name="@tanstack/react-query", date_from=date(2024, 6, 1), date_to=date(2024, 6, 10))
    )
    assert closed_chunk is not None
    assert closed_chunk.is_immutable
    open_chunk = store.get_chunk(
        ChunkKey(package_name="@tanstack/react-query", date_from=date(2024, 6, 11), date_to=date(2024, 6, 16))
    )
    assert open_chunk is not None
    assert not open_chunk.is_immutable


@pytest.mark.asyncio
async def test_partial_failure_keeps_successes(
    store: CacheStore, settings: Settings, request_context: RequestContext
) -> None:
    names = [f"@tanstack/pkg-{index}" for index in range(10)]
    upstream = FakeNpm(dict.fromkeys(names, 10), failing={"@tanstack/pkg-3"})

    result = await _refresh(store, settings, request_context, upstream, libraries=[])

    assert not result.success
    assert result.org_stats is not None
    assert result.org_stats.package_count == 9
    assert result.org_stats.total_downloads == 9 * 150
    assert "@tanstack/pkg-3" not in result.org_stats.package_stats
    assert [error.item for error in result.library_errors] == ["@tanstack/pkg-3"]
    assert result.library_errors[0].kind == "unavailable"
    assert result.library_errors[0].status_code == 503


@pytest.mark.asyncio
async def test_total_outage_keeps_cached_stats(
    store: CacheStore, settings: Settings, request_context: RequestContext, clock: FakeClock
) -> None:
    upstream = FakeNpm({"@tanstack/react-query": 10})
    await _refresh(store, settings, request_context, upstream, libraries=[])

    clock.advance(days=1)
    upstream.failing = {"@tanstack/react-query"}
    result = await _refresh(store, settings, request_context, upstream, libraries=[])

    assert result.org_stats is None
    assert not result.success
    assert len(result.library_errors) == 1
    assert store.get_npm_org_stats("tanstack") is None
    cached = store.get_npm_org_stats("tanstack", allow_expired=True)
    assert cached is not None
    assert cached.total_downloads == 150


@pytest.mark.asyncio
async def test_listing_failure_aborts_run(
    store: CacheStore, settings: Settings, request_context: RequestContext
) -> None:
    upstream = FakeNpm({"@tanstack/react-query": 10})
    upstream.listing_status = 503
    with pytest.raises(UpstreamUnavailable):
        await _refresh(store, settings, request_context, upstream)
    assert store.get_npm_org_stats("tanstack", allow_expired=True) is None


@pytest.mark.asyncio
async def test_in_flight_bounded_by_pool_width(
    store: CacheStore, settings: Settings, request_context: RequestContext
) -> None:
    settings = settings.model_copy(update={"npm_concurrency": 3})
    names = [f"@tanstack/pkg-{index:02d}" for index in range(12)]
    upstream = FakeNpm(dict.fromkeys(names, 1), delay=0.01)

    result = await _refresh(store, settings, request_context, upstream, libraries=[])

    assert result.org_stats is not None
    assert result.org_stats.package_count == 12
    assert 1 < upstream.max_in_flight <= 3


@pytest.mark.asyncio
async def test_metadata_failure_skips_package_without_caching(
    store: CacheStore, settings: Settings, request_context: RequestContext
) -> None:
    upstream = FakeNpm({"@tanstack/react-query": 10, "@tanstack/vue-table": 5})
    upstream.metadata_failing = {"@tanstack/vue-table"}

    result = await _refresh(store, settings, request_context, upstream, libraries=[])

    assert result.org_stats is not None
    assert list(result.org_stats.package_stats) == ["@tanstack/react-query"]
    assert [error.item for error in result.library_errors] == ["@tanstack/vue-table"]
    assert result.library_errors[0].kind == "unavailable"
    assert not any(request.startswith("@tanstack/vue-table ") for request in upstream.range_requests)
    assert store.latest_chunks("@tanstack/vue-table") == []


@pytest.mark.asyncio
async def test_unexpected_package_error_is_isolated(
    store: CacheStore, settings: Settings, request_context: RequestContext, monkeypatch: pytest.MonkeyPatch
) -> None:
    original = NpmClient.fetch_download_range

    async def broken_for_one(self: NpmClient, package_name: str, start: date, end: date) -> list:
        if package_name == "@tanstack/pkg-1":
            raise RuntimeError("malformed download point")
        return await original(self, package_name, start, end)

    monkeypatch.setattr(NpmClient, "fetch_download_range", broken_for_one)
    names = [f"@tanstack/pkg-{index}" for index in range(4)]
    upstream = FakeNpm(dict.fromkeys(names, 10))

    result = await _refresh(store, settings, request_context, upstream, libraries=[])

    assert result.org_stats is not None
    assert result.org_stats.package_count == 3
    assert [error.item for error in result.library_errors] == ["@tanstack/pkg-1"]
    assert result.library_errors[0].kind == "error"
    assert "RuntimeError" in result.library_errors[0].error


@pytest.mark.asyncio
async def test_untracked_library_gets_no_rollup(
    store: CacheStore, settings: Settings, request_context: RequestContext
) -> None:
    libraries = [
        Library(id="query", name="TanStack Query", repo="tanstack/query"),
        Library(id="table", name="TanStack Table", repo="tanstack/table", tracked=False),
    ]
    upstream = FakeNpm({"@tanstack/react-query": 10, "@tanstack/vue-table": 5})

    result = await _refresh(store, settings, request_context, upstream, libraries)

    assert [stats.library_id for stats in result.library_results] == ["query"]
    assert store.get_npm_library_stats("table", allow_expired=True) is None
    assert result.org_stats is not None
    assert result.org_stats.total_downloads == 15 * 15
