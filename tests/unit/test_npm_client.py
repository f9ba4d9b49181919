"""Tests for the npm registry and downloads client."""

from datetime import date

import httpx
import pytest

from ossstats.clients.http import RequestContext, create_http_client
from ossstats.clients.npm import NpmClient
from ossstats.errors import UpstreamNotFound, UpstreamUnavailable
from ossstats.settings import Settings


@pytest.mark.asyncio
async def test_list_org_packages_sorted(settings: Settings, request_context: RequestContext) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/-/org/tanstack/package"
        return httpx.Response(200, json={"@tanstack/react-query": "write", "@tanstack/query-core": "write"})

    async with await create_http_client(settings, transport=httpx.MockTransport(handler)) as client:
        names = await NpmClient(client, request_context, settings).list_org_packages("tanstack")
    assert names == ["@tanstack/query-core", "@tanstack/react-query"]


@pytest.mark.asyncio
async def test_fetch_created_date(settings: Settings, request_context: RequestContext) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"time": {"created": "2020-03-01T10:00:00.000Z"}})

    async with await create_http_client(settings, transport=httpx.MockTransport(handler)) as client:
        created = await NpmClient(client, request_context, settings).fetch_created_date("@tanstack/react-query")
    assert created == date(2020, 3, 1)


@pytest.mark.asyncio
async def test_fetch_created_date_clamped_to_history_start(settings: Settings, request_context: RequestContext) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"time": {"created": "2012-01-01T00:00:00.000Z"}})

    async with await create_http_client(settings, transport=httpx.MockTransport(handler)) as client:
        created = await NpmClient(client, request_context, settings).fetch_created_date("react-table")
    assert created == date(2015, 1, 10)


@pytest.mark.asyncio
async def test_fetch_created_date_raises_on_failed_lookup(settings: Settings, request_context: RequestContext) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    async with await create_http_client(settings, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamNotFound):
            await NpmClient(client, request_context, settings).fetch_created_date("missing")


@pytest.mark.asyncio
async def test_fetch_created_date_malformed_time_uses_history_start(
    settings: Settings, request_context: RequestContext
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"time": "2020-01-01"})

    async with await create_http_client(settings, transport=httpx.MockTransport(handler)) as client:
        created = await NpmClient(client, request_context, settings).fetch_created_date("odd-metadata")
    assert created == settings.npm_stats_start_date



@pytest.mark.asyncio
async def test_fetch_download_range(settings: Settings, request_context: RequestContext) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(
            200,
            json={
                "start": "2024-01-01",
                "end": "2024-01-02",
                "package": "@tanstack/react-query",
                "downloads": [{"day": "2024-01-01", "downloads": 10}, {"day": "2024-01-02", "downloads": 12}],
            },
        )

    async with await create_http_client(settings, transport=httpx.MockTransport(handler)) as client:
        npm = NpmClient(client, request_context, settings)
        points = await npm.fetch_download_range("@tanstack/react-query", date(2024, 1, 1), date(2024, 1, 2))
    assert [point.downloads for point in points] == [10, 12]
    assert seen == ["/downloads/range/2024-01-01:2024-01-02/@tanstack/react-query"]


@pytest.mark.asyncio
async def test_fetch_download_range_error_body(settings: Settings, request_context: RequestContext) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "package ghost not found"})

    async with await create_http_client(settings, transport=httpx.MockTransport(handler)) as client:
        npm = NpmClient(client, request_context, settings)
        with pytest.raises(UpstreamNotFound):
            await npm.fetch_download_range("ghost", date(2024, 1, 1), date(2024, 1, 2))


@pytest.mark.asyncio
async def test_fetch_download_range_unavailable(settings: Settings, request_context: RequestContext) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    async with await create_http_client(settings, transport=httpx.MockTransport(handler)) as client:
        npm = NpmClient(client, request_context, settings)
        with pytest.raises(UpstreamUnavailable):
            await npm.fetch_download_range("@tanstack/react-query", date(2024, 1, 1), date(2024, 1, 2))
