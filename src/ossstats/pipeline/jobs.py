"""Scheduler-facing jobs: each builds its runtime, runs one refresher or sync and returns a JSON summary."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from ossstats.clients.content import ContentSource, content_source_from_location
from ossstats.clients.github import GitHubClient
from ossstats.clients.http import RequestContext, create_http_client
from ossstats.clients.npm import NpmClient
from ossstats.errors import UpstreamError
from ossstats.feed.sync import FeedSynchronizer
from ossstats.libraries import load_libraries
from ossstats.refresh.github_stats import GitHubStatsRefresher
from ossstats.refresh.npm_stats import NpmStatsRefresher
from ossstats.storage.cache import CacheStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

    from ossstats.models.library import Library
    from ossstats.settings import Settings


@dataclass
class Runtime:
    """Collaborators shared by the jobs of one process."""

    settings: Settings
    store: CacheStore
    ctx: RequestContext
    client: httpx.AsyncClient
    libraries: list[Library]
    content: ContentSource | None = None

    def npm_refresher(self) -> NpmStatsRefresher:
        npm = NpmClient(self.client, self.ctx, self.settings)
        return NpmStatsRefresher(self.store, npm, self.settings, self.libraries)

    def github_refresher(self) -> GitHubStatsRefresher:
        github = GitHubClient(self.client, self.ctx, self.settings)
        return GitHubStatsRefresher(self.store, github, self.settings, self.libraries)

    def synchronizer(self) -> FeedSynchronizer:
        github = GitHubClient(self.client, self.ctx, self.settings)
        content = self.content or content_source_from_location(self.settings.blog_source, self.client, self.ctx)
        return FeedSynchronizer(self.store, github, self.settings, self.libraries, content=content)


@asynccontextmanager
async def open_runtime(
    settings: Settings,
    *,
    store: CacheStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    content: ContentSource | None = None,
) -> AsyncIterator[Runtime]:
    """Build a runtime; a store passed in is borrowed, one built here is closed on exit."""

    owned = store is None
    cache = store if store is not None else CacheStore.from_settings(settings)
    try:
        async with await create_http_client(settings, transport=transport) as client:
            yield Runtime(
                settings=settings,
                store=cache,
                ctx=RequestContext.from_settings(settings),
                client=client,
                libraries=load_libraries(settings.libraries_file),
                content=content,
            )
    finally:
        if owned:
            cache.close()


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


async def refresh_npm(runtime: Runtime) -> dict[str, Any]:
    try:
        result = await runtime.npm_refresher().refresh_org_stats(runtime.settings.org)
    except UpstreamError as exc:
        logger.error("npm refresh aborted: {}", exc)
        return {"success": False, "error": str(exc)}
    return result.model_dump(mode="json", exclude={"org_stats": {"package_stats"}})


async def refresh_github(runtime: Runtime) -> dict[str, Any]:
    try:
        result = await runtime.github_refresher().refresh_org_stats(runtime.settings.org)
    except UpstreamError as exc:
        logger.error("GitHub refresh aborted: {}", exc)
        return {"success": False, "error": str(exc)}
    return result.model_dump(mode="json")


async def run_stats_refresh(settings: Settings, *, runtime: Runtime | None = None, **runtime_kwargs: Any) -> dict[str, Any]:
    """npm org and library stats, then GitHub org and repository stats."""

    started = time.perf_counter()
    if runtime is None:
        async with open_runtime(settings, **runtime_kwargs) as owned:
            return await run_stats_refresh(settings, runtime=owned)

    npm = await refresh_npm(runtime)
    github = await refresh_github(runtime)
    summary = {
        "job": "refresh-stats",
        "success": bool(npm.get("success")) and bool(github.get("success")),
        "duration_ms": _elapsed_ms(started),
        "throttled_percent": round(runtime.ctx.monitor.throttled_percent, 2),
        "npm": npm,
        "github": github,
    }
    logger.info("Stats refresh finished in {}ms (success={})", summary["duration_ms"], summary["success"])
    return summary


async def run_release_sync(
    settings: Settings, days_back: int | None = None, *, runtime: Runtime | None = None, **runtime_kwargs: Any
) -> dict[str, Any]:
    """Incremental GitHub release sync; ``days_back`` overrides the stored watermark."""

    started = time.perf_counter()
    if runtime is None:
        async with open_runtime(settings, **runtime_kwargs) as owned:
            return await run_release_sync(settings, days_back, runtime=owned)

    result = await runtime.synchronizer().sync_github_releases(days_back=days_back)
    return {"job": "sync-releases", "duration_ms": _elapsed_ms(started), **result.model_dump(mode="json")}


async def run_blog_sync(settings: Settings, *, runtime: Runtime | None = None, **runtime_kwargs: Any) -> dict[str, Any]:
    started = time.perf_counter()
    if runtime is None:
        async with open_runtime(settings, **runtime_kwargs) as owned:
            return await run_blog_sync(settings, runtime=owned)

    result = await runtime.synchronizer().sync_blog_posts()
    return {"job": "sync-blog", "duration_ms": _elapsed_ms(started), **result.model_dump(mode="json")}


async def run_feed_sync(
    settings: Settings, days_back: int | None = None, *, runtime: Runtime | None = None, **runtime_kwargs: Any
) -> dict[str, Any]:
    started = time.perf_counter()
    if runtime is None:
        async with open_runtime(settings, **runtime_kwargs) as owned:
            return await run_feed_sync(settings, days_back, runtime=owned)

    result = await runtime.synchronizer().sync_all(days_back=days_back)
    return {"job": "sync-feed", "duration_ms": _elapsed_ms(started), **result.model_dump(mode="json")}
