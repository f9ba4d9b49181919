"""Prefect flows: one per scheduled job, each returning the job's JSON summary."""

from __future__ import annotations

from typing import Any

from prefect import flow

from ossstats.pipeline.jobs import run_blog_sync, run_feed_sync, run_release_sync, run_stats_refresh
from ossstats.settings import Settings


@flow(name="ossstats-refresh-stats", timeout_seconds=900, log_prints=True)
async def refresh_stats_flow() -> dict[str, Any]:
    """Refresh npm and GitHub stats into the cache."""
    return await run_stats_refresh(Settings())


@flow(name="ossstats-sync-releases", timeout_seconds=300, log_prints=True)
async def sync_releases_flow(days_back: int | None = None) -> dict[str, Any]:
    """Sync GitHub releases into the feed."""
    return await run_release_sync(Settings(), days_back)


@flow(name="ossstats-sync-blog", timeout_seconds=120, log_prints=True)
async def sync_blog_flow() -> dict[str, Any]:
    return await run_blog_sync(Settings())


@flow(name="ossstats-sync-feed", timeout_seconds=420, log_prints=True)
async def sync_feed_flow(days_back: int | None = None) -> dict[str, Any]:
    return await run_feed_sync(Settings(), days_back)
