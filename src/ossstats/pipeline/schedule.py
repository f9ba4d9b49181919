"""Cron cadences for the scheduled flows and a long-running server for them."""

from __future__ import annotations

from prefect import serve

from ossstats.pipeline.flows import refresh_stats_flow, sync_blog_flow, sync_releases_flow

SCHEDULES: dict[str, str] = {
    "refresh-stats": "0 */6 * * *",
    "sync-releases": "0 * * * *",
    "sync-blog": "*/5 * * * *",
}


def build_deployments() -> list:
    """One deployment per job, each on its own cadence."""
    return [
        refresh_stats_flow.to_deployment(name="refresh-stats", cron=SCHEDULES["refresh-stats"]),
        sync_releases_flow.to_deployment(name="sync-releases", cron=SCHEDULES["sync-releases"]),
        sync_blog_flow.to_deployment(name="sync-blog", cron=SCHEDULES["sync-blog"]),
    ]


def serve_schedules() -> None:
    """Block, running each flow when its schedule fires."""
    serve(*build_deployments())
