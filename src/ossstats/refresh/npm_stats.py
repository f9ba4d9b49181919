"""Npm download stats refresh: package fan-out, chunk caching and rollups."""

from __future__ import annotations

import asyncio
import time
from datetime import date, timedelta
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from ossstats.errors import StoreUnavailable, UpstreamNotFound, UpstreamUnavailable
from ossstats.libraries import resolve_library_id
from ossstats.models.stats import (
    ChunkKey,
    DailyDownloads,
    NpmDownloadChunk,
    NpmLibraryStats,
    NpmOrgStats,
    NpmPackageStats,
    NpmRefreshResult,
    RefreshError,
)

if TYPE_CHECKING:
    from datetime import datetime

    from ossstats.clients.npm import NpmClient
    from ossstats.models.library import Library
    from ossstats.settings import Settings
    from ossstats.storage.cache import CacheStore

RATE_WINDOW_DAYS = 7


def build_chunk_ranges(start: date, today: date, span_days: int) -> list[tuple[date, date]]:
    """Split ``[start, today]`` into consecutive inclusive ranges of at most ``span_days`` days."""

    ranges: list[tuple[date, date]] = []
    cursor = start
    while cursor <= today:
        end = min(cursor + timedelta(days=span_days - 1), today)
        ranges.append((cursor, end))
        cursor = end + timedelta(days=1)
    return ranges


def compute_rate_per_day(points: list[DailyDownloads], window: int = RATE_WINDOW_DAYS) -> float:
    """Slope of the cumulative download count across the last ``window`` days.

    Returns 0.0 when fewer than ``window`` points are available.
    """

    ordered = sorted(points, key=lambda point: point.day)
    if len(ordered) < window:
        return 0.0
    recent = ordered[-window:]
    # Cumulative count grows by the window's downloads across its calendar span
    growth = sum(point.downloads for point in recent)
    span_days = (recent[-1].day - recent[0].day).days + 1
    return growth / span_days


class NpmStatsRefresher:
    """Refreshes per-package, per-library and org download stats into the cache store."""

    def __init__(self, store: CacheStore, npm: NpmClient, settings: Settings, libraries: list[Library]) -> None:
        self.store = store
        self.npm = npm
        self.libraries = libraries
        self.concurrency = settings.npm_concurrency
        self.dispatch_delay = settings.npm_dispatch_delay
        self.chunk_days = settings.npm_chunk_days

    async def resolve_packages(self, org: str) -> list[str]:
        """Org listing (sorted) followed by legacy unscoped names, de-duplicated."""

        names = await self.npm.list_org_packages(org)
        for library in self.libraries:
            names.extend(library.legacy_packages)
        return list(dict.fromkeys(names))

    async def refresh_package(self, package_name: str, org: str, now: datetime) -> NpmPackageStats:
        """Total and growth rate for one package, reusing fresh cached chunks."""

        today = now.date()
        created = await self.npm.fetch_created_date(package_name)
        keys = [
            ChunkKey(package_name=package_name, date_from=start, date_to=end)
            for start, end in build_chunk_ranges(created, today, self.chunk_days)
        ]
        cached = self.store.get_chunks(keys)

        chunks: list[NpmDownloadChunk] = []
        for key in keys:
            chunk = cached.get(key)
            if chunk is None or not self.store.is_fresh(chunk, now=now):
                points = await self.npm.fetch_download_range(package_name, key.date_from, key.date_to)
                chunk = NpmDownloadChunk(
                    package_name=package_name,
                    date_from=key.date_from,
                    date_to=key.date_to,
                    downloads=points,
                    total_downloads=sum(point.downloads for point in points),
                    is_immutable=key.date_to < today,
                    updated_at=now,
                )
                self.store.set_chunk(chunk)
            chunks.append(chunk)

        all_points = [point for chunk in chunks for point in chunk.downloads]
        return NpmPackageStats(
            name=package_name,
            library_id=resolve_library_id(package_name, org, self.libraries),
            total_downloads=sum(chunk.total_downloads for chunk in chunks),
            rate_per_day=compute_rate_per_day(all_points),
            created_at=created,
            updated_at=now,
        )

    async def _fan_out(
        self, package_names: list[str], org: str, now: datetime
    ) -> list[tuple[NpmPackageStats | None, RefreshError | None]]:
        """Bounded pool: at most ``concurrency`` packages in flight, ``dispatch_delay`` between starts."""

        sem = asyncio.Semaphore(self.concurrency)

        async def _refresh_one(name: str) -> tuple[NpmPackageStats | None, RefreshError | None]:
            try:
                return await self.refresh_package(name, org, now), None
            except (UpstreamNotFound, UpstreamUnavailable, httpx.HTTPError, ValueError) as exc:
                logger.warning("npm refresh failed for {}: {}", name, exc)
                return None, RefreshError.from_exception(name, exc)
            except StoreUnavailable:
                raise
            except Exception as exc:
                logger.error("Unexpected npm refresh error for {}: {}", name, exc)
                return None, RefreshError.from_exception(name, exc)
            finally:
                sem.release()

        tasks: list[asyncio.Task[tuple[NpmPackageStats | None, RefreshError | None]]] = []
        try:
            async with asyncio.TaskGroup() as tg:
                for index, name in enumerate(package_names):
                    if index and self.dispatch_delay:
                        await asyncio.sleep(self.dispatch_delay)
                    await sem.acquire()
                    tasks.append(tg.create_task(_refresh_one(name)))
        except ExceptionGroup as group:
            store_errors = [exc for exc in group.exceptions if isinstance(exc, StoreUnavailable)]
            if store_errors:
                raise store_errors[0] from group
            raise
        return [task.result() for task in tasks]

    async def refresh_org_stats(self, org: str) -> NpmRefreshResult:
        """Refresh every registered package of ``org`` and cache library and org rollups."""

        started = time.perf_counter()
        now = self.store.now()
        package_names = await self.resolve_packages(org)
        logger.info("Refreshing npm stats for {} packages of {}", len(package_names), org)

        outcomes = await self._fan_out(package_names, org, now)

        package_stats: dict[str, NpmPackageStats] = {}
        errors: list[RefreshError] = []
        for stats, error in outcomes:
            if stats is not None:
                package_stats[stats.name] = stats
            elif error is not None:
                errors.append(error)

        duration_ms = int((time.perf_counter() - started) * 1000)
        if not package_stats:
            logger.error("npm refresh for {} produced no successes; keeping cached stats", org)
            return NpmRefreshResult(library_errors=errors, duration_ms=duration_ms)

        library_results = self._write_library_stats(package_stats, now)

        org_stats = NpmOrgStats(
            org=org,
            total_downloads=sum(stats.total_downloads for stats in package_stats.values()),
            rate_per_day=sum(stats.rate_per_day for stats in package_stats.values()),
            package_count=len(package_stats),
            package_stats=package_stats,
            updated_at=now,
        )
        self.store.set_npm_org_stats(org_stats)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "npm refresh for {}: {} packages ok, {} failed, {} downloads",
            org,
            len(package_stats),
            len(errors),
            org_stats.total_downloads,
        )
        return NpmRefreshResult(
            org_stats=org_stats,
            library_results=library_results,
            library_errors=errors,
            duration_ms=duration_ms,
        )

    def _write_library_stats(self, package_stats: dict[str, NpmPackageStats], now: datetime) -> list[NpmLibraryStats]:
        results: list[NpmLibraryStats] = []
        for library in self.libraries:
            if not library.tracked:
                continue
            members = [stats for stats in package_stats.values() if stats.library_id == library.id]
            if not members:
                continue
            previous = self.store.get_npm_library_stats(library.id, allow_expired=True)
            library_stats = NpmLibraryStats(
                library_id=library.id,
                total_downloads=sum(stats.total_downloads for stats in members),
                rate_per_day=sum(stats.rate_per_day for stats in members),
                package_count=len(members),
                packages=[stats.name for stats in members],
                previous_total_downloads=previous.total_downloads if previous is not None else None,
                updated_at=now,
            )
            self.store.set_npm_library_stats(library_stats)
            results.append(library_stats)
        return results
