"""Read path: cached stats and feed entries, never touching an upstream."""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING

from loguru import logger

from ossstats.errors import NoCachedData, StoreUnavailable
from ossstats.feed.entries import EPOCH, MAX_FUTURE_SKEW
from ossstats.models.feed import FacetCounts, FeedEntry, FeedFilters, FeedPage, FeedStats
from ossstats.models.stats import (
    GitHubStats,
    NpmLibraryStats,
    NpmOrgStats,
    NpmSummary,
    OSSStats,
    RecentDownloadStats,
    StatsDelta,
)
from ossstats.storage.cache import github_scope, org_key

if TYPE_CHECKING:
    from datetime import date

    from ossstats.models.library import Library
    from ossstats.models.stats import StatsRecord
    from ossstats.storage.cache import CacheStore

DEFAULT_TIME_DELTA_MS = 3_600_000
DEFAULT_PAGE_SIZE = 20


# -- stats ---------------------------------------------------------------------


def _github_delta(record: StatsRecord, current: GitHubStats) -> StatsDelta | None:
    if not record.previous_payload:
        return None
    previous = GitHubStats.model_validate(record.previous_payload)
    elapsed_ms = int((current.updated_at - previous.updated_at).total_seconds() * 1000)
    return StatsDelta(
        star_count=current.star_count - previous.star_count,
        contributor_count=current.contributor_count - previous.contributor_count,
        dependent_count=(current.dependent_count or 0) - (previous.dependent_count or 0),
        fork_count=(current.fork_count or 0) - (previous.fork_count or 0),
        time_delta_ms=elapsed_ms if elapsed_ms > 0 else DEFAULT_TIME_DELTA_MS,
    )


def _library_summary_from_org(org_record: StatsRecord, library_id: str) -> NpmSummary | None:
    org_stats = NpmOrgStats.model_validate(org_record.payload)
    members = [stats for stats in org_stats.package_stats.values() if stats.library_id == library_id]
    if not members:
        return None
    return NpmSummary(
        total_downloads=sum(stats.total_downloads for stats in members),
        rate_per_day=sum(stats.rate_per_day for stats in members),
        package_count=len(members),
        updated_at=org_stats.updated_at,
    )


def get_oss_stats(
    store: CacheStore,
    *,
    org: str,
    library: Library | None = None,
    now: datetime | None = None,
) -> OSSStats:
    """GitHub and npm numbers for an org or one library.

    Expired rows are served as they are; :class:`NoCachedData` is raised only when
    neither half has ever been cached or the store cannot be read.
    """

    current = now or store.now()
    github_key = library.repo.lower() if library is not None and library.repo else org_key(org)
    try:
        github_record = store.get_expired_stats("github", github_scope(github_key), github_key)
        org_record = store.get_expired_stats("npm", "org", org)
        library_record = store.get_expired_stats("npm", "library", library.id) if library is not None else None
    except StoreUnavailable as exc:
        raise NoCachedData(f"cache store unavailable: {exc}") from exc

    npm_summary: NpmSummary | None = None
    npm_record = library_record if library is not None else org_record
    if npm_record is not None:
        if library is not None:
            library_stats = NpmLibraryStats.model_validate(npm_record.payload)
            npm_summary = NpmSummary(
                total_downloads=library_stats.total_downloads,
                rate_per_day=library_stats.rate_per_day,
                package_count=library_stats.package_count,
                previous_total_downloads=library_stats.previous_total_downloads,
                updated_at=library_stats.updated_at,
            )
        else:
            org_stats = NpmOrgStats.model_validate(npm_record.payload)
            npm_summary = NpmSummary(
                total_downloads=org_stats.total_downloads,
                rate_per_day=org_stats.rate_per_day,
                package_count=org_stats.package_count,
                updated_at=org_stats.updated_at,
            )
    elif library is not None and org_record is not None:
        npm_record = org_record
        npm_summary = _library_summary_from_org(org_record, library.id)

    if github_record is None and npm_summary is None:
        raise NoCachedData(f"no stats cached for {library.id if library is not None else org}")

    github = GitHubStats.model_validate(github_record.payload) if github_record is not None else None
    records = [record for record in (github_record, npm_record) if record is not None]
    return OSSStats(
        github=github,
        github_delta=_github_delta(github_record, github) if github_record is not None and github is not None else None,
        npm=npm_summary or NpmSummary(),
        is_stale=any(not store.is_fresh(record, now=current) for record in records),
    )


def fetch_recent_download_stats(
    store: CacheStore, package_names: list[str], *, today: date | None = None
) -> RecentDownloadStats:
    """Latest day, last 7 and last 30 days of downloads, summed over packages, from cached chunks."""

    try:
        per_package = {name: store.latest_chunks(name, limit=2) for name in package_names}
    except StoreUnavailable as exc:
        logger.warning("Recent download stats unavailable: {}", exc)
        return RecentDownloadStats(packages=package_names)

    daily = weekly = monthly = 0
    as_of: date | None = None
    for chunks in per_package.values():
        by_day = {point.day: point.downloads for chunk in reversed(chunks) for point in chunk.downloads}
        days = sorted(day for day in by_day if today is None or day <= today)
        if not days:
            continue
        daily += by_day[days[-1]]
        weekly += sum(by_day[day] for day in days[-7:])
        monthly += sum(by_day[day] for day in days[-30:])
        as_of = days[-1] if as_of is None or days[-1] > as_of else as_of

    return RecentDownloadStats(
        daily_downloads=daily,
        weekly_downloads=weekly,
        monthly_downloads=monthly,
        as_of=as_of,
        packages=package_names,
    )


# -- feed ----------------------------------------------------------------------


def effective_published_at(entry: FeedEntry, now: datetime) -> datetime:
    """``published_at`` unless it is out of range, in which case ``created_at``."""

    if EPOCH <= entry.published_at <= now + MAX_FUTURE_SKEW:
        return entry.published_at
    return entry.created_at


def _matches_search(entry: FeedEntry, search: str) -> bool:
    haystack = " ".join(part for part in (entry.title, entry.content, entry.excerpt or "") if part).lower()
    return all(term in haystack for term in search.lower().split())


def matches_filters(entry: FeedEntry, filters: FeedFilters, *, exclude: str | None = None) -> bool:
    """Apply every filter except the facet named by ``exclude``."""

    if not filters.include_hidden and not entry.is_visible:
        return False
    if filters.sources and exclude != "sources" and entry.source not in filters.sources:
        return False
    if filters.categories and exclude != "categories" and entry.category not in filters.categories:
        return False
    if filters.library_ids and exclude != "libraries" and not set(filters.library_ids) & set(entry.library_ids):
        return False
    if filters.partner_ids and exclude != "partners" and not set(filters.partner_ids) & set(entry.partner_ids or []):
        return False
    if filters.tags and not set(filters.tags) & set(entry.tags):
        return False
    if filters.featured is not None and exclude != "featured" and entry.featured != filters.featured:
        return False
    if entry.category == "release":
        if filters.release_levels and exclude != "release_levels" and entry.release_level not in filters.release_levels:
            return False
        if filters.include_prerelease is False and exclude != "prerelease" and entry.is_prerelease:
            return False
    return not (filters.search and filters.search.strip() and not _matches_search(entry, filters.search))


def _load_entries(store: CacheStore, filters: FeedFilters) -> list[FeedEntry]:
    try:
        return store.list_entries(include_hidden=filters.include_hidden)
    except StoreUnavailable as exc:
        logger.warning("Feed unavailable: {}", exc)
        return []


def list_feed_entries(
    store: CacheStore,
    filters: FeedFilters | None = None,
    *,
    limit: int = DEFAULT_PAGE_SIZE,
    page: int = 0,
    now: datetime | None = None,
) -> FeedPage:
    """Filtered timeline, newest first (featured first on ties), paginated from page 0."""

    filters = filters or FeedFilters()
    current = now or store.now()
    limit = max(1, limit)
    page = max(0, page)

    matching = [entry for entry in _load_entries(store, filters) if matches_filters(entry, filters)]
    matching.sort(key=lambda entry: (effective_published_at(entry, current), entry.featured, entry.entry_id), reverse=True)

    total = len(matching)
    pages = math.ceil(total / limit) if total else 0
    start = page * limit
    return FeedPage(
        page=matching[start : start + limit],
        is_done=start + limit >= total,
        total=total,
        pages=pages,
        page_index=page,
    )


def get_feed_facet_counts(store: CacheStore, filters: FeedFilters | None = None) -> FacetCounts:
    """Counts per facet value, each facet computed with its own filter lifted."""

    filters = filters or FeedFilters()
    entries = _load_entries(store, filters)

    def _subset(facet: str) -> list[FeedEntry]:
        return [entry for entry in entries if matches_filters(entry, filters, exclude=facet)]

    libraries: Counter[str] = Counter()
    for entry in _subset("libraries"):
        libraries.update(set(entry.library_ids))
    partners: Counter[str] = Counter()
    for entry in _subset("partners"):
        partners.update(set(entry.partner_ids or []))
    release_levels = Counter(
        entry.release_level for entry in _subset("release_levels") if entry.release_level is not None
    )

    return FacetCounts(
        sources=dict(Counter(entry.source for entry in _subset("sources"))),
        categories=dict(Counter(entry.category for entry in _subset("categories"))),
        libraries=dict(libraries),
        partners=dict(partners),
        release_levels=dict(release_levels),
        prerelease=sum(1 for entry in _subset("prerelease") if entry.is_prerelease),
        featured=sum(1 for entry in _subset("featured") if entry.featured),
    )


def get_feed_entry(store: CacheStore, entry_id: str) -> FeedEntry | None:
    try:
        return store.get_entry(entry_id)
    except StoreUnavailable as exc:
        logger.warning("Feed entry {} unavailable: {}", entry_id, exc)
        return None


def get_feed_stats(store: CacheStore) -> FeedStats:
    entries = _load_entries(store, FeedFilters(include_hidden=True))
    return FeedStats(
        total=len(entries),
        visible=sum(1 for entry in entries if entry.is_visible),
        featured=sum(1 for entry in entries if entry.featured),
        auto_synced=sum(1 for entry in entries if entry.auto_synced),
        by_source=dict(Counter(entry.source for entry in entries)),
        by_category=dict(Counter(entry.category for entry in entries)),
    )

