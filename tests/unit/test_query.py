"""Tests for the read path over cached stats and feed entries."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from ossstats.errors import NoCachedData, StoreUnavailable
from ossstats.models.feed import FeedFilters
from ossstats.models.library import Library
from ossstats.models.stats import GitHubStats, NpmDownloadChunk, NpmLibraryStats, NpmOrgStats, NpmPackageStats
from ossstats.query import (
    effective_published_at,
    fetch_recent_download_stats,
    get_feed_entry,
    get_feed_facet_counts,
    get_feed_stats,
    get_oss_stats,
    list_feed_entries,
)
from ossstats.storage.cache import CacheStore
from tests.factories import FakeClock, make_downloads, make_entry

QUERY = Library(id="query", name="TanStack Query", repo="TanStack/query")
TABLE = Library(id="table", name="TanStack Table", repo="tanstack/table")


def _seed_feed(store: CacheStore) -> None:
    base = datetime(2024, 6, 1, tzinfo=UTC)
    store.upsert_entry(
        make_entry(entry_id="release:tanstack/query:v5.0.0", published_at=base + timedelta(days=1))
    )
    store.upsert_entry(
        make_entry(
            entry_id="release:tanstack/query:v5.1.0-beta.1",
            title="TanStack Query v5.1.0-beta.1",
            published_at=base + timedelta(days=2),
            tags=["release:minor", "release:prerelease", "source:github", "library:query"],
        )
    )
    store.upsert_entry(
        make_entry(
            entry_id="release:tanstack/table:v8.0.1",
            title="TanStack Table v8.0.1",
            published_at=base + timedelta(days=3),
            library_ids=["table"],
            tags=["release:patch", "source:github", "library:table"],
        )
    )
    store.upsert_entry(
        make_entry(
            entry_id="blog:table-v8",
            source="blog",
            category="blog",
            title="Table v8 deep dive",
            content="Everything about headless tables",
            published_at=base + timedelta(days=4),
            library_ids=["table", "query"],
            tags=["source:blog"],
            metadata=None,
            featured=True,
        )
    )
    store.upsert_entry(
        make_entry(
            entry_id="announcement:partner",
            source="announcement",
            category="partner",
            title="New partner",
            published_at=base + timedelta(days=5),
            library_ids=["query"],
            partner_ids=["convex"],
            tags=[],
            metadata=None,
            auto_synced=False,
        )
    )
    store.upsert_entry(
        make_entry(entry_id="release:tanstack/query:hidden", published_at=base + timedelta(days=6), is_visible=False)
    )


# -- stats ---------------------------------------------------------------------


def test_oss_stats_for_org(store: CacheStore, clock: FakeClock) -> None:
    store.set_github_stats(GitHubStats(key="org:tanstack", star_count=100, contributor_count=10, updated_at=clock()))
    store.set_npm_org_stats(
        NpmOrgStats(org="tanstack", total_downloads=5000, rate_per_day=50.0, package_count=3, updated_at=clock())
    )

    stats = get_oss_stats(store, org="tanstack")

    assert stats.github is not None
    assert stats.github.star_count == 100
    assert stats.github_delta is None
    assert stats.npm.total_downloads == 5000
    assert stats.npm.package_count == 3
    assert stats.is_stale is False


def test_oss_stats_delta_between_refreshes(store: CacheStore, clock: FakeClock) -> None:
    store.set_github_stats(GitHubStats(key="org:tanstack", star_count=100, contributor_count=10, updated_at=clock()))
    clock.advance(hours=2)
    store.set_github_stats(GitHubStats(key="org:tanstack", star_count=130, contributor_count=12, updated_at=clock()))

    stats = get_oss_stats(store, org="tanstack")

    assert stats.github_delta is not None
    assert stats.github_delta.star_count == 30
    assert stats.github_delta.contributor_count == 2
    assert stats.github_delta.time_delta_ms == 2 * 3_600_000


def test_oss_stats_stale_when_expired(store: CacheStore, clock: FakeClock) -> None:
    store.set_github_stats(GitHubStats(key="org:tanstack", star_count=100, contributor_count=10, updated_at=clock()))
    clock.advance(hours=7)

    stats = get_oss_stats(store, org="tanstack")

    assert stats.is_stale is True
    assert stats.github is not None
    assert stats.npm.total_downloads == 0


def test_oss_stats_for_library(store: CacheStore, clock: FakeClock) -> None:
    store.set_github_stats(GitHubStats(key="tanstack/query", star_count=40000, contributor_count=800, updated_at=clock()))
    store.set_npm_library_stats(
        NpmLibraryStats(
            library_id="query",
            total_downloads=900,
            rate_per_day=9.0,
            package_count=2,
            previous_total_downloads=800,
            updated_at=clock(),
        )
    )

    stats = get_oss_stats(store, org="tanstack", library=QUERY)

    assert stats.github is not None
    assert stats.github.key == "tanstack/query"
    assert stats.npm.total_downloads == 900
    assert stats.npm.previous_total_downloads == 800


def test_oss_stats_library_falls_back_to_org_packages(store: CacheStore, clock: FakeClock) -> None:
    packages = [
        NpmPackageStats(name="@tanstack/vue-table", library_id="table", total_downloads=70, rate_per_day=1.5, updated_at=clock()),
        NpmPackageStats(name="@tanstack/react-table", library_id="table", total_downloads=30, rate_per_day=0.5, updated_at=clock()),
        NpmPackageStats(name="@tanstack/react-query", library_id="query", total_downloads=999, updated_at=clock()),
    ]
    store.set_npm_org_stats(
        NpmOrgStats(
            org="tanstack",
            total_downloads=1099,
            package_count=3,
            package_stats={stats.name: stats for stats in packages},
            updated_at=clock(),
        )
    )

    stats = get_oss_stats(store, org="tanstack", library=TABLE)

    assert stats.github is None
    assert stats.npm.total_downloads == 100
    assert stats.npm.rate_per_day == 2.0
    assert stats.npm.package_count == 2


def test_oss_stats_nothing_cached(store: CacheStore) -> None:
    with pytest.raises(NoCachedData):
        get_oss_stats(store, org="tanstack")


def test_oss_stats_store_unavailable(store: CacheStore, monkeypatch: pytest.MonkeyPatch) -> None:
    def unavailable(*args, **kwargs):
        raise StoreUnavailable("disk I/O error")

    monkeypatch.setattr(store, "get_expired_stats", unavailable)
    with pytest.raises(NoCachedData):
        get_oss_stats(store, org="tanstack")


def test_recent_download_stats(store: CacheStore, clock: FakeClock) -> None:
    older = NpmDownloadChunk(
        package_name="@tanstack/react-query",
        date_from=date(2024, 4, 1),
        date_to=date(2024, 5, 31),
        downloads=make_downloads(date(2024, 4, 1), [1] * 61),
        total_downloads=61,
        is_immutable=True,
        updated_at=clock(),
    )
    current = NpmDownloadChunk(
        package_name="@tanstack/react-query",
        date_from=date(2024, 6, 1),
        date_to=date(2024, 6, 15),
        downloads=make_downloads(date(2024, 6, 1), [10] * 15),
        total_downloads=150,
        updated_at=clock(),
    )
    store.set_chunk(older)
    store.set_chunk(current)

    stats = fetch_recent_download_stats(store, ["@tanstack/react-query", "@tanstack/unknown"])

    assert stats.daily_downloads == 10
    assert stats.weekly_downloads == 70
    # 15 days at 10 plus the last 15 days of May at 1
    assert stats.monthly_downloads == 165
    assert stats.as_of == date(2024, 6, 15)


def test_recent_download_stats_empty(store: CacheStore) -> None:
    stats = fetch_recent_download_stats(store, ["@tanstack/react-query"])
    assert stats.daily_downloads == 0
    assert stats.as_of is None


# -- feed ----------------------------------------------------------------------


def test_list_feed_entries_newest_first(store: CacheStore) -> None:
    _seed_feed(store)
    page = list_feed_entries(store)

    assert page.total == 5
    assert [entry.entry_id for entry in page.page] == [
        "announcement:partner",
        "blog:table-v8",
        "release:tanstack/table:v8.0.1",
        "release:tanstack/query:v5.1.0-beta.1",
        "release:tanstack/query:v5.0.0",
    ]
    assert page.is_done is True


def test_list_feed_entries_pagination(store: CacheStore) -> None:
    _seed_feed(store)
    first = list_feed_entries(store, limit=2, page=0)
    last = list_feed_entries(store, limit=2, page=2)

    assert first.pages == 3
    assert first.is_done is False
    assert len(first.page) == 2
    assert last.is_done is True
    assert [entry.entry_id for entry in last.page] == ["release:tanstack/query:v5.0.0"]


def test_list_feed_entries_include_hidden(store: CacheStore) -> None:
    _seed_feed(store)
    page = list_feed_entries(store, FeedFilters(include_hidden=True))
    assert page.total == 6
    assert page.page[0].entry_id == "release:tanstack/query:hidden"


def test_featured_breaks_ties(store: CacheStore) -> None:
    published = datetime(2024, 6, 1, tzinfo=UTC)
    store.upsert_entry(make_entry(entry_id="release:tanstack/query:b", published_at=published))
    store.upsert_entry(make_entry(entry_id="release:tanstack/query:a", published_at=published, featured=True))
    page = list_feed_entries(store)
    assert page.page[0].entry_id == "release:tanstack/query:a"


def test_out_of_range_published_at_uses_created_at(store: CacheStore, clock: FakeClock) -> None:
    entry = make_entry(published_at=clock() + timedelta(days=30), created_at=datetime(2024, 5, 1, tzinfo=UTC))
    assert effective_published_at(entry, clock()) == datetime(2024, 5, 1, tzinfo=UTC)


@pytest.mark.parametrize(
    ("filters", "expected"),
    [
        (FeedFilters(library_ids=["table"]), {"blog:table-v8", "release:tanstack/table:v8.0.1"}),
        (FeedFilters(sources=["blog", "announcement"]), {"blog:table-v8", "announcement:partner"}),
        (FeedFilters(categories=["partner"]), {"announcement:partner"}),
        (FeedFilters(partner_ids=["convex"]), {"announcement:partner"}),
        (FeedFilters(tags=["release:patch"]), {"release:tanstack/table:v8.0.1"}),
        (FeedFilters(featured=True), {"blog:table-v8"}),
        (FeedFilters(search="headless tables"), {"blog:table-v8"}),
        (
            FeedFilters(release_levels=["major", "patch"]),
            {"release:tanstack/query:v5.0.0", "release:tanstack/table:v8.0.1", "blog:table-v8", "announcement:partner"},
        ),
        (
            FeedFilters(include_prerelease=False, categories=["release"]),
            {"release:tanstack/query:v5.0.0", "release:tanstack/table:v8.0.1"},
        ),
    ],
)
def test_list_feed_entries_filters(store: CacheStore, filters: FeedFilters, expected: set[str]) -> None:
    _seed_feed(store)
    page = list_feed_entries(store, filters, limit=50)
    assert {entry.entry_id for entry in page.page} == expected


def test_facet_counts(store: CacheStore) -> None:
    _seed_feed(store)
    facets = get_feed_facet_counts(store)

    assert facets.sources == {"github": 3, "blog": 1, "announcement": 1}
    assert facets.categories == {"release": 3, "blog": 1, "partner": 1}
    assert facets.libraries == {"query": 4, "table": 2}
    assert facets.partners == {"convex": 1}
    assert facets.release_levels == {"major": 1, "minor": 1, "patch": 1}
    assert facets.prerelease == 1
    assert facets.featured == 1


def test_facet_counts_lift_own_filter(store: CacheStore) -> None:
    _seed_feed(store)
    facets = get_feed_facet_counts(store, FeedFilters(library_ids=["table"], sources=["github"]))

    # each facet ignores its own filter but applies the others
    assert facets.libraries == {"table": 1, "query": 2}
    assert facets.sources == {"github": 1, "blog": 1}


def test_feed_entry_and_stats(store: CacheStore) -> None:
    _seed_feed(store)
    assert get_feed_entry(store, "blog:table-v8") is not None
    assert get_feed_entry(store, "blog:missing") is None

    stats = get_feed_stats(store)
    assert stats.total == 6
    assert stats.visible == 5
    assert stats.featured == 1
    assert stats.auto_synced == 5
    assert stats.by_source == {"github": 4, "blog": 1, "announcement": 1}


def test_feed_survives_store_outage(store: CacheStore, monkeypatch: pytest.MonkeyPatch) -> None:
    def unavailable(*args, **kwargs):
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(store, "list_entries", unavailable)
    page = list_feed_entries(store)
    assert page.total == 0
    assert page.is_done is True
