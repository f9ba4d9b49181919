"""Feed synchronizer: idempotent upsert of GitHub releases and blog posts."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ossstats.errors import UpstreamError
from ossstats.feed.entries import validate_published_at
from ossstats.feed.releases import (
    blog_entry_id,
    normalize_blog_post,
    normalize_release,
    release_entry_id,
    release_published_at,
)
from ossstats.libraries import tracked_repos
from ossstats.models.feed import BlogSyncResult, FeedSyncResult, ReleaseSyncResult, SyncError

if TYPE_CHECKING:
    from ossstats.clients.content import ContentSource
    from ossstats.clients.github import GitHubClient
    from ossstats.models.library import Library
    from ossstats.settings import Settings
    from ossstats.storage.cache import CacheStore


def watermark_key(repo: str) -> str:
    return f"github:sync:{repo.lower()}"


class FeedSynchronizer:
    """Pulls releases and posts, normalizes them and upserts by entry id.

    Entries authored or edited by hand (``auto_synced=False``) are never overwritten.
    """

    def __init__(
        self,
        store: CacheStore,
        github: GitHubClient,
        settings: Settings,
        libraries: list[Library],
        content: ContentSource | None = None,
    ) -> None:
        self.store = store
        self.github = github
        self.content = content
        self.libraries = libraries
        self.site_url = settings.site_url
        self.cold_start_days = settings.release_sync_days_back
        self.excerpt_length = settings.excerpt_max_length

    def _cutoff(self, repo: str, days_back: int | None, now: datetime) -> datetime | None:
        """``days_back=0`` means everything; explicit window, then watermark, then cold-start window."""

        if days_back == 0:
            return None
        if days_back is not None:
            return now - timedelta(days=days_back)
        watermark = self.store.get_watermark(watermark_key(repo))
        if watermark is not None:
            return watermark
        return now - timedelta(days=self.cold_start_days)

    async def sync_github_releases(self, days_back: int | None = None) -> ReleaseSyncResult:
        """Sync releases of every tracked repository published after the cutoff."""

        now = self.store.now()
        result = ReleaseSyncResult()
        for repo in tracked_repos(self.libraries):
            await self._sync_repo(repo, days_back, now, result)
            result.repos_processed += 1

        logger.info(
            "Release sync: {} synced ({} created, {} updated), {} skipped, {} errors",
            result.synced_count,
            result.created,
            result.updated,
            result.skipped_count,
            result.error_count,
        )
        return result

    async def _sync_repo(self, repo: str, days_back: int | None, now: datetime, result: ReleaseSyncResult) -> None:
        libraries = [library for library in self.libraries if library.repo and library.repo.lower() == repo]
        cutoff = self._cutoff(repo, days_back, now)

        try:
            releases = await self.github.list_releases(repo)
        except UpstreamError as exc:
            logger.warning("Release listing failed for {}: {}", repo, exc)
            result.error_count += 1
            result.errors.append(SyncError(item=repo, error=str(exc)))
            return

        candidates = []
        for release in releases:
            published_at = release_published_at(release)
            if release.get("draft") or published_at is None or (cutoff is not None and published_at <= cutoff):
                result.skipped_count += 1
                continue
            candidates.append((published_at, release))

        existing = self.store.get_entries(release_entry_id(repo, str(release.get("tag_name"))) for _, release in candidates)

        repo_errors = 0
        newest: datetime | None = None
        for published_at, release in sorted(candidates, key=lambda item: item[0]):
            entry_id = release_entry_id(repo, str(release.get("tag_name")))
            current = existing.get(entry_id)
            if current is not None and not current.auto_synced:
                result.skipped_count += 1
                continue
            try:
                entry = normalize_release(
                    release, repo, libraries, now=now, existing=current, excerpt_length=self.excerpt_length
                )
            except (ValueError, PydanticValidationError) as exc:
                repo_errors += 1
                result.error_count += 1
                result.errors.append(SyncError(item=entry_id, error=str(exc)))
                continue

            outcome = self.store.upsert_entry(entry)
            if outcome == "created":
                result.created += 1
            else:
                result.updated += 1
            result.synced_count += 1
            newest = published_at if newest is None or published_at > newest else newest

        if repo_errors:
            return
        key = watermark_key(repo)
        if newest is not None and (cutoff is None or newest > cutoff):
            self.store.set_watermark(key, newest)
        elif self.store.get_watermark(key) is None:
            self.store.set_watermark(key, now)

    async def sync_blog_posts(self) -> BlogSyncResult:
        """Upsert every published post from the content source."""

        result = BlogSyncResult()
        if self.content is None:
            logger.info("No blog content source configured; skipping blog sync")
            return result

        now = self.store.now()
        try:
            posts = await self.content.list_posts()
        except UpstreamError as exc:
            logger.warning("Blog source unavailable: {}", exc)
            result.errors.append(SyncError(item="blog-index", error=str(exc)))
            return result

        valid = [(label, item) for label, item in posts if not isinstance(item, str)]
        existing = self.store.get_entries(blog_entry_id(post.slug) for _, post in valid)

        for label, item in posts:
            if isinstance(item, str):
                result.errors.append(SyncError(item=label, error=item))
                continue
            current = existing.get(blog_entry_id(item.slug))
            if current is not None and not current.auto_synced:
                result.skipped_count += 1
                continue
            if validate_published_at(item.published, now=now) is not None:
                result.skipped_count += 1
                continue
            try:
                entry = normalize_blog_post(
                    item, self.site_url, now=now, existing=current, excerpt_length=self.excerpt_length
                )
            except (ValueError, PydanticValidationError) as exc:
                result.errors.append(SyncError(item=label, error=str(exc)))
                continue
            if self.store.upsert_entry(entry) == "created":
                result.created += 1
            else:
                result.updated += 1
            result.synced_count += 1

        logger.info(
            "Blog sync: {} created, {} updated, {} errors", result.created, result.updated, len(result.errors)
        )
        return result

    async def sync_all(self, days_back: int | None = None) -> FeedSyncResult:
        releases = await self.sync_github_releases(days_back=days_back)
        blog = await self.sync_blog_posts()
        return FeedSyncResult(releases=releases, blog=blog)
