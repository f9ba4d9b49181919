"""GitHub stats refresh: org aggregate plus one row per tracked repository."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from ossstats.clients.github import RepoCounters
from ossstats.errors import StoreUnavailable, UpstreamNotFound, UpstreamUnavailable
from ossstats.libraries import tracked_repos
from ossstats.models.stats import GitHubRefreshResult, GitHubStats, RefreshError
from ossstats.storage.cache import org_key

if TYPE_CHECKING:
    from datetime import datetime

    from ossstats.clients.github import GitHubClient
    from ossstats.models.library import Library
    from ossstats.settings import Settings
    from ossstats.storage.cache import CacheStore


def _count(repo: dict[str, Any], field: str) -> int:
    value = repo.get(field)
    return value if isinstance(value, int) and value > 0 else 0


class GitHubStatsRefresher:
    """Refreshes org-level and per-repository GitHub metrics into the cache store."""

    def __init__(self, store: CacheStore, github: GitHubClient, settings: Settings, libraries: list[Library]) -> None:
        self.store = store
        self.github = github
        self.libraries = libraries
        self.request_delay = settings.github_request_delay
        self.scrape_concurrency = settings.github_scrape_concurrency
        self.scrape_counters = settings.github_scrape_counters

    async def _counters(self, repo: str) -> RepoCounters:
        if not self.scrape_counters:
            return RepoCounters()
        return await self.github.scrape_counters(repo)

    async def fetch_org_stats(self, org: str, now: datetime) -> GitHubStats:
        """Sum stars, forks and scraped counters over every repository of the org."""

        repos = await self.github.list_org_repos(org)
        names = [repo["full_name"] for repo in repos if isinstance(repo.get("full_name"), str)]

        sem = asyncio.Semaphore(self.scrape_concurrency)

        async def _scrape(name: str) -> RepoCounters:
            async with sem:
                try:
                    return await self._counters(name)
                except Exception as exc:
                    logger.warning("Counter scrape for {} failed unexpectedly: {}", name, exc)
                    return RepoCounters()

        tasks: list[asyncio.Task[RepoCounters]] = []
        async with asyncio.TaskGroup() as tg:
            for name in names:
                tasks.append(tg.create_task(_scrape(name)))
        counters = [task.result() for task in tasks]

        dependents = [item.dependents for item in counters if item.dependents is not None]
        return GitHubStats(
            key=org_key(org),
            star_count=sum(_count(repo, "stargazers_count") for repo in repos),
            fork_count=sum(_count(repo, "forks_count") for repo in repos),
            contributor_count=sum(item.contributors or 0 for item in counters),
            dependent_count=sum(dependents) if dependents else None,
            repository_count=len(repos),
            updated_at=now,
        )

    async def fetch_repo_stats(self, repo: str, now: datetime) -> GitHubStats:
        payload = await self.github.fetch_repo(repo)
        counters = await self._counters(repo)
        return GitHubStats(
            key=repo.lower(),
            star_count=_count(payload, "stargazers_count"),
            fork_count=_count(payload, "forks_count"),
            contributor_count=counters.contributors or 0,
            dependent_count=counters.dependents,
            updated_at=now,
        )

    async def refresh_org_stats(self, org: str) -> GitHubRefreshResult:
        """Refresh the org aggregate, then each tracked repository with a delay between requests."""

        started = time.perf_counter()
        now = self.store.now()
        result = GitHubRefreshResult()

        try:
            org_stats = await self.fetch_org_stats(org, now)
        except (UpstreamNotFound, UpstreamUnavailable, httpx.HTTPError, ValueError) as exc:
            logger.warning("GitHub org stats failed for {}: {}", org, exc)
            result.library_errors.append(RefreshError.from_exception(org_key(org), exc))
        except StoreUnavailable:
            raise
        except Exception as exc:
            logger.error("Unexpected GitHub org stats error for {}: {}", org, exc)
            result.library_errors.append(RefreshError.from_exception(org_key(org), exc))
        else:
            self.store.set_github_stats(org_stats)
            result.org_stats = org_stats
            logger.info("GitHub org {}: {} stars across {} repos", org, org_stats.star_count, org_stats.repository_count)

        for index, repo in enumerate(tracked_repos(self.libraries)):
            if index and self.request_delay:
                await asyncio.sleep(self.request_delay)
            try:
                stats = await self.fetch_repo_stats(repo, now)
            except (UpstreamNotFound, UpstreamUnavailable, httpx.HTTPError, ValueError) as exc:
                logger.warning("GitHub stats failed for {}: {}", repo, exc)
                result.library_errors.append(RefreshError.from_exception(repo, exc))
                continue
            except StoreUnavailable:
                raise
            except Exception as exc:
                logger.error("Unexpected GitHub stats error for {}: {}", repo, exc)
                result.library_errors.append(RefreshError.from_exception(repo, exc))
                continue
            self.store.set_github_stats(stats)
            result.library_results.append(stats)

        result.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "GitHub refresh for {}: {} repos ok, {} errors",
            org,
            len(result.library_results),
            len(result.library_errors),
        )
        return result
