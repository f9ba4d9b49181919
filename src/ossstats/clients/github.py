"""GitHub REST API client plus counters scraped from repository pages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from loguru import logger
from lxml import etree, html

from ossstats.clients.http import RequestContext, fetch_json, fetch_response, fetch_text
from ossstats.errors import UpstreamError, UpstreamNotFound, UpstreamUnavailable
from ossstats.utils.parsing import parse_compact_number

if TYPE_CHECKING:
    import httpx

    from ossstats.settings import Settings

_COUNTER_XPATH = (
    "//a[contains(@href, '{suffix}')]"
    "//span[contains(concat(' ', normalize-space(@class), ' '), ' Counter ')]"
)
_MAX_ORG_PAGES = 50


@dataclass(frozen=True)
class RepoCounters:
    """Counters only exposed on the web surface. None means not shown or not parseable."""

    contributors: int | None = None
    dependents: int | None = None


def parse_counter(tree: html.HtmlElement, href_suffix: str) -> int | None:
    """Read a ``span.Counter`` inside the link ending in ``href_suffix``; title holds the exact value."""

    for node in tree.xpath(_COUNTER_XPATH.format(suffix=href_suffix)):
        anchor = next(node.iterancestors("a"), None)
        href = anchor.get("href", "") if anchor is not None else ""
        if not href.split("?", 1)[0].rstrip("/").endswith(href_suffix):
            continue
        value = parse_compact_number(node.get("title")) or parse_compact_number(node.text_content())
        if value is not None:
            return value
    return None


def parse_repo_counters(page_html: str) -> RepoCounters:
    tree = html.fromstring(page_html)
    return RepoCounters(
        contributors=parse_counter(tree, "/graphs/contributors"),
        dependents=parse_counter(tree, "/network/dependents"),
    )


class GitHubClient:
    """Repository metadata, org listings, releases and page counters."""

    def __init__(self, client: httpx.AsyncClient, ctx: RequestContext, settings: Settings) -> None:
        self.client = client
        self.ctx = ctx
        self.api_url = settings.github_api_url.rstrip("/")
        self.web_url = settings.github_web_url.rstrip("/")
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if settings.github_token is not None:
            self.headers["Authorization"] = f"Bearer {settings.github_token.get_secret_value()}"

    async def fetch_repo(self, repo: str) -> dict[str, Any]:
        url = f"{self.api_url}/repos/{repo}"
        payload = await fetch_json(self.client, self.ctx, url, headers=self.headers)
        if not isinstance(payload, dict):
            raise UpstreamUnavailable(url, detail="unexpected repository payload")
        return payload

    async def list_org_repos(self, org: str) -> list[dict[str, Any]]:
        """Every repository of an org, following ``Link: rel="next"`` pagination."""

        url: str | None = f"{self.api_url}/orgs/{quote(org)}/repos?per_page=100&sort=stars&page=1"
        repos: list[dict[str, Any]] = []
        pages = 0
        while url is not None and pages < _MAX_ORG_PAGES:
            response = await fetch_response(self.client, self.ctx, url, headers=self.headers)
            payload = response.json()
            if not isinstance(payload, list):
                raise UpstreamUnavailable(url, detail="unexpected org repository listing")
            repos.extend(item for item in payload if isinstance(item, dict))
            pages += 1
            url = response.links.get("next", {}).get("url") if payload else None
        return repos

    async def list_releases(self, repo: str) -> list[dict[str, Any]]:
        """Most recent releases of a repository; a missing repository has none."""

        url = f"{self.api_url}/repos/{repo}/releases?per_page=100"
        try:
            payload = await fetch_json(self.client, self.ctx, url, headers=self.headers)
        except UpstreamNotFound:
            logger.warning("No releases endpoint for {}", repo)
            return []
        if not isinstance(payload, list):
            raise UpstreamUnavailable(url, detail="unexpected releases payload")
        return [item for item in payload if isinstance(item, dict)]

    async def scrape_counters(self, repo: str) -> RepoCounters:
        """Best-effort contributor and dependent counts from the repository page."""

        url = f"{self.web_url}/{repo}"
        try:
            page_html = await fetch_text(self.client, self.ctx, url, headers={"Accept": "text/html"})
        except UpstreamError as exc:
            logger.debug("Counter scrape failed for {}: {}", repo, exc)
            return RepoCounters()
        if not page_html.strip():
            return RepoCounters()
        try:
            return parse_repo_counters(page_html)
        except (etree.ParserError, ValueError) as exc:
            logger.debug("Unparseable repository page for {}: {}", repo, exc)
            return RepoCounters()
