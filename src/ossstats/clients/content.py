"""Blog content sources: a local JSONL export or a JSON index served over HTTP."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ossstats.clients.http import RequestContext, fetch_json
from ossstats.errors import UpstreamUnavailable
from ossstats.models.feed import BlogPost
from ossstats.storage.jsonl import iter_jsonl_rows

if TYPE_CHECKING:
    from collections.abc import Iterable

    import httpx


class ContentSource(Protocol):
    async def list_posts(self) -> list[tuple[str, BlogPost | str]]:
        """Return ``(slug_or_index, post_or_error)`` pairs for every published post."""
        ...


def _parse_rows(rows: Iterable[tuple[str, dict[str, Any] | str]]) -> list[tuple[str, BlogPost | str]]:
    results: list[tuple[str, BlogPost | str]] = []
    for location, row in rows:
        if isinstance(row, str):
            results.append((location, row))
            continue
        label = str(row.get("slug") or location)
        try:
            post = BlogPost.model_validate(row)
        except PydanticValidationError as exc:
            results.append((label, f"invalid post: {exc.error_count()} validation errors"))
            continue
        if post.draft:
            continue
        results.append((post.slug, post))
    return results


class JsonlContentSource:
    """Posts exported one JSON object per line."""

    def __init__(self, path: Path) -> None:
        self.path = path

    async def list_posts(self) -> list[tuple[str, BlogPost | str]]:
        if not self.path.exists():
            logger.warning("Blog source {} does not exist", self.path)
            return []
        return _parse_rows(iter_jsonl_rows(self.path))


class HttpContentSource:
    """Posts served as a JSON array (or ``{"posts": [...]}``) from a URL."""

    def __init__(self, client: httpx.AsyncClient, ctx: RequestContext, url: str) -> None:
        self.client = client
        self.ctx = ctx
        self.url = url

    async def list_posts(self) -> list[tuple[str, BlogPost | str]]:
        payload = await fetch_json(self.client, self.ctx, self.url)
        if isinstance(payload, dict):
            payload = payload.get("posts")
        if not isinstance(payload, list):
            raise UpstreamUnavailable(self.url, detail="unexpected blog index shape")
        return _parse_rows(
            (f"{self.url}#{index}", row if isinstance(row, dict) else f"expected an object, got {type(row).__name__}")
            for index, row in enumerate(payload)
        )


class StaticContentSource:
    """In-memory posts, for embedding callers and tests."""

    def __init__(self, posts: list[BlogPost]) -> None:
        self.posts = posts

    async def list_posts(self) -> list[tuple[str, BlogPost | str]]:
        return [(post.slug, post) for post in self.posts if not post.draft]


def content_source_from_location(
    location: str | None, client: httpx.AsyncClient, ctx: RequestContext
) -> ContentSource | None:
    """Pick a content source for a configured path or URL."""

    if not location:
        return None
    if location.startswith(("http://", "https://")):
        return HttpContentSource(client, ctx, location)
    return JsonlContentSource(Path(location))
