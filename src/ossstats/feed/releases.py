"""Normalization of GitHub releases and blog posts into feed entries."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ossstats.feed.entries import DEFAULT_EXCERPT_LENGTH, generate_excerpt
from ossstats.models.feed import BlogMetadata, FeedEntry, ReleaseMetadata
from ossstats.utils.parsing import parse_timestamp, parse_version

if TYPE_CHECKING:
    from datetime import datetime

    from ossstats.models.feed import BlogPost
    from ossstats.models.library import Library


def release_entry_id(repo: str, tag: str) -> str:
    return f"release:{repo.lower()}:{tag}"


def blog_entry_id(slug: str) -> str:
    return f"blog:{slug}"


def release_published_at(release: dict[str, Any]) -> datetime | None:
    return parse_timestamp(release.get("published_at")) or parse_timestamp(release.get("created_at"))


def first_paragraph(body: str) -> str:
    for paragraph in body.replace("\r\n", "\n").split("\n\n"):
        if paragraph.strip():
            return paragraph.strip()
    return ""


def normalize_release(
    release: dict[str, Any],
    repo: str,
    libraries: list[Library],
    *,
    now: datetime,
    existing: FeedEntry | None = None,
    excerpt_length: int = DEFAULT_EXCERPT_LENGTH,
) -> FeedEntry:
    """Build the feed entry for one release.

    When the entry already exists, editorial state (visibility, featuring) and the
    original ``published_at`` / ``created_at`` are carried over.
    """

    tag = release.get("tag_name")
    if not isinstance(tag, str) or not tag:
        raise ValueError(f"release in {repo} has no tag_name")
    published_at = release_published_at(release)
    if published_at is None:
        raise ValueError(f"release {tag} in {repo} has no timestamp")

    version, release_type, is_prerelease = parse_version(tag)
    is_prerelease = is_prerelease or bool(release.get("prerelease"))
    library_ids = [library.id for library in libraries]

    tags = [f"release:{release_type}"]
    if is_prerelease:
        tags.append("release:prerelease")
    tags.append("source:github")
    tags.extend(f"library:{library_id}" for library_id in library_ids)

    body = release.get("body") or ""
    name = release.get("name") or tag
    title = f"{libraries[0].name} {name}" if libraries and libraries[0].name not in name else name
    author = (release.get("author") or {}).get("login")

    return FeedEntry(
        entry_id=release_entry_id(repo, tag),
        source="github",
        title=title,
        content=body or name,
        excerpt=generate_excerpt(first_paragraph(body), excerpt_length) if body else None,
        published_at=existing.published_at if existing is not None else published_at,
        category="release",
        library_ids=library_ids,
        tags=tags,
        is_visible=existing.is_visible if existing is not None else True,
        featured=existing.featured if existing is not None else False,
        auto_synced=True,
        metadata=ReleaseMetadata(
            repo=repo.lower(),
            tag=tag,
            url=release.get("html_url") or f"https://github.com/{repo}/releases/tag/{tag}",
            release_id=release.get("id"),
            version=version,
            release_type=release_type,
            is_prerelease=is_prerelease,
            author=author,
        ),
        created_at=existing.created_at if existing is not None else now,
        updated_at=now,
        last_synced_at=now,
    )


def normalize_blog_post(
    post: BlogPost,
    site_url: str,
    *,
    now: datetime,
    existing: FeedEntry | None = None,
    excerpt_length: int = DEFAULT_EXCERPT_LENGTH,
) -> FeedEntry:
    """Blog entries carry the excerpt plus a link back to the full post."""

    excerpt = post.excerpt or generate_excerpt(post.content, excerpt_length)
    link = f"{site_url.rstrip('/')}/blog/{post.slug}"
    published_at = post.published if post.published.tzinfo else post.published.replace(tzinfo=now.tzinfo)
    return FeedEntry(
        entry_id=blog_entry_id(post.slug),
        source="blog",
        title=post.title,
        content=f"{excerpt}\n\n[Read more]({link})",
        excerpt=excerpt,
        published_at=published_at,
        category="blog",
        library_ids=post.library_ids,
        tags=["source:blog", *(f"library:{library_id}" for library_id in post.library_ids)],
        is_visible=existing.is_visible if existing is not None else True,
        featured=existing.featured if existing is not None else False,
        auto_synced=True,
        metadata=BlogMetadata(slug=post.slug, authors=post.authors, header_image=post.header_image),
        created_at=existing.created_at if existing is not None else now,
        updated_at=now,
        last_synced_at=now,
    )
