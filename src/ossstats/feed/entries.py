"""Manual feed entries: validation, excerpt generation and editorial operations."""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ossstats.errors import ValidationError
from ossstats.models.feed import AnnouncementMetadata, FeedCategory, FeedEntry

if TYPE_CHECKING:
    from ossstats.storage.cache import CacheStore

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
MAX_FUTURE_SKEW = timedelta(hours=24)
DEFAULT_EXCERPT_LENGTH = 200
ELLIPSIS = "..."

_FENCED_CODE_RE = re.compile(r"```.*?```", re.DOTALL)
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_REF_LINK_RE = re.compile(r"\[([^\]]+)\]\[[^\]]*\]")
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_HEADER_RE = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_BLOCKQUOTE_RE = re.compile(r"^\s{0,3}>\s?", re.MULTILINE)
_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+", re.MULTILINE)
_HRULE_RE = re.compile(r"^\s*(?:[-*_]\s*){3,}$", re.MULTILINE)
_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1", re.DOTALL)
_ITALIC_STAR_RE = re.compile(r"\*(?!\s)(.+?)(?<!\s)\*", re.DOTALL)
_ITALIC_UNDERSCORE_RE = re.compile(r"(?<!\w)_(?!\s)(.+?)(?<!\s)_(?!\w)", re.DOTALL)
_STRIKE_RE = re.compile(r"~~(.+?)~~", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`]*)`")
_WHITESPACE_RE = re.compile(r"\s+")


def strip_markdown(content: str) -> str:
    """Reduce markdown to plain text on one line."""

    text = _FENCED_CODE_RE.sub(" ", content)
    text = _IMAGE_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _REF_LINK_RE.sub(r"\1", text)
    text = _HTML_TAG_RE.sub(" ", text)
    text = _HRULE_RE.sub(" ", text)
    text = _HEADER_RE.sub("", text)
    text = _BLOCKQUOTE_RE.sub("", text)
    text = _LIST_MARKER_RE.sub("", text)
    text = _BOLD_RE.sub(r"\2", text)
    text = _STRIKE_RE.sub(r"\1", text)
    text = _ITALIC_STAR_RE.sub(r"\1", text)
    text = _ITALIC_UNDERSCORE_RE.sub(r"\1", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def generate_excerpt(content: str, max_length: int = DEFAULT_EXCERPT_LENGTH) -> str:
    """Plain-text excerpt of at most ``max_length`` characters plus an ellipsis.

    Truncation happens at the last space within the limit so no word is split.
    """

    text = strip_markdown(content)
    if len(text) <= max_length:
        return text
    cut = text[: max_length + 1]
    boundary = cut.rfind(" ")
    truncated = cut[:boundary] if boundary > 0 else text[:max_length]
    return truncated.rstrip(" ,;:.-") + ELLIPSIS


def validate_published_at(published_at: datetime, *, now: datetime | None = None) -> str | None:
    """Return a problem description when the timestamp is out of range, else None."""

    current = now or datetime.now(UTC)
    value = published_at if published_at.tzinfo is not None else published_at.replace(tzinfo=UTC)
    if value < EPOCH:
        return "published_at: must not be before 1970-01-01"
    if value > current + MAX_FUTURE_SKEW:
        return "published_at: must not be more than 24 hours in the future"
    return None


class ManualEntryDraft(BaseModel):
    """Partial editorial input for a hand-authored entry."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    entry_id: str | None = None
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    excerpt: str | None = None
    published_at: datetime
    category: FeedCategory
    library_ids: list[str] = Field(min_length=1)
    partner_ids: list[str] | None = None
    tags: list[str] = Field(default_factory=list)
    featured: bool = False
    is_visible: bool = True
    metadata: dict[str, Any] | None = None


def _problems(exc: PydanticValidationError) -> list[str]:
    return [f"{'.'.join(str(part) for part in error['loc']) or 'entry'}: {error['msg']}" for error in exc.errors()]


def normalize_manual_entry(
    raw: dict[str, Any] | ManualEntryDraft,
    *,
    now: datetime | None = None,
    excerpt_length: int = DEFAULT_EXCERPT_LENGTH,
) -> FeedEntry:
    """Validate editorial input into a complete entry without touching the store."""

    current = now or datetime.now(UTC)
    try:
        draft = raw if isinstance(raw, ManualEntryDraft) else ManualEntryDraft.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(_problems(exc)) from exc

    published_at = draft.published_at if draft.published_at.tzinfo else draft.published_at.replace(tzinfo=UTC)
    problem = validate_published_at(published_at, now=current)
    if problem is not None:
        raise ValidationError([problem])
    library_ids = [library_id for library_id in draft.library_ids if library_id]
    if not library_ids:
        raise ValidationError(["library_ids: at least one library is required"])

    return FeedEntry(
        entry_id=draft.entry_id or f"announcement:{uuid.uuid4().hex[:12]}",
        source="announcement",
        title=draft.title,
        content=draft.content,
        excerpt=draft.excerpt or generate_excerpt(draft.content, excerpt_length),
        published_at=published_at,
        category=draft.category,
        library_ids=library_ids,
        partner_ids=draft.partner_ids,
        tags=list(dict.fromkeys(draft.tags)),
        is_visible=draft.is_visible,
        featured=draft.featured,
        auto_synced=False,
        metadata=AnnouncementMetadata(data=draft.metadata or {}),
        created_at=current,
        updated_at=current,
    )


def create_manual_entry(store: CacheStore, raw: dict[str, Any] | ManualEntryDraft, *, now: datetime | None = None) -> FeedEntry:
    """Validate and persist a new manual entry; duplicate ids are rejected."""

    entry = normalize_manual_entry(raw, now=now or store.now())
    if not store.insert_entry(entry):
        raise ValidationError([f"entry_id: {entry.entry_id} already exists"])
    logger.info("Created manual feed entry {}", entry.entry_id)
    return entry


def _require(store: CacheStore, entry_id: str) -> FeedEntry:
    entry = store.get_entry(entry_id)
    if entry is None:
        raise ValidationError([f"entry_id: {entry_id} does not exist"])
    return entry


def update_manual_entry(
    store: CacheStore, entry_id: str, changes: dict[str, Any], *, now: datetime | None = None
) -> FeedEntry:
    """Apply an editorial edit. Edited entries become manual so syncs leave them alone."""

    current = now or store.now()
    existing = _require(store, entry_id)
    if "entry_id" in changes and changes["entry_id"] != entry_id:
        raise ValidationError(["entry_id: cannot be changed"])

    merged: dict[str, Any] = {
        "entry_id": entry_id,
        "title": existing.title,
        "content": existing.content,
        "excerpt": existing.excerpt if "content" not in changes else None,
        "published_at": existing.published_at,
        "category": existing.category,
        "library_ids": existing.library_ids,
        "partner_ids": existing.partner_ids,
        "tags": existing.tags,
        "featured": existing.featured,
        "is_visible": existing.is_visible,
    }
    merged.update({key: value for key, value in changes.items() if key != "metadata"})
    normalized = normalize_manual_entry(merged, now=current)

    updated = normalized.model_copy(
        update={
            "source": existing.source,
            "metadata": existing.metadata if "metadata" not in changes else AnnouncementMetadata(data=changes["metadata"] or {}),
            "created_at": existing.created_at,
            "updated_at": current,
            "last_synced_at": existing.last_synced_at,
        }
    )
    store.upsert_entry(updated)
    return updated


def delete_feed_entry(store: CacheStore, entry_id: str) -> Literal["deleted", "hidden"]:
    """Hard-delete a manual entry; synced entries are only hidden."""

    entry = _require(store, entry_id)
    if entry.auto_synced:
        set_entry_visibility(store, entry_id, visible=False)
        return "hidden"
    store.delete_entry(entry_id)
    logger.info("Deleted manual feed entry {}", entry_id)
    return "deleted"


def set_entry_visibility(store: CacheStore, entry_id: str, *, visible: bool) -> FeedEntry:
    entry = _require(store, entry_id)
    updated = entry.model_copy(update={"is_visible": visible, "updated_at": store.now()})
    store.upsert_entry(updated)
    return updated


def set_entry_featured(store: CacheStore, entry_id: str, *, featured: bool) -> FeedEntry:
    entry = _require(store, entry_id)
    updated = entry.model_copy(update={"featured": featured, "updated_at": store.now()})
    store.upsert_entry(updated)
    return updated
