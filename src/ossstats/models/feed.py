"""Feed entry models: releases, blog posts and announcements in one timeline."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

FeedSource = Literal["github", "blog", "announcement"]
FeedCategory = Literal["release", "announcement", "blog", "partner", "update", "other"]
ReleaseLevel = Literal["major", "minor", "patch"]


class ReleaseMetadata(BaseModel):
    kind: Literal["github"] = "github"
    repo: str
    tag: str
    url: str
    release_id: int | None = None
    version: str | None = None
    release_type: ReleaseLevel = "patch"
    is_prerelease: bool = False
    author: str | None = None


class BlogMetadata(BaseModel):
    kind: Literal["blog"] = "blog"
    slug: str
    authors: list[str] = Field(default_factory=list)
    header_image: str | None = None


class AnnouncementMetadata(BaseModel):
    kind: Literal["announcement"] = "announcement"
    data: dict[str, Any] = Field(default_factory=dict)


FeedMetadata = Annotated[ReleaseMetadata | BlogMetadata | AnnouncementMetadata, Field(discriminator="kind")]


class FeedEntry(BaseModel):
    """Unified content record. ``entry_id`` is the upsert key."""

    model_config = ConfigDict(str_strip_whitespace=True)

    entry_id: str
    source: FeedSource
    title: str
    content: str
    excerpt: str | None = None
    published_at: datetime
    category: FeedCategory
    library_ids: list[str] = Field(default_factory=list)
    partner_ids: list[str] | None = None
    tags: list[str] = Field(default_factory=list)
    is_visible: bool = True
    featured: bool = False
    auto_synced: bool = True
    metadata: FeedMetadata | None = None
    created_at: datetime
    updated_at: datetime
    last_synced_at: datetime | None = None

    @property
    def release_level(self) -> ReleaseLevel | None:
        for level in ("major", "minor", "patch"):
            if f"release:{level}" in self.tags:
                return level  # type: ignore[return-value]
        return None

    @property
    def is_prerelease(self) -> bool:
        return "release:prerelease" in self.tags


class BlogPost(BaseModel):
    """A post as enumerated by the content source."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    slug: str
    title: str
    published: datetime
    excerpt: str | None = None
    content: str = ""
    authors: list[str] = Field(default_factory=list)
    header_image: str | None = Field(default=None, alias="headerImage")
    library_ids: list[str] = Field(default_factory=list, alias="libraryIds")
    draft: bool = False


class FeedFilters(BaseModel):
    """Read-path filters for listing and faceting feed entries."""

    sources: list[FeedSource] | None = None
    library_ids: list[str] | None = None
    categories: list[FeedCategory] | None = None
    partner_ids: list[str] | None = None
    tags: list[str] | None = None
    release_levels: list[ReleaseLevel] | None = None
    include_prerelease: bool | None = None
    featured: bool | None = None
    search: str | None = None
    include_hidden: bool = False


class FeedPage(BaseModel):
    page: list[FeedEntry]
    is_done: bool
    total: int
    pages: int
    page_index: int = 0


class FacetCounts(BaseModel):
    sources: dict[str, int] = Field(default_factory=dict)
    categories: dict[str, int] = Field(default_factory=dict)
    libraries: dict[str, int] = Field(default_factory=dict)
    partners: dict[str, int] = Field(default_factory=dict)
    release_levels: dict[str, int] = Field(default_factory=dict)
    prerelease: int = 0
    featured: int = 0


class FeedStats(BaseModel):
    total: int = 0
    visible: int = 0
    featured: int = 0
    auto_synced: int = 0
    by_source: dict[str, int] = Field(default_factory=dict)
    by_category: dict[str, int] = Field(default_factory=dict)


class SyncError(BaseModel):
    item: str
    error: str


class ReleaseSyncResult(BaseModel):
    synced_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    created: int = 0
    updated: int = 0
    repos_processed: int = 0
    errors: list[SyncError] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.error_count == 0


class BlogSyncResult(BaseModel):
    created: int = 0
    updated: int = 0
    synced_count: int = 0
    skipped_count: int = 0
    errors: list[SyncError] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return not self.errors


class FeedSyncResult(BaseModel):
    releases: ReleaseSyncResult
    blog: BlogSyncResult

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.releases.success and self.blog.success
