"""SQLModel tables backing the cache store."""

from __future__ import annotations

from datetime import date, datetime  # noqa: TC003
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class NpmChunkDB(SQLModel, table=True):
    """Download chunks keyed by package + range + bin."""

    __tablename__ = "npm_download_chunks"

    id: str = Field(primary_key=True)
    package_name: str = Field(index=True)
    date_from: date
    date_to: date = Field(index=True)
    bin_size: str = "daily"
    total_downloads: int = 0
    downloads: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_immutable: bool = False
    updated_at: datetime


class StatsCacheDB(SQLModel, table=True):
    """Aggregate npm / GitHub stats keyed by source + scope + key."""

    __tablename__ = "stats_cache"

    id: str = Field(primary_key=True)
    source: str = Field(index=True)
    scope: str
    key: str = Field(index=True)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    previous_payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime
    updated_at: datetime
    expires_at: datetime


class FeedEntryDB(SQLModel, table=True):
    """Feed entries keyed by their stable entry id."""

    __tablename__ = "feed_entries"

    entry_id: str = Field(primary_key=True)
    source: str = Field(index=True)
    title: str
    content: str
    excerpt: str | None = None
    published_at: datetime = Field(index=True)
    category: str = Field(index=True)
    library_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    partner_ids: list[str] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_visible: bool = Field(default=True, index=True)
    featured: bool = False
    auto_synced: bool = True
    entry_metadata: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime
    updated_at: datetime
    last_synced_at: datetime | None = None


class SyncWatermarkDB(SQLModel, table=True):
    """Last-synced cursor per synchronized source."""

    __tablename__ = "sync_watermarks"

    key: str = Field(primary_key=True)
    last_synced_at: datetime
    updated_at: datetime


class RateLimitWindowDB(SQLModel, table=True):
    """Hit counter per (scope, identifier, window)."""

    __tablename__ = "rate_limit_windows"

    id: str = Field(primary_key=True)
    scope: str = Field(index=True)
    identifier: str
    window_start: datetime = Field(index=True)
    hits: int = 0
