"""SQLite-backed cache store for download chunks, aggregate stats and feed entries."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Literal

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlmodel import Session, SQLModel, create_engine, delete, func, select

from ossstats.errors import StoreUnavailable
from ossstats.models.feed import FeedEntry
from ossstats.models.stats import (
    ChunkKey,
    DailyDownloads,
    GitHubStats,
    NpmDownloadChunk,
    NpmLibraryStats,
    NpmOrgStats,
    StatsRecord,
    StatsScope,
    StatsSource,
)
from ossstats.storage.tables import (
    FeedEntryDB,
    NpmChunkDB,
    RateLimitWindowDB,
    StatsCacheDB,
    SyncWatermarkDB,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator
    from pathlib import Path

    from sqlalchemy.engine import Engine

    from ossstats.settings import Settings

StatsKey = tuple[StatsSource, StatsScope, str]
UpsertOutcome = Literal["created", "updated"]


class StalenessPolicy(StrEnum):
    CHUNK = "chunk"
    AGGREGATE = "aggregate"
    FEED = "feed"


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_storage(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


def _stats_id(source: str, scope: str, key: str) -> str:
    return f"{source}:{scope}:{key}"


def _create_engine(path: Path) -> Engine:
    """Create SQLite engine."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(f"sqlite:///{path}", echo=False, connect_args={"check_same_thread": False})


class CacheStore:
    """Sole owner of persisted records.

    Constructed once per process and passed to every refresher, synchronizer and
    read-path function. Every write replaces a full row in a single commit, so a
    failed write never leaves a record half-updated. Backend failures surface as
    :class:`StoreUnavailable`, never as ``None``.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        stats_ttl: timedelta = timedelta(hours=6),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self.stats_ttl = stats_ttl
        self._clock = clock or (lambda: datetime.now(UTC))
        try:
            SQLModel.metadata.create_all(engine)
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(f"Cannot initialise cache store: {exc}") from exc

    @classmethod
    def open(cls, path: Path, *, stats_ttl_hours: float = 6.0, clock: Callable[[], datetime] | None = None) -> CacheStore:
        return cls(_create_engine(path), stats_ttl=timedelta(hours=stats_ttl_hours), clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheStore:
        return cls.open(settings.database_path, stats_ttl_hours=settings.stats_ttl_hours)

    def now(self) -> datetime:
        return as_utc(self._clock())

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine) as session:
                yield session
        except (OperationalError, InterfaceError) as exc:
            logger.error("Cache store unavailable: {}", exc)
            raise StoreUnavailable(str(exc)) from exc

    # -- staleness -----------------------------------------------------------

    def is_fresh(
        self,
        record: NpmDownloadChunk | StatsRecord | FeedEntry,
        policy: StalenessPolicy | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Apply the staleness policy of a record family (inferred from its type by default)."""

        current = as_utc(now) if now is not None else self.now()
        if policy is None:
            if isinstance(record, NpmDownloadChunk):
                policy = StalenessPolicy.CHUNK
            elif isinstance(record, StatsRecord):
                policy = StalenessPolicy.AGGREGATE
            else:
                policy = StalenessPolicy.FEED

        if policy is StalenessPolicy.CHUNK:
            if not isinstance(record, NpmDownloadChunk):
                raise TypeError(f"chunk staleness policy needs an NpmDownloadChunk, got {type(record).__name__}")
            if record.is_immutable:
                return True
            return as_utc(record.updated_at).date() == current.date()
        if policy is StalenessPolicy.AGGREGATE:
            if not isinstance(record, StatsRecord):
                raise TypeError(f"aggregate staleness policy needs a StatsRecord, got {type(record).__name__}")
            return current < as_utc(record.expires_at)
        return True

    # -- npm download chunks -------------------------------------------------

    def get_chunk(self, key: ChunkKey) -> NpmDownloadChunk | None:
        with self._session() as session:
            row = session.get(NpmChunkDB, key.storage_id)
            return _row_to_chunk(row) if row is not None else None

    def get_chunks(self, keys: Iterable[ChunkKey]) -> dict[ChunkKey, NpmDownloadChunk]:
        wanted = {key.storage_id: key for key in keys}
        if not wanted:
            return {}
        with self._session() as session:
            rows = session.exec(select(NpmChunkDB).where(NpmChunkDB.id.in_(list(wanted)))).all()  # type: ignore[attr-defined]
            return {wanted[row.id]: _row_to_chunk(row) for row in rows}

    def set_chunk(self, chunk: NpmDownloadChunk) -> None:
        row = NpmChunkDB(
            id=chunk.key.storage_id,
            package_name=chunk.package_name,
            date_from=chunk.date_from,
            date_to=chunk.date_to,
            bin_size=chunk.bin_size,
            total_downloads=chunk.total_downloads,
            downloads=[point.model_dump(mode="json") for point in chunk.downloads],
            is_immutable=chunk.is_immutable,
            updated_at=_to_storage(chunk.updated_at),
        )
        with self._session() as session:
            session.merge(row)
            session.commit()

    def latest_chunks(self, package_name: str, limit: int = 2) -> list[NpmDownloadChunk]:
        """Most recent chunks of a package, newest range first."""
        with self._session() as session:
            rows = session.exec(
                select(NpmChunkDB)
                .where(NpmChunkDB.package_name == package_name)
                .order_by(NpmChunkDB.date_to.desc(), NpmChunkDB.updated_at.desc())  # type: ignore[attr-defined]
                .limit(limit)
            ).all()
            return [_row_to_chunk(row) for row in rows]

    # -- aggregate stats -----------------------------------------------------

    def get_stats(self, source: StatsSource, scope: StatsScope, key: str) -> StatsRecord | None:
        """Raw accessor: returns the record whatever its freshness."""
        with self._session() as session:
            row = session.get(StatsCacheDB, _stats_id(source, scope, key))
            return _row_to_stats(row) if row is not None else None

    def get_stats_batch(self, keys: Iterable[StatsKey]) -> dict[StatsKey, StatsRecord]:
        wanted = {_stats_id(*key): key for key in keys}
        if not wanted:
            return {}
        with self._session() as session:
            rows = session.exec(select(StatsCacheDB).where(StatsCacheDB.id.in_(list(wanted)))).all()  # type: ignore[attr-defined]
            return {wanted[row.id]: _row_to_stats(row) for row in rows}

    def get_fresh_stats(self, source: StatsSource, scope: StatsScope, key: str) -> StatsRecord | None:
        record = self.get_stats(source, scope, key)
        if record is None or not self.is_fresh(record, StalenessPolicy.AGGREGATE):
            return None
        return record

    def get_expired_stats(self, source: StatsSource, scope: StatsScope, key: str) -> StatsRecord | None:
        """Fallback accessor: the last written record, even past its expiry."""
        return self.get_stats(source, scope, key)

    def set_stats(
        self,
        source: StatsSource,
        scope: StatsScope,
        key: str,
        payload: BaseModel | dict,
        *,
        updated_at: datetime | None = None,
    ) -> StatsRecord:
        """Replace the aggregate row, keeping the prior payload for deltas."""

        now = as_utc(updated_at) if updated_at is not None else self.now()
        data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        row_id = _stats_id(source, scope, key)
        with self._session() as session:
            existing = session.get(StatsCacheDB, row_id)
            row = StatsCacheDB(
                id=row_id,
                source=source,
                scope=scope,
                key=key,
                payload=data,
                previous_payload=existing.payload if existing is not None else None,
                created_at=existing.created_at if existing is not None else _to_storage(now),
                updated_at=_to_storage(now),
                expires_at=_to_storage(now + self.stats_ttl),
            )
            session.merge(row)
            session.commit()
        return _row_to_stats(row)

    def set_npm_org_stats(self, stats: NpmOrgStats) -> StatsRecord:
        return self.set_stats("npm", "org", stats.org, stats, updated_at=stats.updated_at)

    def get_npm_org_stats(self, org: str, *, allow_expired: bool = False) -> NpmOrgStats | None:
        record = self.get_expired_stats("npm", "org", org) if allow_expired else self.get_fresh_stats("npm", "org", org)
        return NpmOrgStats.model_validate(record.payload) if record is not None else None

    def set_npm_library_stats(self, stats: NpmLibraryStats) -> StatsRecord:
        return self.set_stats("npm", "library", stats.library_id, stats, updated_at=stats.updated_at)

    def get_npm_library_stats(self, library_id: str, *, allow_expired: bool = False) -> NpmLibraryStats | None:
        getter = self.get_expired_stats if allow_expired else self.get_fresh_stats
        record = getter("npm", "library", library_id)
        return NpmLibraryStats.model_validate(record.payload) if record is not None else None

    def set_github_stats(self, stats: GitHubStats) -> StatsRecord:
        return self.set_stats("github", github_scope(stats.key), stats.key, stats, updated_at=stats.updated_at)

    def get_github_stats(self, key: str, *, allow_expired: bool = False) -> GitHubStats | None:
        getter = self.get_expired_stats if allow_expired else self.get_fresh_stats
        record = getter("github", github_scope(key), key)
        return GitHubStats.model_validate(record.payload) if record is not None else None

    # -- feed entries --------------------------------------------------------

    def get_entry(self, entry_id: str) -> FeedEntry | None:
        with self._session() as session:
            row = session.get(FeedEntryDB, entry_id)
            return _row_to_entry(row) if row is not None else None

    def get_entries(self, entry_ids: Iterable[str]) -> dict[str, FeedEntry]:
        ids = list(dict.fromkeys(entry_ids))
        if not ids:
            return {}
        with self._session() as session:
            rows = session.exec(select(FeedEntryDB).where(FeedEntryDB.entry_id.in_(ids))).all()  # type: ignore[attr-defined]
            return {row.entry_id: _row_to_entry(row) for row in rows}

    def list_entries(self, *, include_hidden: bool = True) -> list[FeedEntry]:
        statement = select(FeedEntryDB)
        if not include_hidden:
            statement = statement.where(FeedEntryDB.is_visible == True)  # noqa: E712
        with self._session() as session:
            return [_row_to_entry(row) for row in session.exec(statement).all()]

    def count_entries(self) -> int:
        with self._session() as session:
            return session.exec(select(func.count()).select_from(FeedEntryDB)).one()

    def upsert_entry(self, entry: FeedEntry) -> UpsertOutcome:
        """Insert or fully replace an entry by ``entry_id``."""
        with self._session() as session:
            existed = session.get(FeedEntryDB, entry.entry_id) is not None
            session.merge(_entry_to_row(entry))
            session.commit()
        return "updated" if existed else "created"

    def insert_entry(self, entry: FeedEntry) -> bool:
        """Insert a new entry; returns False without writing when the id is taken."""
        with self._session() as session:
            if session.get(FeedEntryDB, entry.entry_id) is not None:
                return False
            session.add(_entry_to_row(entry))
            session.commit()
        return True

    def delete_entry(self, entry_id: str) -> bool:
        with self._session() as session:
            row = session.get(FeedEntryDB, entry_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
        return True

    # -- sync watermarks -----------------------------------------------------

    def get_watermark(self, key: str) -> datetime | None:
        with self._session() as session:
            row = session.get(SyncWatermarkDB, key)
            return as_utc(row.last_synced_at) if row is not None else None

    def set_watermark(self, key: str, last_synced_at: datetime) -> None:
        row = SyncWatermarkDB(
            key=key,
            last_synced_at=_to_storage(last_synced_at),
            updated_at=_to_storage(self.now()),
        )
        with self._session() as session:
            session.merge(row)
            session.commit()

    # -- rate limit windows --------------------------------------------------

    def increment_window(self, scope: str, identifier: str, window_start: datetime) -> int:
        """Atomically count one hit in a window and return the new total."""

        stored_start = _to_storage(window_start)
        row_id = f"{scope}:{identifier}:{stored_start.isoformat()}"
        statement = sqlite_insert(RateLimitWindowDB).values(
            id=row_id,
            scope=scope,
            identifier=identifier,
            window_start=stored_start,
            hits=1,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["id"],
            set_={"hits": RateLimitWindowDB.hits + 1},
        )
        with self._session() as session:
            session.exec(statement)  # type: ignore[call-overload]
            session.commit()
            row = session.get(RateLimitWindowDB, row_id)
            return row.hits if row is not None else 1

    def prune_windows(self, before: datetime) -> None:
        with self._session() as session:
            session.exec(delete(RateLimitWindowDB).where(RateLimitWindowDB.window_start < _to_storage(before)))  # type: ignore[arg-type]
            session.commit()


def org_key(org: str) -> str:
    """GitHub stats key of an org aggregate."""
    return f"org:{org.lower()}"


def github_scope(key: str) -> StatsScope:
    return "org" if key.startswith("org:") else "repo"


def _row_to_chunk(row: NpmChunkDB) -> NpmDownloadChunk:
    return NpmDownloadChunk(
        package_name=row.package_name,
        date_from=row.date_from,
        date_to=row.date_to,
        bin_size=row.bin_size,  # type: ignore[arg-type]
        downloads=[DailyDownloads.model_validate(point) for point in row.downloads],
        total_downloads=row.total_downloads,
        is_immutable=row.is_immutable,
        updated_at=as_utc(row.updated_at),
    )


def _row_to_stats(row: StatsCacheDB) -> StatsRecord:
    return StatsRecord(
        source=row.source,  # type: ignore[arg-type]
        scope=row.scope,  # type: ignore[arg-type]
        key=row.key,
        payload=row.payload,
        previous_payload=row.previous_payload,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        expires_at=as_utc(row.expires_at),
    )


def _entry_to_row(entry: FeedEntry) -> FeedEntryDB:
    return FeedEntryDB(
        entry_id=entry.entry_id,
        source=entry.source,
        title=entry.title,
        content=entry.content,
        excerpt=entry.excerpt,
        published_at=_to_storage(entry.published_at),
        category=entry.category,
        library_ids=list(entry.library_ids),
        partner_ids=list(entry.partner_ids) if entry.partner_ids is not None else None,
        tags=list(entry.tags),
        is_visible=entry.is_visible,
        featured=entry.featured,
        auto_synced=entry.auto_synced,
        entry_metadata=entry.metadata.model_dump(mode="json") if entry.metadata is not None else None,
        created_at=_to_storage(entry.created_at),
        updated_at=_to_storage(entry.updated_at),
        last_synced_at=_to_storage(entry.last_synced_at) if entry.last_synced_at is not None else None,
    )


def _row_to_entry(row: FeedEntryDB) -> FeedEntry:
    return FeedEntry.model_validate(
        {
            "entry_id": row.entry_id,
            "source": row.source,
            "title": row.title,
            "content": row.content,
            "excerpt": row.excerpt,
            "published_at": as_utc(row.published_at),
            "category": row.category,
            "library_ids": row.library_ids,
            "partner_ids": row.partner_ids,
            "tags": row.tags,
            "is_visible": row.is_visible,
            "featured": row.featured,
            "auto_synced": row.auto_synced,
            "metadata": row.entry_metadata,
            "created_at": as_utc(row.created_at),
            "updated_at": as_utc(row.updated_at),
            "last_synced_at": as_utc(row.last_synced_at) if row.last_synced_at is not None else None,
        }
    )
