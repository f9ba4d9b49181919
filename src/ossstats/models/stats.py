"""Stats models for npm downloads and GitHub metrics."""

from __future__ import annotations

from datetime import date, datetime  # noqa: TC003
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ossstats.errors import UpstreamNotFound, UpstreamUnavailable

StatsSource = Literal["npm", "github"]
StatsScope = Literal["org", "library", "repo", "package"]
BinSize = Literal["daily"]

MS_PER_DAY = 86_400_000


def interpolate_count(base_count: int, rate_per_day: float, updated_at: datetime, now: datetime) -> float:
    """Estimate the live value of a counter from its last snapshot and growth rate."""

    elapsed_ms = (now - updated_at).total_seconds() * 1000
    return base_count + rate_per_day / MS_PER_DAY * elapsed_ms


class DailyDownloads(BaseModel):
    """One ``(day, downloads)`` point."""

    day: date
    downloads: int = Field(ge=0)


class ChunkKey(BaseModel):
    """Composite key of a cached download chunk."""

    model_config = ConfigDict(frozen=True)

    package_name: str
    date_from: date
    date_to: date
    bin_size: BinSize = "daily"

    @property
    def storage_id(self) -> str:
        return f"{self.package_name}|{self.date_from.isoformat()}|{self.date_to.isoformat()}|{self.bin_size}"


class NpmDownloadChunk(BaseModel):
    """Cached contiguous range of daily download counts for one package."""

    package_name: str
    date_from: date
    date_to: date
    bin_size: BinSize = "daily"
    downloads: list[DailyDownloads] = Field(default_factory=list)
    total_downloads: int = Field(default=0, ge=0)
    is_immutable: bool = False
    updated_at: datetime

    @property
    def key(self) -> ChunkKey:
        return ChunkKey(
            package_name=self.package_name,
            date_from=self.date_from,
            date_to=self.date_to,
            bin_size=self.bin_size,
        )


class NpmPackageStats(BaseModel):
    name: str
    library_id: str | None = None
    total_downloads: int = Field(default=0, ge=0)
    rate_per_day: float = 0.0
    created_at: date | None = None
    updated_at: datetime


class NpmLibraryStats(BaseModel):
    """Download rollup over the registered packages of one library."""

    library_id: str
    total_downloads: int = Field(default=0, ge=0)
    rate_per_day: float = 0.0
    package_count: int = Field(default=0, ge=0)
    packages: list[str] = Field(default_factory=list)
    previous_total_downloads: int | None = None
    updated_at: datetime

    def interpolated(self, now: datetime) -> float:
        return interpolate_count(self.total_downloads, self.rate_per_day, self.updated_at, now)


class NpmOrgStats(BaseModel):
    """Download rollup over every package of an org, with per-package detail."""

    org: str
    total_downloads: int = Field(default=0, ge=0)
    rate_per_day: float = 0.0
    package_count: int = Field(default=0, ge=0)
    package_stats: dict[str, NpmPackageStats] = Field(default_factory=dict)
    updated_at: datetime

    def interpolated(self, now: datetime) -> float:
        return interpolate_count(self.total_downloads, self.rate_per_day, self.updated_at, now)


class GitHubStats(BaseModel):
    """Repository or org-level GitHub metrics. ``key`` is ``owner/repo`` or ``org:<org>``."""

    key: str
    star_count: int = Field(default=0, ge=0)
    contributor_count: int = Field(default=0, ge=0)
    dependent_count: int | None = None
    fork_count: int | None = None
    repository_count: int | None = None
    updated_at: datetime


class StatsRecord(BaseModel):
    """Persisted envelope for an aggregate stats row."""

    source: StatsSource
    scope: StatsScope
    key: str
    payload: dict
    previous_payload: dict | None = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime


class RefreshError(BaseModel):
    """Per-item failure collected during a refresh run."""

    item: str
    kind: Literal["unavailable", "not_found", "error"]
    error: str
    status_code: int | None = None

    @classmethod
    def from_exception(cls, item: str, exc: Exception) -> RefreshError:
        if isinstance(exc, UpstreamNotFound):
            return cls(item=item, kind="not_found", error=str(exc), status_code=404)
        if isinstance(exc, UpstreamUnavailable):
            return cls(item=item, kind="unavailable", error=str(exc), status_code=exc.status_code)
        return cls(item=item, kind="error", error=f"{type(exc).__name__}: {exc}")


class NpmRefreshResult(BaseModel):
    org_stats: NpmOrgStats | None = None
    library_results: list[NpmLibraryStats] = Field(default_factory=list)
    library_errors: list[RefreshError] = Field(default_factory=list)
    duration_ms: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.org_stats is not None and not self.library_errors


class GitHubRefreshResult(BaseModel):
    org_stats: GitHubStats | None = None
    library_results: list[GitHubStats] = Field(default_factory=list)
    library_errors: list[RefreshError] = Field(default_factory=list)
    duration_ms: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.org_stats is not None and not self.library_errors


class StatsDelta(BaseModel):
    star_count: int = 0
    contributor_count: int = 0
    dependent_count: int = 0
    fork_count: int = 0
    time_delta_ms: int = Field(default=3_600_000, description="Span the delta was measured over")


class NpmSummary(BaseModel):
    total_downloads: int = 0
    rate_per_day: float = 0.0
    package_count: int = 0
    previous_total_downloads: int | None = None
    updated_at: datetime | None = None


class OSSStats(BaseModel):
    """Read-path view combining GitHub and npm numbers for an org or library."""

    github: GitHubStats | None = None
    github_delta: StatsDelta | None = None
    npm: NpmSummary = Field(default_factory=NpmSummary)
    is_stale: bool = False


class RecentDownloadStats(BaseModel):
    daily_downloads: int = 0
    weekly_downloads: int = 0
    monthly_downloads: int = 0
    as_of: date | None = None
    packages: list[str] = Field(default_factory=list)
