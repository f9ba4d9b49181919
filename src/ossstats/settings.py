"""Runtime settings."""

from __future__ import annotations

from datetime import date
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="OSSSTATS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_path: Path = Path("./data/ossstats.db")
    org: str = "tanstack"
    libraries_file: Path | None = None

    rate_limit_per_second: float = Field(default=20.0, gt=0)
    request_timeout: float = Field(default=15.0, ge=1, le=120)
    max_connections: int = Field(default=20, ge=1, le=200)

    npm_registry_url: str = "https://registry.npmjs.org"
    npm_api_url: str = "https://api.npmjs.org"
    npm_concurrency: int = Field(default=8, ge=1, le=64)
    npm_dispatch_delay: float = Field(default=0.5, ge=0.0, le=60.0)
    npm_chunk_days: int = Field(default=510, ge=1, le=540)
    npm_stats_start_date: date = date(2015, 1, 10)

    github_token: SecretStr | None = None
    github_api_url: str = "https://api.github.com"
    github_web_url: str = "https://github.com"
    github_request_delay: float = Field(default=0.5, ge=0.0, le=60.0)
    github_scrape_concurrency: int = Field(default=4, ge=1, le=32)
    github_scrape_counters: bool = True

    stats_ttl_hours: float = Field(default=6.0, gt=0, le=24 * 7)
    release_sync_days_back: int = Field(default=2, ge=1, le=3650)

    blog_source: str | None = None
    site_url: str = "https://tanstack.com"
    excerpt_max_length: int = Field(default=200, ge=20, le=2000)

    block_window: int = Field(default=200, ge=10, le=5000)
