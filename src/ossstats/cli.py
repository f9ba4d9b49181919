"""ossstats CLI."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from ossstats import __version__
from ossstats.errors import NoCachedData, RateLimited, ValidationError
from ossstats.feed.entries import create_manual_entry, delete_feed_entry
from ossstats.libraries import get_library, load_libraries
from ossstats.models.feed import FeedFilters
from ossstats.pipeline.jobs import run_blog_sync, run_feed_sync, run_release_sync, run_stats_refresh
from ossstats.query import fetch_recent_download_stats, get_feed_facet_counts, get_oss_stats, list_feed_entries
from ossstats.ratelimit import RateLimiter
from ossstats.settings import Settings
from ossstats.storage.cache import CacheStore
from ossstats.storage.jsonl import export_feed_entries

app = typer.Typer(help="Cached npm / GitHub stats and the unified content feed")
console = Console()


def _settings_from_args(database_path: Path | None = None, org: str | None = None) -> Settings:
    settings = Settings()
    if database_path is not None:
        settings.database_path = database_path
    if org is not None:
        settings.org = org
    return settings


def _print_summary(summary: dict[str, Any]) -> None:
    console.print_json(json.dumps(summary, default=str))
    if summary.get("success") is False:
        raise typer.Exit(code=1)


@app.command("version")
def version() -> None:
    """Print the installed version."""
    console.print(__version__)


@app.command("refresh-stats")
def refresh_stats(
    database_path: Path | None = typer.Option(None, "--database-path"),
    org: str | None = typer.Option(None, "--org"),
) -> None:
    """Refresh npm and GitHub stats into the cache."""
    settings = _settings_from_args(database_path, org)
    _print_summary(asyncio.run(run_stats_refresh(settings)))


@app.command("sync-releases")
def sync_releases(
    database_path: Path | None = typer.Option(None, "--database-path"),
    days_back: int | None = typer.Option(None, "--days-back", help="0 syncs every release; default uses the watermark"),
) -> None:
    """Sync GitHub releases into the feed."""
    settings = _settings_from_args(database_path)
    _print_summary(asyncio.run(run_release_sync(settings, days_back)))


@app.command("sync-blog")
def sync_blog(database_path: Path | None = typer.Option(None, "--database-path")) -> None:
    """Sync blog posts into the feed."""
    settings = _settings_from_args(database_path)
    _print_summary(asyncio.run(run_blog_sync(settings)))


@app.command("sync-all")
def sync_all(
    database_path: Path | None = typer.Option(None, "--database-path"),
    days_back: int | None = typer.Option(None, "--days-back"),
) -> None:
    """Sync releases and blog posts."""
    settings = _settings_from_args(database_path)
    _print_summary(asyncio.run(run_feed_sync(settings, days_back)))


@app.command("stats")
def stats(
    database_path: Path | None = typer.Option(None, "--database-path"),
    org: str | None = typer.Option(None, "--org"),
    library_id: str | None = typer.Option(None, "--library"),
) -> None:
    """Show cached stats for the org or one library."""

    settings = _settings_from_args(database_path, org)
    library = None
    if library_id is not None:
        library = get_library(load_libraries(settings.libraries_file), library_id)
        if library is None:
            raise typer.BadParameter(f"Unknown library: {library_id}")

    store = CacheStore.from_settings(settings)
    try:
        result = get_oss_stats(store, org=settings.org, library=library)
    except NoCachedData as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()

    table = Table(title=f"Stats for {library_id or settings.org}" + (" (stale)" if result.is_stale else ""))
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    if result.github is not None:
        table.add_row("Stars", f"{result.github.star_count:,}")
        table.add_row("Contributors", f"{result.github.contributor_count:,}")
        if result.github.dependent_count is not None:
            table.add_row("Dependents", f"{result.github.dependent_count:,}")
        if result.github.fork_count is not None:
            table.add_row("Forks", f"{result.github.fork_count:,}")
    table.add_row("npm downloads", f"{result.npm.total_downloads:,}")
    table.add_row("npm downloads/day", f"{result.npm.rate_per_day:,.0f}")
    table.add_row("npm packages", str(result.npm.package_count))
    console.print(table)


@app.command("downloads")
def downloads(
    packages: list[str] = typer.Argument(..., help="npm package names"),
    database_path: Path | None = typer.Option(None, "--database-path"),
) -> None:
    """Recent daily, weekly and monthly downloads from cached chunks."""

    store = CacheStore.from_settings(_settings_from_args(database_path))
    try:
        result = fetch_recent_download_stats(store, packages)
    finally:
        store.close()
    console.print(
        f"daily={result.daily_downloads:,} weekly={result.weekly_downloads:,} "
        f"monthly={result.monthly_downloads:,} as_of={result.as_of}"
    )


@app.command("feed")
def feed(
    database_path: Path | None = typer.Option(None, "--database-path"),
    library: list[str] | None = typer.Option(None, "--library"),
    source: list[str] | None = typer.Option(None, "--source"),
    search: str | None = typer.Option(None, "--search"),
    include_hidden: bool = typer.Option(False, "--include-hidden"),
    limit: int = typer.Option(20, "--limit", min=1, max=200),
    page: int = typer.Option(0, "--page", min=0),
    facets: bool = typer.Option(False, "--facets"),
) -> None:
    """List feed entries, newest first."""

    filters = FeedFilters.model_validate(
        {"library_ids": library or None, "sources": source or None, "search": search, "include_hidden": include_hidden}
    )
    store = CacheStore.from_settings(_settings_from_args(database_path))
    try:
        result = list_feed_entries(store, filters, limit=limit, page=page)
        facet_counts = get_feed_facet_counts(store, filters) if facets else None
    finally:
        store.close()

    table = Table(title=f"Feed page {page + 1}/{max(result.pages, 1)} ({result.total} entries)")
    table.add_column("Published")
    table.add_column("Entry")
    table.add_column("Title")
    table.add_column("Libraries")
    for entry in result.page:
        table.add_row(
            entry.published_at.strftime("%Y-%m-%d %H:%M"),
            entry.entry_id,
            entry.title + (" *" if entry.featured else ""),
            ", ".join(entry.library_ids),
        )
    console.print(table)
    if facet_counts is not None:
        console.print_json(facet_counts.model_dump_json())


@app.command("export-feed")
def export_feed(
    output: Path = typer.Argument(..., help="Destination JSONL file"),
    database_path: Path | None = typer.Option(None, "--database-path"),
) -> None:
    """Write every feed entry, hidden ones included, to JSONL."""

    store = CacheStore.from_settings(_settings_from_args(database_path))
    try:
        entries = store.list_entries(include_hidden=True)
    finally:
        store.close()
    written = export_feed_entries(output, entries)
    console.print(f"exported {written} entries to {output}")


@app.command("add-announcement")
def add_announcement(
    title: str = typer.Option(..., "--title"),
    content: str = typer.Option(..., "--content"),
    library: list[str] = typer.Option(..., "--library"),
    category: str = typer.Option("announcement", "--category"),
    published_at: datetime | None = typer.Option(None, "--published-at"),
    excerpt: str | None = typer.Option(None, "--excerpt"),
    featured: bool = typer.Option(False, "--featured"),
    database_path: Path | None = typer.Option(None, "--database-path"),
) -> None:
    """Create a hand-authored feed entry."""

    draft = {
        "title": title,
        "content": content,
        "library_ids": library,
        "category": category,
        "published_at": published_at or datetime.now(UTC),
        "excerpt": excerpt,
        "featured": featured,
    }
    store = CacheStore.from_settings(_settings_from_args(database_path))
    try:
        entry = create_manual_entry(store, draft)
    except ValidationError as exc:
        for problem in exc.problems:
            console.print(f"[red]{problem}[/red]")
        raise typer.Exit(code=2) from exc
    finally:
        store.close()
    console.print(f"created {entry.entry_id}")


@app.command("remove-entry")
def remove_entry(
    entry_id: str = typer.Argument(...),
    database_path: Path | None = typer.Option(None, "--database-path"),
) -> None:
    """Delete a manual entry, or hide a synced one."""

    store = CacheStore.from_settings(_settings_from_args(database_path))
    try:
        outcome = delete_feed_entry(store, entry_id)
    except ValidationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    finally:
        store.close()
    console.print(f"{outcome} {entry_id}")


@app.command("check-rate-limit")
def check_rate_limit(
    identifier: str = typer.Argument(..., help="Caller identity, e.g. an IP address"),
    scope: str = typer.Option("template", "--scope"),
    limit: int | None = typer.Option(None, "--limit"),
    database_path: Path | None = typer.Option(None, "--database-path"),
) -> None:
    """Count one hit against a rate limit window."""

    store = CacheStore.from_settings(_settings_from_args(database_path))
    try:
        result = RateLimiter(store).enforce(identifier, scope, limit)
    except RateLimited as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()
    console.print(f"allowed remaining={result.remaining} reset_at={result.reset_at.isoformat()}")


@app.command("serve")
def serve() -> None:
    """Run the scheduled flows on their cron cadences."""
    from ossstats.pipeline.schedule import serve_schedules

    serve_schedules()


if __name__ == "__main__":
    app()
