"""npm registry and downloads API client."""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from urllib.parse import quote

from loguru import logger

from ossstats.clients.http import RequestContext, fetch_json
from ossstats.errors import UpstreamNotFound, UpstreamUnavailable
from ossstats.models.stats import DailyDownloads

if TYPE_CHECKING:
    import httpx

    from ossstats.settings import Settings


def _encode_package(name: str) -> str:
    # Scoped names keep their slash; the registry expects "@scope/name" or "@scope%2Fname"
    return quote(name, safe="@/")


class NpmClient:
    """Thin async wrapper over the registry and the downloads-range API."""

    def __init__(self, client: httpx.AsyncClient, ctx: RequestContext, settings: Settings) -> None:
        self.client = client
        self.ctx = ctx
        self.registry_url = settings.npm_registry_url.rstrip("/")
        self.api_url = settings.npm_api_url.rstrip("/")
        self.default_start = settings.npm_stats_start_date

    async def list_org_packages(self, org: str) -> list[str]:
        """All package names published under an org scope, sorted."""

        url = f"{self.registry_url}/-/org/{quote(org)}/package"
        payload = await fetch_json(self.client, self.ctx, url)
        if not isinstance(payload, dict):
            raise UpstreamUnavailable(url, detail="unexpected org listing shape")
        return sorted(payload)

    async def fetch_created_date(self, package_name: str) -> date:
        """Publication date of a package, clamped to the start of npm download history.

        A failed lookup raises: chunk ranges start at this date, so guessing it would
        cache the same history again under different keys.
        """

        url = f"{self.registry_url}/{_encode_package(package_name)}"
        payload = await fetch_json(self.client, self.ctx, url)

        times = payload.get("time") if isinstance(payload, dict) else None
        created = times.get("created") if isinstance(times, dict) else None
        if not isinstance(created, str):
            logger.debug("No creation time in registry metadata for {}", package_name)
            return self.default_start
        try:
            created_day = datetime.fromisoformat(created.replace("Z", "+00:00")).date()
        except ValueError:
            return self.default_start
        return max(created_day, self.default_start)

    async def fetch_download_range(self, package_name: str, start: date, end: date) -> list[DailyDownloads]:
        """Daily download points for ``[start, end]`` from ``/downloads/range``."""

        url = f"{self.api_url}/downloads/range/{start.isoformat()}:{end.isoformat()}/{_encode_package(package_name)}"
        payload = await fetch_json(self.client, self.ctx, url)
        if not isinstance(payload, dict):
            raise UpstreamUnavailable(url, detail="unexpected range payload")
        if "error" in payload and "downloads" not in payload:
            message = str(payload["error"])
            if "not found" in message.lower():
                raise UpstreamNotFound(url)
            raise UpstreamUnavailable(url, detail=message)
        return [DailyDownloads.model_validate(point) for point in payload.get("downloads") or []]
