"""Parsing and normalization helpers."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from decimal import Decimal
from typing import Literal

_COMPACT_NUMBER_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*([KMB])?\+?\s*$", re.IGNORECASE)
_PRERELEASE_RE = re.compile(r"-|alpha|beta|rc", re.IGNORECASE)

ReleaseType = Literal["major", "minor", "patch"]


def split_repo(repo: str) -> tuple[str, str] | None:
    """Split ``owner/name`` into a lowercase pair, or None when malformed."""
    parts = repo.strip().split("/")
    if len(parts) != 2:
        return None
    owner = parts[0].strip().lower()
    name = parts[1].strip().lower()
    if not owner or not name:
        return None
    return owner, name


def parse_compact_number(value: str | int | None) -> int | None:
    """Parse number strings such as ``1,234`` or ``1.2k`` into integers."""

    if value is None:
        return None
    if isinstance(value, int):
        return value

    text = value.strip().replace(",", "")
    if text.isdigit():
        return int(text)

    match = _COMPACT_NUMBER_RE.match(text)
    if not match:
        return None

    number = Decimal(match.group(1))
    suffix = (match.group(2) or "").upper()

    if suffix == "K":
        number *= 1_000
    elif suffix == "M":
        number *= 1_000_000
    elif suffix == "B":
        number *= 1_000_000_000

    return int(number)


def parse_version(tag: str) -> tuple[str, ReleaseType, bool]:
    """Classify a release tag as ``(version, release_type, is_prerelease)``.

    Tags may carry a package prefix (``@tanstack/react-query@5.0.0``) or a leading ``v``.
    ``x.0.0`` is major, ``x.y.0`` minor, anything else patch.
    """

    version = tag.rsplit("@", 1)[-1] if "@" in tag[1:] else tag
    version = version.removeprefix("v").removeprefix("V")
    is_prerelease = bool(_PRERELEASE_RE.search(version))

    core = version.split("-", 1)[0].split("+", 1)[0]
    parts = core.split(".")
    if len(parts) < 2:
        return version, "patch", is_prerelease

    try:
        major = int(parts[0])
        minor = int(parts[1])
        patch = int(parts[2]) if len(parts) > 2 else 0
    except ValueError:
        return version, "patch", is_prerelease

    if major > 0 and minor == 0 and patch == 0:
        return version, "major", is_prerelease
    if minor > 0 and patch == 0:
        return version, "minor", is_prerelease
    return version, "patch", is_prerelease


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into an aware UTC datetime."""

    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
