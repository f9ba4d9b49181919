"""Tracked library registry models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Library(BaseModel):
    """One tracked library: its repository and the npm packages that roll up into it.

    ``legacy_packages`` are unscoped names published before the org scope existed
    (e.g. ``react-query``); they are fetched in addition to the org listing.
    ``package_aliases`` are scoped names that do not follow the
    ``@org/<framework>-<id>`` naming pattern but still belong to the library.
    """

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    id: str
    name: str
    repo: str | None = None
    legacy_packages: tuple[str, ...] = ()
    package_aliases: tuple[str, ...] = ()
    core_package: str | None = None
    tracked: bool = Field(default=True, description="Include in per-library stats and release sync")
