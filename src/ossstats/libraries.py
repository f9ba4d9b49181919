"""Tracked library registry and package-to-library resolution."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from loguru import logger

from ossstats.models.library import Library

if TYPE_CHECKING:
    from pathlib import Path

DEFAULT_LIBRARIES: tuple[Library, ...] = (
    Library(id="query", name="TanStack Query", repo="tanstack/query", legacy_packages=("react-query",)),
    Library(id="router", name="TanStack Router", repo="tanstack/router", package_aliases=("@tanstack/history",)),
    Library(id="start", name="TanStack Start", repo="tanstack/router", core_package="@tanstack/start-client-core"),
    Library(id="table", name="TanStack Table", repo="tanstack/table", legacy_packages=("react-table",)),
    Library(id="form", name="TanStack Form", repo="tanstack/form"),
    Library(id="virtual", name="TanStack Virtual", repo="tanstack/virtual", legacy_packages=("react-virtual",)),
    Library(id="ranger", name="TanStack Ranger", repo="tanstack/ranger", legacy_packages=("react-ranger",)),
    Library(id="store", name="TanStack Store", repo="tanstack/store"),
    Library(id="pacer", name="TanStack Pacer", repo="tanstack/pacer"),
    Library(id="db", name="TanStack DB", repo="tanstack/db"),
    Library(id="devtools", name="TanStack Devtools", repo="tanstack/devtools"),
    Library(id="config", name="TanStack Config", repo="tanstack/config", package_aliases=("@tanstack/vite-config",)),
    Library(
        id="react-charts",
        name="React Charts",
        repo="tanstack/react-charts",
        legacy_packages=("react-charts",),
    ),
    Library(
        id="create-tsrouter-app",
        name="Create TS Router App",
        repo="tanstack/create-tsrouter-app",
        legacy_packages=("create-tsrouter-app",),
        package_aliases=("@tanstack/create-router", "@tanstack/create-start"),
    ),
)


def load_libraries(path: Path | None = None) -> list[Library]:
    """Load the tracked library registry from a JSON file, or return the built-in list."""

    if path is None:
        return list(DEFAULT_LIBRARIES)
    rows = json.loads(path.read_text())
    if not isinstance(rows, list):
        raise TypeError(f"Expected a JSON array of libraries in {path}")
    libraries = [Library.model_validate(row) for row in rows]
    logger.info("Loaded {} libraries from {}", len(libraries), path)
    return libraries


def get_library(libraries: list[Library], library_id: str) -> Library | None:
    for library in libraries:
        if library.id == library_id:
            return library
    return None


def resolve_library_id(package_name: str, org: str, libraries: list[Library]) -> str | None:
    """Map an npm package name onto the id of the library it belongs to.

    Exact legacy/alias matches win over naming patterns; patterns cover
    ``@org/<id>``, ``@org/<framework>-<id>``, ``@org/<id>-core`` and
    ``@org/<framework>-<id>-devtools``.
    """

    for library in libraries:
        if package_name in library.legacy_packages or package_name in library.package_aliases:
            return library.id
        if library.core_package == package_name:
            return library.id

    scope = f"@{org}/"
    if not package_name.startswith(scope):
        return None
    bare = package_name[len(scope) :]

    # Registry order decides ties such as @org/react-query-devtools
    for library in libraries:
        lib_id = library.id
        if bare == lib_id or bare.startswith(f"{lib_id}-") or bare.endswith(f"-{lib_id}") or f"-{lib_id}-" in bare:
            return lib_id
    return None


def library_for_repo(repo: str, libraries: list[Library]) -> Library | None:
    """Return the first tracked library whose repository matches ``owner/name``."""

    target = repo.lower()
    for library in libraries:
        if library.repo and library.repo.lower() == target:
            return library
    return None


def tracked_repos(libraries: list[Library]) -> list[str]:
    """Distinct tracked repositories, in registry order."""

    seen: dict[str, None] = {}
    for library in libraries:
        if library.tracked and library.repo:
            seen.setdefault(library.repo.lower(), None)
    return list(seen)
