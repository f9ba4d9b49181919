"""Feed dumps and blog exports as JSON Lines."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from ossstats.models.feed import FeedEntry


def export_feed_entries(path: Path, entries: Iterable[FeedEntry]) -> int:
    """Write one serialized entry per line, replacing ``path`` atomically.

    Returns the number of entries written. A failed export leaves any previous
    dump at ``path`` untouched.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    written = 0
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            for entry in entries:
                f.write(entry.model_dump_json())
                f.write("\n")
                written += 1
        Path(tmp_name).replace(path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return written


def iter_jsonl_rows(path: Path) -> Iterator[tuple[str, dict[str, Any] | str]]:
    """Yield ``(location, row)`` for every non-blank line of ``path``.

    ``location`` is ``<file name>:<line number>``. Lines that are not a JSON
    object yield a problem description instead of a row, so callers can report
    them rather than lose them silently.
    """

    with path.open(encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            text = line.strip()
            if not text:
                continue
            location = f"{path.name}:{lineno}"
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                yield location, f"malformed JSON: {exc.msg}"
                continue
            if not isinstance(parsed, dict):
                yield location, f"expected a JSON object, got {type(parsed).__name__}"
                continue
            yield location, parsed
