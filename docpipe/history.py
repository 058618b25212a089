"""
Job History

Completed jobs are recorded in outputs/.history.json, newest first and
capped at Settings.history_limit entries. Entries point at output files
through their /api/files URLs; loading drops references to files that
no longer exist and entries left with none.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from .config import Settings
from .job import now_iso

logger = logging.getLogger(__name__)

HISTORY_FILENAME = ".history.json"
FILES_ROUTE = "/api/files"


def history_path(settings: Settings) -> Path:
    return settings.outputs_dir / HISTORY_FILENAME


def file_url(relative_path: str) -> str:
    """URL under which the transport serves a storage-relative path."""
    return f"{FILES_ROUTE}?path={relative_path}"


def resolve_url(settings: Settings, url: str) -> Path | None:
    """Map a /api/files URL (or a bare storage-relative path) to a file path."""
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.query:
        values = parse_qs(parsed.query).get("path")
        if not values:
            return None
        relative = values[0]
    else:
        relative = parsed.path
    return storage_path(settings, relative)


def storage_path(settings: Settings, relative: str) -> Path | None:
    """Resolve a storage-relative path, refusing anything outside the root."""
    relative = relative.lstrip("/")
    if not relative:
        return None
    root = settings.storage_root.resolve()
    path = (root / relative).resolve()
    if path != root and root not in path.parents:
        logger.warning(f"[History] Rejected path outside storage: {relative}")
        return None
    return path


def _read(settings: Settings) -> list[dict[str, Any]]:
    path = history_path(settings)
    if not path.exists():
        return []
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list")
    return data


def _write(settings: Settings, history: list[dict[str, Any]]) -> None:
    path = history_path(settings)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w") as f:
        json.dump(history, f, indent=2)
    tmp.replace(path)


def _prune(settings: Settings, item: dict[str, Any]) -> dict[str, Any] | None:
    """Drop missing outputs from an entry; None if nothing is left."""
    item = dict(item)
    has_file = False

    for key in ("markdownUrl", "pdfUrl"):
        url = item.get(key)
        if not url:
            continue
        path = resolve_url(settings, url)
        if path is not None and path.exists():
            has_file = True
        else:
            item.pop(key)

    images = item.get("images") or []
    if images:
        valid = [url for url in images if (p := resolve_url(settings, url)) and p.exists()]
        if valid:
            item["images"] = valid
            item["imageCount"] = len(valid)
            has_file = True
        else:
            item.pop("images", None)
            item.pop("imageCount", None)

    return item if has_file else None


def load_history(settings: Settings) -> list[dict[str, Any]]:
    """Load history, rewriting the file if stale entries were removed."""
    history = _read(settings)
    valid = [item for item in (_prune(settings, i) for i in history) if item is not None]
    if valid != history:
        logger.info(f"[History] Pruned {len(history) - len(valid)} stale entr(ies)")
        _write(settings, valid)
    return valid


def add_entry(settings: Settings, item: dict[str, Any]) -> dict[str, Any]:
    """Prepend an entry, assigning it an id and timestamp.

    Args:
        settings: Storage location and history limit
        item: Entry fields (mode, markdownUrl, pdfUrl, images, ...)

    Returns:
        The stored entry
    """
    entry = {
        **item,
        "id": f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}",
        "timestamp": now_iso(),
    }
    history = _read(settings)
    history.insert(0, entry)
    _write(settings, history[: settings.history_limit])
    return entry


def delete_entry(settings: Settings, entry_id: str) -> bool:
    """Remove one entry. Returns False if no entry had that id."""
    history = _read(settings)
    remaining = [item for item in history if item.get("id") != entry_id]
    if len(remaining) == len(history):
        return False
    _write(settings, remaining)
    return True


def clear_history(settings: Settings) -> None:
    _write(settings, [])


def existing_files(settings: Settings, files: list[str]) -> list[str]:
    """Subset of the given URLs/paths that still exist in storage."""
    return [f for f in files if (p := resolve_url(settings, f)) is not None and p.is_file()]
