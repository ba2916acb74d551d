"""Discovery of Codex session files inside the scan window."""

from __future__ import annotations

import logging
from pathlib import Path

from ..daykeys import DayKey, day_key_from_filename, is_in_range, iter_day_keys

LOGGER = logging.getLogger(__name__)
SESSION_FILE_SUFFIX = ".jsonl"


def discover_session_files(roots: list[Path], scan_since_key: DayKey, scan_until_key: DayKey) -> list[Path]:
    """List candidate session files across roots; each root's files sorted by path, duplicates dropped."""
    seen_paths: set[str] = set()
    files: list[Path] = []
    for root in roots:
        root_files = list_session_files(root, scan_since_key, scan_until_key)
        for path in sorted(root_files, key=str):
            key = str(path)
            if key in seen_paths:
                continue
            seen_paths.add(key)
            files.append(path)
    return files


def list_session_files(root: Path, scan_since_key: DayKey, scan_until_key: DayKey) -> list[Path]:
    """List files from `YYYY/MM/DD` partitions first, then flat files directly under the root."""
    partitioned = _list_partitioned_files(root, scan_since_key, scan_until_key)
    flat = _list_flat_files(root, scan_since_key, scan_until_key)
    seen: set[str] = set()
    files: list[Path] = []
    for path in partitioned + flat:
        if str(path) in seen:
            continue
        seen.add(str(path))
        files.append(path)
    return files


def _list_partitioned_files(root: Path, scan_since_key: DayKey, scan_until_key: DayKey) -> list[Path]:
    if not root.is_dir():
        return []
    files: list[Path] = []
    for key in iter_day_keys(scan_since_key, scan_until_key):
        year, month, day = key.split("-")
        files.extend(_session_files_in(root / year / month / day))
    return files


def _list_flat_files(root: Path, scan_since_key: DayKey, scan_until_key: DayKey) -> list[Path]:
    files: list[Path] = []
    for path in _session_files_in(root):
        file_day = day_key_from_filename(path.name)
        if file_day is not None and not is_in_range(file_day, scan_since_key, scan_until_key):
            continue
        files.append(path)
    return files


def _session_files_in(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    try:
        entries = list(directory.iterdir())
    except OSError as exc:
        LOGGER.warning("Failed to list session directory %s: %s", directory, exc)
        return []
    return [
        entry
        for entry in entries
        if not entry.name.startswith(".") and entry.suffix.lower() == SESSION_FILE_SUFFIX and entry.is_file()
    ]
