"""Shared path utilities for codex-cost-usage."""

from __future__ import annotations

import os
from pathlib import Path

APP_DIRECTORY_NAME = "codex-cost-usage"


def get_default_cache_root() -> Path:
    """Return the default scan cache root following XDG cache directory conventions."""
    xdg_cache_home = os.environ.get("XDG_CACHE_HOME")
    if xdg_cache_home:
        base_cache_dir = Path(xdg_cache_home).expanduser()
    else:
        base_cache_dir = Path("~/.cache").expanduser()
    return base_cache_dir / APP_DIRECTORY_NAME


def get_default_price_cache_path() -> Path:
    """Return the default price cache path inside the cache root."""
    return get_default_cache_root() / "price_cache.json"


def get_default_sessions_root() -> Path:
    """Return `$CODEX_HOME/sessions` when CODEX_HOME is set, else `~/.codex/sessions`."""
    codex_home = os.environ.get("CODEX_HOME", "").strip()
    if codex_home:
        return Path(codex_home).expanduser() / "sessions"
    return Path("~/.codex/sessions").expanduser()


def get_archived_sessions_root(sessions_root: Path) -> Path | None:
    """Return the sibling `archived_sessions` directory of a root named `sessions`."""
    if sessions_root.name != "sessions":
        return None
    return sessions_root.parent / "archived_sessions"
