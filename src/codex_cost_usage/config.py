"""Scan configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path

from cost_usage_internal.paths import get_archived_sessions_root, get_default_cache_root, get_default_sessions_root

DEFAULT_REFRESH_MIN_INTERVAL_SECONDS = 60.0
DEFAULT_PROVIDER = "codex"


@dataclass(frozen=True)
class ScanOptions:
    """Configuration for one provider's scan passes.

    Attributes:
        sessions_root: Root of the session logs. `None` resolves `$CODEX_HOME/sessions`
            or `~/.codex/sessions`.
        include_archived: Also scan the sibling `archived_sessions` directory.
        cache_root: Directory holding the persisted cache. `None` uses the XDG cache dir.
        refresh_min_interval_seconds: Minimum time between scan passes; `0` scans every time.
        force_rescan: Discard the cache and rebuild it regardless of the refresh interval.
        timezone: Zone used to bucket events into days; `None` is the local system zone.
        provider: Provider name used for the cache file.
    """

    sessions_root: Path | None = None
    include_archived: bool = True
    cache_root: Path | None = None
    refresh_min_interval_seconds: float = DEFAULT_REFRESH_MIN_INTERVAL_SECONDS
    force_rescan: bool = False
    timezone: tzinfo | None = None
    provider: str = DEFAULT_PROVIDER

    def resolved_sessions_roots(self) -> list[Path]:
        """Return the roots to scan, primary root first."""
        root = self.sessions_root.expanduser() if self.sessions_root is not None else get_default_sessions_root()
        roots = [root]
        if self.include_archived:
            archived = get_archived_sessions_root(root)
            if archived is not None:
                roots.append(archived)
        return roots

    def resolved_cache_root(self) -> Path:
        """Return the cache root directory."""
        return self.cache_root.expanduser() if self.cache_root is not None else get_default_cache_root()

    @property
    def timezone_name(self) -> str | None:
        """Return a stable name for the configured zone; `None` for the local system zone."""
        if self.timezone is None:
            return None
        key = getattr(self.timezone, "key", None)
        return key if isinstance(key, str) else str(self.timezone)
