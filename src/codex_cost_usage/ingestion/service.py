"""Service orchestration for incremental Codex session scanning."""

from __future__ import annotations

import hashlib
import logging
import time
from datetime import datetime
from pathlib import Path

from ..config import ScanOptions
from ..daykeys import DayRange
from .aggregates import (
    apply_contribution,
    install_record,
    merge_context_days,
    merge_day_model_usage,
    prune_to_range,
    retract_record,
    totals_match_records,
)
from .discovery import discover_session_files
from .errors import FileAccessError
from .parser import parse_session_log
from .repository import CacheRepository
from .schemas import FileScanRecord, FileStat, ScanCache, ScanCounters, ScanOutcome, ScanState

LOGGER = logging.getLogger(__name__)
RESUME_ANCHOR_BYTES = 4096


class ScanService:
    """Coordinates discovery, per-file scan decisions, cache maintenance, and persistence.

    Passes over the same cache must not run concurrently; callers serialize them.
    """

    def __init__(self, repository: CacheRepository, options: ScanOptions | None = None) -> None:
        self._repository = repository
        self._options = options or ScanOptions()

    @property
    def options(self) -> ScanOptions:
        """Return the scan options."""
        return self._options

    def scan(self, day_range: DayRange, now: datetime | None = None) -> ScanOutcome:
        """Run one scan pass over the padded window and return the updated cache.

        The pass is skipped, and the persisted cache returned as-is, while the minimum
        refresh interval has not elapsed.
        """
        cache = self._repository.load()
        now_ms = _to_unix_ms(now)
        counters = ScanCounters()

        compatible = self._cache_is_compatible(cache, day_range)
        if compatible and not self._should_refresh(cache, now_ms):
            counters.pass_skipped = True
            LOGGER.debug("Skipping scan pass; last scan at %d ms.", cache.last_scan_ms)
            return ScanOutcome(cache=cache, counters=counters)

        if self._options.force_rescan or not compatible:
            LOGGER.info("Rebuilding %s scan cache from scratch.", self._options.provider)
            cache = ScanCache()

        files = discover_session_files(
            self._options.resolved_sessions_roots(),
            day_range.scan_since_key,
            day_range.scan_until_key,
        )
        state = ScanState()
        for session_file_path in files:
            counters.files_scanned += 1
            try:
                self._scan_file(session_file_path, day_range, cache, state, counters)
            except FileAccessError as exc:
                counters.files_failed += 1
                counters.failed_files.append(str(session_file_path))
                LOGGER.warning("Skipping unreadable session file %s: %s", session_file_path, exc)

        candidate_paths = {str(path) for path in files}
        for stale_path in [path for path in cache.files if path not in candidate_paths]:
            retract_record(cache, stale_path)
            counters.files_retracted_stale += 1

        prune_to_range(cache, day_range.scan_since_key, day_range.scan_until_key)
        cache.last_scan_ms = now_ms
        cache.timezone = self._options.timezone_name
        cache.scan_since_key = day_range.scan_since_key
        cache.scan_until_key = day_range.scan_until_key
        self._repository.save(cache)

        LOGGER.info(
            "Scanned %d files: %d unchanged, %d incremental, %d full, %d duplicate, %d stale, %d failed.",
            counters.files_scanned,
            counters.files_skipped_unchanged,
            counters.files_parsed_incremental,
            counters.files_parsed_full,
            counters.files_dropped_duplicate,
            counters.files_retracted_stale,
            counters.files_failed,
        )
        return ScanOutcome(cache=cache, counters=counters)

    def _should_refresh(self, cache: ScanCache, now_ms: int) -> bool:
        if self._options.force_rescan:
            return True
        refresh_ms = int(max(0.0, self._options.refresh_min_interval_seconds) * 1000)
        return refresh_ms == 0 or cache.last_scan_ms == 0 or now_ms - cache.last_scan_ms > refresh_ms

    def _cache_is_compatible(self, cache: ScanCache, day_range: DayRange) -> bool:
        if cache.last_scan_ms == 0:
            return True
        if cache.timezone != self._options.timezone_name:
            return False
        # Records only hold days that were inside the window when they were parsed.
        if cache.scan_since_key is None or cache.scan_until_key is None:
            return False
        if day_range.scan_since_key < cache.scan_since_key or day_range.scan_until_key > cache.scan_until_key:
            return False
        if not totals_match_records(cache):
            LOGGER.warning("Scan cache totals do not match its file records; rebuilding.")
            return False
        return True

    def _scan_file(
        self,
        session_file_path: Path,
        day_range: DayRange,
        cache: ScanCache,
        state: ScanState,
        counters: ScanCounters,
    ) -> None:
        file_stat = _build_file_stat(session_file_path)
        path_key = file_stat.path
        cached = cache.files.get(path_key)

        if file_stat.identity is not None and file_stat.identity in state.seen_file_ids:
            retract_record(cache, path_key)
            counters.files_dropped_duplicate += 1
            LOGGER.debug("Dropped %s: same file already counted under another path.", path_key)
            return

        if cached is not None and cached.session_id is not None and cached.session_id in state.seen_session_ids:
            retract_record(cache, path_key)
            counters.files_dropped_duplicate += 1
            LOGGER.debug("Dropped %s: session %s already counted.", path_key, cached.session_id)
            return

        if cached is not None and cached.session_id is not None and _file_stat_matches(cached, file_stat):
            state.mark(cached.session_id, file_stat.identity)
            counters.files_skipped_unchanged += 1
            return

        if cached is not None and _can_resume(session_file_path, cached, file_stat):
            self._resume_file(session_file_path, day_range, cache, cached, file_stat, state, counters)
            return

        parsed = parse_session_log(session_file_path, day_range, timezone=self._options.timezone)
        anchor = compute_resume_anchor(session_file_path, parsed.parsed_bytes)
        retract_record(cache, path_key)

        session_id = parsed.session_id or (cached.session_id if cached is not None else None)
        counters.lines_skipped += parsed.lines_skipped
        if session_id is not None and session_id in state.seen_session_ids:
            counters.files_dropped_duplicate += 1
            LOGGER.debug("Dropped %s after full parse: session %s already counted.", path_key, session_id)
            return

        record = FileScanRecord(
            mtime_ms=file_stat.mtime_ms,
            size=file_stat.size,
            day_model_usage=parsed.day_model_usage,
            context_days=parsed.context_days,
            resume_offset=parsed.parsed_bytes,
            resume_anchor=anchor,
        )
        record.apply_state(parsed.state)
        record.session_id = session_id
        install_record(cache, path_key, record)
        state.mark(session_id, file_stat.identity)
        counters.files_parsed_full += 1

    def _resume_file(
        self,
        session_file_path: Path,
        day_range: DayRange,
        cache: ScanCache,
        cached: FileScanRecord,
        file_stat: FileStat,
        state: ScanState,
        counters: ScanCounters,
    ) -> None:
        start_offset = cached.resume_offset if cached.resume_offset is not None else cached.size
        delta = parse_session_log(
            session_file_path,
            day_range,
            start_offset=start_offset,
            carried=cached.carried_state(),
            timezone=self._options.timezone,
        )
        anchor = compute_resume_anchor(session_file_path, delta.parsed_bytes)
        counters.lines_skipped += delta.lines_skipped

        session_id = delta.session_id
        if session_id is not None and session_id in state.seen_session_ids:
            retract_record(cache, file_stat.path)
            counters.files_dropped_duplicate += 1
            LOGGER.debug("Dropped %s after incremental parse: session %s already counted.", file_stat.path, session_id)
            return

        apply_contribution(cache, delta.day_model_usage, delta.context_days, sign=1)
        merge_day_model_usage(cached.day_model_usage, delta.day_model_usage)
        merge_context_days(cached.context_days, delta.context_days)
        cached.mtime_ms = file_stat.mtime_ms
        cached.size = file_stat.size
        cached.resume_offset = delta.parsed_bytes
        cached.resume_anchor = anchor
        cached.apply_state(delta.state)
        state.mark(session_id, file_stat.identity)
        counters.files_parsed_incremental += 1


def compute_resume_anchor(session_file_path: Path, offset: int) -> str | None:
    """Digest the bytes just before `offset`; a changed digest means the file was rewritten.

    Raises:
        FileAccessError: If the file cannot be read.
    """
    if offset <= 0:
        return None
    start = max(0, offset - RESUME_ANCHOR_BYTES)
    try:
        with session_file_path.open("rb") as handle:
            handle.seek(start)
            data = handle.read(offset - start)
    except OSError as exc:
        raise FileAccessError(f"Failed to read {session_file_path}: {exc}.") from exc
    if len(data) != offset - start:
        return None
    return hashlib.sha256(data).hexdigest()


def _can_resume(session_file_path: Path, cached: FileScanRecord, file_stat: FileStat) -> bool:
    """Return True when only new bytes need parsing."""
    if cached.session_id is None or cached.last_totals is None:
        return False
    start_offset = cached.resume_offset if cached.resume_offset is not None else cached.size
    if not (file_stat.size > cached.size and 0 < start_offset <= file_stat.size):
        return False
    if cached.resume_anchor is None:
        return True
    if compute_resume_anchor(session_file_path, start_offset) != cached.resume_anchor:
        LOGGER.info("Session file %s was rewritten before offset %d; reparsing.", session_file_path, start_offset)
        return False
    return True


def _build_file_stat(session_file_path: Path) -> FileStat:
    """Build file state from filesystem metadata."""
    try:
        stat_result = session_file_path.stat()
    except OSError as exc:
        raise FileAccessError(f"Failed to stat {session_file_path}: {exc}.") from exc
    identity = f"{stat_result.st_dev}:{stat_result.st_ino}" if stat_result.st_ino else None
    return FileStat(
        path=str(session_file_path),
        size=stat_result.st_size,
        mtime_ms=stat_result.st_mtime_ns // 1_000_000,
        identity=identity,
    )


def _file_stat_matches(cached: FileScanRecord, current: FileStat) -> bool:
    """Return True when the cached record matches current size and mtime."""
    return cached.size == current.size and cached.mtime_ms == current.mtime_ms


def _to_unix_ms(now: datetime | None) -> int:
    if now is None:
        return int(time.time() * 1000)
    return int(now.timestamp() * 1000)
