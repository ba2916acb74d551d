"""Integration tests for the scan service and the persisted scan cache."""

from __future__ import annotations

import os
import shutil
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

import orjson
import pytest

from codex_cost_usage.config import ScanOptions
from codex_cost_usage.daykeys import DayRange
from codex_cost_usage.ingestion.aggregates import sum_file_records
from codex_cost_usage.ingestion.errors import FileAccessError
from codex_cost_usage.ingestion.repository import CacheRepository
from codex_cost_usage.ingestion.schemas import ScanCache, TokenCounts
from codex_cost_usage.ingestion.service import ScanService

NOW = datetime(2026, 2, 16, 12, 0, tzinfo=UTC)
DAY_RANGE = DayRange.from_dates(date(2026, 2, 14), date(2026, 2, 16), UTC)


def test_scan_is_idempotent_and_persists_identical_bytes(tmp_path: Path) -> None:
    """A second scan without file changes skips the file and rewrites the same document."""
    sessions_root = tmp_path / "sessions"
    _write_jsonl(
        _session_path(sessions_root, "a"),
        [_session_meta_event("s1"), _turn_context_event("gpt-5"), _token_event("2026-02-15T10:00:01Z", 10, 2, 3)],
    )
    service = _service(tmp_path, sessions_root)

    first = service.scan(DAY_RANGE, now=NOW)
    first_bytes = _cache_file(tmp_path).read_bytes()
    second = service.scan(DAY_RANGE, now=NOW)

    assert first.counters.files_parsed_full == 1
    assert second.counters.files_scanned == 1
    assert second.counters.files_skipped_unchanged == 1
    assert second.counters.files_parsed_full == 0
    assert _cache_file(tmp_path).read_bytes() == first_bytes
    assert second.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=10, cached_input=2, output=3)}}


def test_scan_parses_appended_lines_incrementally(tmp_path: Path) -> None:
    """Appended lines are parsed from the resume offset and match a full rebuild."""
    sessions_root = tmp_path / "sessions"
    session_file = _session_path(sessions_root, "a")
    _write_jsonl(
        session_file,
        [_session_meta_event("s1"), _turn_context_event("gpt-5"), _token_event("2026-02-15T10:00:01Z", 10, 2, 3)],
    )
    service = _service(tmp_path, sessions_root)
    service.scan(DAY_RANGE, now=NOW)

    _append_jsonl(
        session_file,
        [
            _turn_context_event("o3", timestamp="2026-02-16T08:00:00Z", approval_policy="never"),
            _token_event("2026-02-16T08:00:01Z", 25, 4, 9, reasoning=2),
        ],
    )
    os.utime(session_file, (session_file.stat().st_atime + 10, session_file.stat().st_mtime + 10))

    incremental = service.scan(DAY_RANGE, now=NOW)
    rebuilt = _service(tmp_path, sessions_root, cache_name="rebuilt").scan(DAY_RANGE, now=NOW)

    assert incremental.counters.files_parsed_incremental == 1
    assert incremental.counters.files_parsed_full == 0
    assert incremental.cache.days == rebuilt.cache.days
    assert incremental.cache.context_days == rebuilt.cache.context_days
    record = incremental.cache.files[str(session_file)]
    rebuilt_record = rebuilt.cache.files[str(session_file)]
    assert record.last_totals == rebuilt_record.last_totals == TokenCounts(25, 4, 9, 2)
    assert record.resume_offset == session_file.stat().st_size
    assert record.resume_anchor == rebuilt_record.resume_anchor
    _assert_additive(incremental.cache)


def test_scan_reparses_shrunk_file_from_start(tmp_path: Path) -> None:
    """A file that got smaller is parsed fully rather than resumed."""
    sessions_root = tmp_path / "sessions"
    session_file = _session_path(sessions_root, "a")
    _write_jsonl(
        session_file,
        [
            _session_meta_event("s1"),
            _token_event("2026-02-15T10:00:01Z", 10, 0, 1),
            _token_event("2026-02-15T10:00:02Z", 50, 0, 5),
        ],
    )
    service = _service(tmp_path, sessions_root)
    service.scan(DAY_RANGE, now=NOW)

    _write_jsonl(session_file, [_session_meta_event("s1"), _token_event("2026-02-15T10:00:01Z", 7, 0, 1)])
    outcome = service.scan(DAY_RANGE, now=NOW)

    assert outcome.counters.files_parsed_full == 1
    assert outcome.counters.files_parsed_incremental == 0
    assert outcome.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=7, output=1)}}
    _assert_additive(outcome.cache)


def test_scan_reparses_file_rewritten_before_resume_offset(tmp_path: Path) -> None:
    """A grown file whose already-parsed bytes changed is parsed fully."""
    sessions_root = tmp_path / "sessions"
    session_file = _session_path(sessions_root, "a")
    _write_jsonl(
        session_file,
        [_session_meta_event("s1"), _turn_context_event("gpt-5"), _token_event("2026-02-15T10:00:01Z", 10, 0, 0)],
    )
    service = _service(tmp_path, sessions_root)
    service.scan(DAY_RANGE, now=NOW)

    _write_jsonl(
        session_file,
        [
            _session_meta_event("s1"),
            _turn_context_event("o3"),
            _token_event("2026-02-15T10:00:01Z", 99, 0, 0),
            _token_event("2026-02-15T10:00:02Z", 120, 0, 0),
        ],
    )
    outcome = service.scan(DAY_RANGE, now=NOW)

    assert outcome.counters.files_parsed_full == 1
    assert outcome.counters.files_parsed_incremental == 0
    assert outcome.cache.days == {"2026-02-15": {"o3": TokenCounts(input=120)}}


def test_scan_counts_each_session_once(tmp_path: Path) -> None:
    """Two files with the same session id contribute once, on every pass."""
    sessions_root = tmp_path / "sessions"
    _write_session(_session_path(sessions_root, "a"), "s1", 10)
    _write_session(_session_path(sessions_root, "b"), "s1", 30)
    service = _service(tmp_path, sessions_root)

    first = service.scan(DAY_RANGE, now=NOW)
    second = service.scan(DAY_RANGE, now=NOW)

    for outcome in (first, second):
        assert outcome.counters.files_dropped_duplicate == 1
        assert outcome.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=10)}}
        assert list(outcome.cache.files) == [str(_session_path(sessions_root, "a"))]
        _assert_additive(outcome.cache)


def test_scan_counts_session_once_when_earlier_sorting_duplicate_appears_later(tmp_path: Path) -> None:
    """A duplicate that sorts before an already counted file replaces it without double counting."""
    sessions_root = tmp_path / "sessions"
    _write_session(_session_path(sessions_root, "b"), "s1", 30)
    service = _service(tmp_path, sessions_root)
    first = service.scan(DAY_RANGE, now=NOW)
    assert first.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=30)}}

    _write_session(_session_path(sessions_root, "a"), "s1", 10)
    second = service.scan(DAY_RANGE, now=NOW)
    third = service.scan(DAY_RANGE, now=NOW)

    for outcome in (second, third):
        assert outcome.counters.files_dropped_duplicate == 1
        assert outcome.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=10)}}
        assert list(outcome.cache.files) == [str(_session_path(sessions_root, "a"))]
        _assert_additive(outcome.cache)
    assert third.counters.files_skipped_unchanged == 1


def test_scan_ignores_archived_copy_of_a_session(tmp_path: Path) -> None:
    """An archived copy of a live session is not counted twice."""
    sessions_root = tmp_path / "sessions"
    session_file = _session_path(sessions_root, "a")
    _write_jsonl(session_file, [_session_meta_event("s1"), _token_event("2026-02-15T10:00:01Z", 10, 0, 0)])
    archived_root = tmp_path / "archived_sessions"
    archived_root.mkdir()
    shutil.copy(session_file, archived_root / "rollout-2026-02-15T10-00-00-a.jsonl")

    outcome = _service(tmp_path, sessions_root).scan(DAY_RANGE, now=NOW)

    assert outcome.counters.files_scanned == 2
    assert outcome.counters.files_dropped_duplicate == 1
    assert outcome.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=10)}}


def test_scan_ignores_hard_links_to_the_same_file(tmp_path: Path) -> None:
    """The same file reached through two paths is counted once even without a session id."""
    sessions_root = tmp_path / "sessions"
    session_file = _session_path(sessions_root, "a")
    _write_jsonl(session_file, [_token_event("2026-02-15T10:00:01Z", 10, 0, 0)])
    os.link(session_file, sessions_root / "rollout-2026-02-15-linked.jsonl")

    outcome = _service(tmp_path, sessions_root).scan(DAY_RANGE, now=NOW)

    assert outcome.counters.files_dropped_duplicate == 1
    assert outcome.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=10)}}


def test_scan_retracts_deleted_files(tmp_path: Path) -> None:
    """Records of files that disappeared are retracted from the totals."""
    sessions_root = tmp_path / "sessions"
    keep = _session_path(sessions_root, "a")
    gone = _session_path(sessions_root, "b")
    _write_jsonl(keep, [_session_meta_event("s1"), _token_event("2026-02-15T10:00:01Z", 10, 0, 0)])
    _write_jsonl(gone, [_session_meta_event("s2"), _token_event("2026-02-15T11:00:01Z", 5, 0, 0)])
    service = _service(tmp_path, sessions_root)
    first = service.scan(DAY_RANGE, now=NOW)
    assert first.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=15)}}

    gone.unlink()
    second = service.scan(DAY_RANGE, now=NOW)

    assert second.counters.files_retracted_stale == 1
    assert second.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=10)}}
    assert list(second.cache.files) == [str(keep)]


def test_scan_leaves_record_untouched_when_file_cannot_be_read(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A read failure skips the file for this pass and keeps its previous contribution."""
    sessions_root = tmp_path / "sessions"
    session_file = _session_path(sessions_root, "a")
    _write_jsonl(session_file, [_session_meta_event("s1"), _token_event("2026-02-15T10:00:01Z", 10, 0, 0)])
    service = _service(tmp_path, sessions_root)
    first = service.scan(DAY_RANGE, now=NOW)

    _append_jsonl(session_file, [_token_event("2026-02-15T10:00:02Z", 20, 0, 0)])

    def _failing_parse(session_file_path: Path, *args: object, **kwargs: object) -> None:
        raise FileAccessError(f"Failed to read {session_file_path}: permission denied.")

    monkeypatch.setattr("codex_cost_usage.ingestion.service.parse_session_log", _failing_parse)
    second = service.scan(DAY_RANGE, now=NOW)

    assert second.counters.files_failed == 1
    assert second.counters.failed_files == [str(session_file)]
    assert second.cache.days == first.cache.days
    assert second.cache.files == first.cache.files


def test_scan_prunes_days_outside_window_and_rebuilds_when_window_widens(tmp_path: Path) -> None:
    """Narrowing the window prunes old days; widening it again rebuilds them."""
    sessions_root = tmp_path / "sessions"
    session_file = sessions_root / "rollout-legacy.jsonl"
    sessions_root.mkdir(parents=True)
    _write_jsonl(
        session_file,
        [
            _session_meta_event("s1"),
            _token_event("2026-02-05T10:00:00Z", 10, 0, 0),
            _token_event("2026-02-15T10:00:00Z", 15, 0, 0),
        ],
    )
    wide_range = DayRange.from_dates(date(2026, 2, 1), date(2026, 2, 16), UTC)
    service = _service(tmp_path, sessions_root)

    wide = service.scan(wide_range, now=NOW)
    assert sorted(wide.cache.days) == ["2026-02-05", "2026-02-15"]

    narrow = service.scan(DAY_RANGE, now=NOW)
    assert narrow.counters.files_skipped_unchanged == 1
    assert all(DAY_RANGE.scan_contains(day) for day in narrow.cache.days)
    assert all(DAY_RANGE.scan_contains(day) for day in narrow.cache.files[str(session_file)].day_model_usage)
    _assert_additive(narrow.cache)

    widened = service.scan(wide_range, now=NOW)
    assert widened.counters.files_parsed_full == 1
    assert widened.cache.days["2026-02-05"] == {"gpt-5": TokenCounts(input=10)}


def test_scan_rebuilds_when_window_end_moves_later(tmp_path: Path) -> None:
    """Days after the previous window end are recovered once the end date moves forward."""
    sessions_root = tmp_path / "sessions"
    session_file = sessions_root / "rollout-legacy.jsonl"
    sessions_root.mkdir(parents=True)
    _write_jsonl(
        session_file,
        [
            _session_meta_event("s1"),
            _token_event("2026-02-05T10:00:00Z", 10, 0, 0),
            _token_event("2026-02-15T10:00:00Z", 15, 0, 0),
        ],
    )
    service = _service(tmp_path, sessions_root, refresh_min_interval_seconds=60)

    early = service.scan(DayRange.from_dates(date(2026, 2, 1), date(2026, 2, 6), UTC), now=NOW)
    assert sorted(early.cache.days) == ["2026-02-05"]
    assert early.cache.scan_until_key == "2026-02-07"

    later = service.scan(
        DayRange.from_dates(date(2026, 2, 1), date(2026, 2, 16), UTC),
        now=NOW + timedelta(seconds=1),
    )

    assert later.counters.pass_skipped is False
    assert later.counters.files_skipped_unchanged == 0
    assert later.counters.files_parsed_full == 1
    assert later.cache.days["2026-02-05"] == {"gpt-5": TokenCounts(input=10)}
    assert later.cache.days["2026-02-15"] == {"gpt-5": TokenCounts(input=5)}
    assert later.cache.scan_until_key == "2026-02-17"
    _assert_additive(later.cache)


def test_scan_rebuilds_cache_whose_totals_drifted_from_records(tmp_path: Path) -> None:
    """A persisted cache whose totals disagree with its records is rebuilt."""
    sessions_root = tmp_path / "sessions"
    _write_session(_session_path(sessions_root, "a"), "s1", 10)
    service = _service(tmp_path, sessions_root)
    service.scan(DAY_RANGE, now=NOW)

    repository = CacheRepository(tmp_path / "cache")
    tampered = repository.load()
    tampered.days["2026-02-15"] = {"gpt-5": TokenCounts(input=99)}
    repository.save(tampered)

    outcome = service.scan(DAY_RANGE, now=NOW)

    assert outcome.counters.files_parsed_full == 1
    assert outcome.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=10)}}
    _assert_additive(outcome.cache)


def test_scan_respects_minimum_refresh_interval(tmp_path: Path) -> None:
    """Passes inside the refresh interval return the persisted cache without scanning."""
    sessions_root = tmp_path / "sessions"
    session_file = _session_path(sessions_root, "a")
    _write_jsonl(session_file, [_session_meta_event("s1"), _token_event("2026-02-15T10:00:01Z", 10, 0, 0)])
    service = _service(tmp_path, sessions_root, refresh_min_interval_seconds=60)
    service.scan(DAY_RANGE, now=NOW)

    _append_jsonl(session_file, [_token_event("2026-02-15T10:00:02Z", 20, 0, 0)])
    skipped = service.scan(DAY_RANGE, now=NOW + timedelta(seconds=30))
    refreshed = service.scan(DAY_RANGE, now=NOW + timedelta(seconds=61))

    assert skipped.counters.pass_skipped is True
    assert skipped.counters.files_scanned == 0
    assert skipped.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=10)}}
    assert refreshed.counters.pass_skipped is False
    assert refreshed.counters.files_parsed_incremental == 1
    assert refreshed.cache.days == {"2026-02-15": {"gpt-5": TokenCounts(input=20)}}


def test_force_rescan_rebuilds_inside_refresh_interval(tmp_path: Path) -> None:
    """Force rescan ignores the refresh interval and the existing records."""
    sessions_root = tmp_path / "sessions"
    _write_session(_session_path(sessions_root, "a"), "s1", 10)
    _service(tmp_path, sessions_root, refresh_min_interval_seconds=60).scan(DAY_RANGE, now=NOW)

    outcome = _service(tmp_path, sessions_root, refresh_min_interval_seconds=60, force_rescan=True).scan(
        DAY_RANGE,
        now=NOW + timedelta(seconds=1),
    )

    assert outcome.counters.pass_skipped is False
    assert outcome.counters.files_parsed_full == 1
    assert outcome.counters.files_skipped_unchanged == 0


def test_scan_discards_cache_built_for_another_timezone(tmp_path: Path) -> None:
    """Day keys depend on the zone, so a cache from another zone is rebuilt."""
    sessions_root = tmp_path / "sessions"
    _write_session(_session_path(sessions_root, "a"), "s1", 10)
    _service(tmp_path, sessions_root).scan(DAY_RANGE, now=NOW)

    new_york = ZoneInfo("America/New_York")
    outcome = _service(tmp_path, sessions_root, timezone=new_york).scan(
        DayRange.from_dates(date(2026, 2, 14), date(2026, 2, 16), new_york),
        now=NOW,
    )

    assert outcome.counters.files_parsed_full == 1
    assert outcome.cache.timezone == "America/New_York"


def test_scan_with_missing_sessions_root_saves_empty_cache(tmp_path: Path) -> None:
    """A missing sessions root is not an error."""
    outcome = _service(tmp_path, tmp_path / "sessions").scan(DAY_RANGE, now=NOW)

    assert outcome.counters.files_scanned == 0
    assert outcome.cache.days == {}
    assert _cache_file(tmp_path).exists()


def _service(tmp_path: Path, sessions_root: Path, cache_name: str = "cache", **overrides: object) -> ScanService:
    """Build a scan service with an isolated cache root."""
    settings: dict[str, object] = {
        "sessions_root": sessions_root,
        "cache_root": tmp_path / cache_name,
        "refresh_min_interval_seconds": 0.0,
        "timezone": UTC,
    }
    settings.update(overrides)
    options = ScanOptions(**settings)
    return ScanService(repository=CacheRepository(options.resolved_cache_root()), options=options)


def _cache_file(tmp_path: Path) -> Path:
    """Return the persisted cache document path."""
    return CacheRepository(tmp_path / "cache").cache_file_path


def _session_path(sessions_root: Path, name: str) -> Path:
    """Return a date-partitioned session file path."""
    return sessions_root / "2026" / "02" / "15" / f"rollout-2026-02-15T10-00-00-{name}.jsonl"


def _assert_additive(cache: ScanCache) -> None:
    """Assert that cache totals equal the sum of the record slices."""
    days, context_days = sum_file_records(cache.files)
    assert cache.days == days
    assert cache.context_days == context_days


def _session_meta_event(session_id: str, timestamp: str = "2026-02-15T10:00:00Z") -> dict[str, object]:
    """Build a session_meta event."""
    return {
        "timestamp": timestamp,
        "type": "session_meta",
        "payload": {"id": session_id, "cwd": "/workspace"},
    }


def _turn_context_event(
    model: str,
    timestamp: str = "2026-02-15T10:00:00Z",
    approval_policy: str = "on-request",
) -> dict[str, object]:
    """Build a turn_context event."""
    return {
        "timestamp": timestamp,
        "type": "turn_context",
        "payload": {"model": model, "approval_policy": approval_policy, "sandbox_policy": "workspace-write"},
    }


def _token_event(timestamp: str, input_tokens: int, cached: int, output: int, reasoning: int = 0) -> dict[str, object]:
    """Build a token_count event carrying cumulative totals."""
    return {
        "timestamp": timestamp,
        "type": "event_msg",
        "payload": {
            "type": "token_count",
            "info": {
                "total_token_usage": {
                    "input_tokens": input_tokens,
                    "cached_input_tokens": cached,
                    "output_tokens": output,
                    "reasoning_output_tokens": reasoning,
                    "total_tokens": input_tokens + output,
                },
            },
        },
    }


def _write_session(path: Path, session_id: str, input_tokens: int) -> None:
    """Write a session with one token event on 2026-02-15."""
    _write_jsonl(path, [_session_meta_event(session_id), _token_event("2026-02-15T10:00:01Z", input_tokens, 0, 0)])


def _write_jsonl(path: Path, events: list[dict[str, object]]) -> None:
    """Write JSONL events to disk."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as handle:
        for event in events:
            handle.write(orjson.dumps(event))
            handle.write(b"\n")


def _append_jsonl(path: Path, events: list[dict[str, object]]) -> None:
    """Append JSONL events to an existing file."""
    with path.open("ab") as handle:
        for event in events:
            handle.write(orjson.dumps(event))
            handle.write(b"\n")
