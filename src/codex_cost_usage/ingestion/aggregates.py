"""Additive merge, retraction and pruning of scan aggregates."""

from __future__ import annotations

from ..daykeys import DayKey, is_in_range
from .schemas import (
    CONTEXT_CATEGORIES,
    ContextDay,
    ContextDayStats,
    DayModelUsage,
    FileScanRecord,
    ScanCache,
    TokenCounts,
)


def merge_day_model_usage(target: DayModelUsage, delta: DayModelUsage, sign: int = 1) -> None:
    """Merge `delta` into `target` in place; all-zero (day, model) entries are removed."""
    for day, models in delta.items():
        day_models = dict(target.get(day, {}))
        for model, counts in models.items():
            merged = day_models.get(model, TokenCounts()).combine(counts, sign)
            if merged.is_zero:
                day_models.pop(model, None)
            else:
                day_models[model] = merged

        if day_models:
            target[day] = day_models
        else:
            target.pop(day, None)


def merge_count_map(base: dict[str, int], delta: dict[str, int], sign: int = 1) -> dict[str, int]:
    """Return `base` with `delta` added or retracted; non-positive counts are dropped."""
    merged = dict(base)
    for key, value in delta.items():
        updated = merged.get(key, 0) + sign * max(0, value)
        if updated <= 0:
            merged.pop(key, None)
        else:
            merged[key] = updated
    return merged


def merge_context_days(target: ContextDayStats, delta: ContextDayStats, sign: int = 1) -> None:
    """Merge per-day context counters in place; days with five empty maps are removed."""
    for day, next_day in delta.items():
        existing = target.get(day)
        merged = existing.copy() if existing is not None else ContextDay()
        for name in CONTEXT_CATEGORIES:
            setattr(merged, name, merge_count_map(merged.category(name), next_day.category(name), sign))

        if merged.is_empty:
            target.pop(day, None)
        else:
            target[day] = merged


def apply_contribution(
    cache: ScanCache,
    day_model_usage: DayModelUsage,
    context_days: ContextDayStats,
    sign: int,
) -> None:
    """Add (sign=1) or retract (sign=-1) one file's contribution to the cache totals."""
    if day_model_usage:
        merge_day_model_usage(cache.days, day_model_usage, sign)
    if context_days:
        merge_context_days(cache.context_days, context_days, sign)


def retract_record(cache: ScanCache, path: str) -> FileScanRecord | None:
    """Remove a file record and retract everything it contributed."""
    record = cache.files.pop(path, None)
    if record is not None:
        apply_contribution(cache, record.day_model_usage, record.context_days, sign=-1)
    return record


def install_record(cache: ScanCache, path: str, record: FileScanRecord) -> None:
    """Store a fresh record and add its full contribution."""
    cache.files[path] = record
    apply_contribution(cache, record.day_model_usage, record.context_days, sign=1)


def prune_to_range(cache: ScanCache, since: DayKey, until: DayKey) -> None:
    """Drop days outside `[since, until]` from the totals and from every record slice."""
    _prune_days(cache.days, since, until)
    _prune_days(cache.context_days, since, until)
    for record in cache.files.values():
        _prune_days(record.day_model_usage, since, until)
        _prune_days(record.context_days, since, until)


def _prune_days(mapping: dict[DayKey, object], since: DayKey, until: DayKey) -> None:
    for key in [key for key in mapping if not is_in_range(key, since, until)]:
        del mapping[key]


def sum_file_records(files: dict[str, FileScanRecord]) -> tuple[DayModelUsage, ContextDayStats]:
    """Recompute aggregates from scratch as the sum of every record."""
    days: DayModelUsage = {}
    context_days: ContextDayStats = {}
    for path in sorted(files):
        record = files[path]
        merge_day_model_usage(days, record.day_model_usage)
        merge_context_days(context_days, record.context_days)
    return days, context_days


def totals_match_records(cache: ScanCache) -> bool:
    """Return whether the cache totals equal the sum of its record slices."""
    days, context_days = sum_file_records(cache.files)
    return cache.days == days and cache.context_days == context_days
