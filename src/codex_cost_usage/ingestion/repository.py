"""JSON file repository for the persisted scan cache."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import orjson

from ..daykeys import DayKey
from .errors import CacheDecodeError, UnsupportedCacheVersionError
from .schemas import (
    CACHE_SCHEMA_VERSION,
    CONTEXT_CATEGORIES,
    ContextDay,
    ContextDayStats,
    DayModelUsage,
    FileScanRecord,
    ModelName,
    ScanCache,
    TokenCounts,
)

LOGGER = logging.getLogger(__name__)


class CacheRepository:
    """Loads and atomically saves one provider's scan cache document."""

    def __init__(self, cache_root: Path, provider: str = "codex") -> None:
        self._cache_root = cache_root
        self._provider = provider

    @property
    def cache_file_path(self) -> Path:
        """Return the cache document location."""
        return self._cache_root / "cost-usage" / f"{self._provider}-v{CACHE_SCHEMA_VERSION}.json"

    def load(self) -> ScanCache:
        """Load the cache; a missing, corrupt or foreign-version document yields an empty cache."""
        path = self.cache_file_path
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return ScanCache()
        except OSError as exc:
            LOGGER.warning("Failed reading scan cache at %s: %s", path, exc)
            return ScanCache()

        try:
            return decode_cache(raw)
        except UnsupportedCacheVersionError as exc:
            LOGGER.info("Discarding scan cache at %s: %s", path, exc)
        except CacheDecodeError as exc:
            LOGGER.warning("Discarding unreadable scan cache at %s: %s", path, exc)
        return ScanCache()

    def save(self, cache: ScanCache) -> bool:
        """Write the cache through a temporary file and an atomic replace.

        Returns False when the write failed; the previous document is left in place.
        """
        path = self.cache_file_path
        temp_path: Path | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = encode_cache(cache)
            with tempfile.NamedTemporaryFile(
                mode="wb",
                dir=path.parent,
                prefix=".tmp-",
                suffix=".json",
                delete=False,
            ) as handle:
                temp_path = Path(handle.name)
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, path)
        except OSError as exc:
            LOGGER.warning("Failed writing scan cache at %s: %s", path, exc)
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            return False
        return True


def encode_cache(cache: ScanCache) -> bytes:
    """Serialize a cache with sorted keys so equal caches produce identical bytes."""
    document = {
        "schema_version": cache.schema_version,
        "last_scan_ms": cache.last_scan_ms,
        "timezone": cache.timezone,
        "scan_since_key": _optional_str(cache.scan_since_key),
        "scan_until_key": _optional_str(cache.scan_until_key),
        "files": {str(path): _encode_record(record) for path, record in cache.files.items()},
        "days": _encode_days(cache.days),
        "context_days": _encode_context_days(cache.context_days),
    }
    return orjson.dumps(document, option=orjson.OPT_SORT_KEYS)


def decode_cache(raw: bytes) -> ScanCache:
    """Deserialize a cache document.

    Raises:
        CacheDecodeError: If the document is malformed.
        UnsupportedCacheVersionError: If the schema version is not the current one.
    """
    try:
        document = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise CacheDecodeError(f"Malformed cache JSON: {exc}.") from exc
    if not isinstance(document, dict):
        raise CacheDecodeError(f"Expected cache object, got {type(document).__name__}.")

    version = document.get("schema_version")
    if version != CACHE_SCHEMA_VERSION:
        raise UnsupportedCacheVersionError(f"Unsupported cache schema version: {version!r}.")

    try:
        scan_since_key = document.get("scan_since_key")
        scan_until_key = document.get("scan_until_key")
        return ScanCache(
            schema_version=CACHE_SCHEMA_VERSION,
            last_scan_ms=int(document.get("last_scan_ms", 0)),
            timezone=_optional_str(document.get("timezone")),
            scan_since_key=DayKey(scan_since_key) if scan_since_key is not None else None,
            scan_until_key=DayKey(scan_until_key) if scan_until_key is not None else None,
            files={str(path): _decode_record(record) for path, record in _object(document.get("files")).items()},
            days=_decode_days(document.get("days")),
            context_days=_decode_context_days(document.get("context_days")),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise CacheDecodeError(f"Invalid cache document: {exc}.") from exc


def _encode_record(record: FileScanRecord) -> dict[str, Any]:
    return {
        "mtime_ms": record.mtime_ms,
        "size": record.size,
        "days": _encode_days(record.day_model_usage),
        "context_days": _encode_context_days(record.context_days),
        "resume_offset": record.resume_offset,
        "resume_anchor": record.resume_anchor,
        "last_model": record.last_model,
        "last_totals": record.last_totals.pack() if record.last_totals is not None else None,
        "last_approval_policy": _optional_str(record.last_approval_policy),
        "last_sandbox_mode": _optional_str(record.last_sandbox_mode),
        "last_effort": _optional_str(record.last_effort),
        "session_id": record.session_id,
        "pending_risky_skills": _encode_counts(record.pending_risky_skills),
        "pending_forbidden_skills": _encode_counts(record.pending_forbidden_skills),
        "skills_assigned": record.skills_assigned,
    }


def _decode_record(raw: Any) -> FileScanRecord:
    record = _object(raw)
    last_totals = record.get("last_totals")
    resume_offset = record.get("resume_offset")
    return FileScanRecord(
        mtime_ms=int(record["mtime_ms"]),
        size=int(record["size"]),
        day_model_usage=_decode_days(record.get("days")),
        context_days=_decode_context_days(record.get("context_days")),
        resume_offset=int(resume_offset) if resume_offset is not None else None,
        resume_anchor=_optional_str(record.get("resume_anchor")),
        last_model=_optional_str(record.get("last_model")),
        last_totals=TokenCounts.unpack(_array(last_totals)) if last_totals is not None else None,
        last_approval_policy=_optional_str(record.get("last_approval_policy")),
        last_sandbox_mode=_optional_str(record.get("last_sandbox_mode")),
        last_effort=_optional_str(record.get("last_effort")),
        session_id=_optional_str(record.get("session_id")),
        pending_risky_skills=_decode_counts(record.get("pending_risky_skills")),
        pending_forbidden_skills=_decode_counts(record.get("pending_forbidden_skills")),
        skills_assigned=bool(record.get("skills_assigned", False)),
    )


def _encode_days(days: DayModelUsage) -> dict[str, dict[str, list[int]]]:
    return {
        str(day): {str(model): counts.pack() for model, counts in models.items()}
        for day, models in days.items()
        if models
    }


def _decode_days(raw: Any) -> DayModelUsage:
    days: DayModelUsage = {}
    for day, models in _object(raw).items():
        decoded = {ModelName(model): TokenCounts.unpack(_array(packed)) for model, packed in _object(models).items()}
        decoded = {model: counts for model, counts in decoded.items() if not counts.is_zero}
        if decoded:
            days[DayKey(day)] = decoded
    return days


def _encode_context_days(context_days: ContextDayStats) -> dict[str, dict[str, dict[str, int]]]:
    encoded: dict[str, dict[str, dict[str, int]]] = {}
    for day, context in context_days.items():
        categories = {name: _encode_counts(context.category(name)) for name in CONTEXT_CATEGORIES}
        categories = {name: counts for name, counts in categories.items() if counts}
        if categories:
            encoded[str(day)] = categories
    return encoded


def _decode_context_days(raw: Any) -> ContextDayStats:
    context_days: ContextDayStats = {}
    for day, categories in _object(raw).items():
        categories = _object(categories)
        context = ContextDay(**{name: _decode_counts(categories.get(name)) for name in CONTEXT_CATEGORIES})
        if not context.is_empty:
            context_days[DayKey(day)] = context
    return context_days


def _encode_counts(counts: dict[str, int]) -> dict[str, int]:
    return {str(key): int(value) for key, value in counts.items() if value > 0}


def _decode_counts(raw: Any) -> dict[str, int]:
    return {str(key): int(value) for key, value in _object(raw).items() if int(value) > 0}


def _object(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"expected object, got {type(value).__name__}")
    return value


def _array(value: Any) -> list[int]:
    if not isinstance(value, list):
        raise TypeError(f"expected array, got {type(value).__name__}")
    return value


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
