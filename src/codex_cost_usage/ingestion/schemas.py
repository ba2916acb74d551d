"""Typed schemas used by the scan pipeline."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from ..daykeys import DayKey
from .errors import InvalidLabelError

MAX_LABEL_LENGTH = 64
DEFAULT_MODEL_NAME = "gpt-5"
CACHE_SCHEMA_VERSION = 1

_MODEL_SNAPSHOT_SUFFIX = re.compile(r"-\d{4}-\d{2}-\d{2}$")


class Label(str):
    """Trimmed, non-empty context label capped at MAX_LABEL_LENGTH characters."""

    __slots__ = ()

    def __new__(cls, value: str) -> "Label":
        if type(value) is cls:
            return value
        trimmed = value.strip() if isinstance(value, str) else ""
        if not trimmed:
            raise InvalidLabelError(f"Invalid label: {value!r}.")
        return super().__new__(cls, trimmed[:MAX_LABEL_LENGTH])


class ModelName(Label):
    """Normalized model name used as an aggregation key."""

    __slots__ = ()


def normalized_label(value: object) -> Label | None:
    """Return a Label for non-empty strings, None for anything else."""
    if not isinstance(value, str):
        return None
    try:
        return Label(value)
    except InvalidLabelError:
        return None


def normalize_model_name(value: str | None) -> ModelName:
    """Normalize a raw model code; empty or missing names fall back to the default model."""
    raw = value.strip() if isinstance(value, str) else ""
    if raw.lower().startswith("openai/"):
        raw = raw[len("openai/") :]
    raw = _MODEL_SNAPSHOT_SUFFIX.sub("", raw)
    if not raw:
        return ModelName(DEFAULT_MODEL_NAME)
    return ModelName(raw)


@dataclass(frozen=True)
class TokenCounts:
    """Four token counters; used for per-event deltas, accumulators and cumulative totals."""

    input: int = 0
    cached_input: int = 0
    output: int = 0
    reasoning_output: int = 0

    @property
    def is_zero(self) -> bool:
        """Return True when every counter is zero."""
        return self.input == 0 and self.cached_input == 0 and self.output == 0 and self.reasoning_output == 0

    def combine(self, other: "TokenCounts", sign: int = 1) -> "TokenCounts":
        """Add (sign=1) or retract (sign=-1) another vector, clamping each slot at zero."""
        return TokenCounts(
            input=max(0, self.input + sign * other.input),
            cached_input=max(0, self.cached_input + sign * other.cached_input),
            output=max(0, self.output + sign * other.output),
            reasoning_output=max(0, self.reasoning_output + sign * other.reasoning_output),
        )

    def pack(self) -> list[int]:
        """Return the compact `[input, cached, output, reasoning]` form."""
        return [self.input, self.cached_input, self.output, self.reasoning_output]

    @classmethod
    def unpack(cls, packed: list[int]) -> "TokenCounts":
        """Build counters from the compact list form; missing slots read as zero."""
        values = [max(0, int(item)) for item in packed[:4]]
        values.extend([0] * (4 - len(values)))
        return cls(*values)


DayModelUsage = dict[DayKey, dict[ModelName, TokenCounts]]

CONTEXT_CATEGORIES: tuple[str, ...] = (
    "approval_policies",
    "sandbox_modes",
    "effort_levels",
    "risky_skills",
    "forbidden_skills",
)


@dataclass
class ContextDay:
    """Per-day context counters; each category maps a label to a count."""

    approval_policies: dict[str, int] = field(default_factory=dict)
    sandbox_modes: dict[str, int] = field(default_factory=dict)
    effort_levels: dict[str, int] = field(default_factory=dict)
    risky_skills: dict[str, int] = field(default_factory=dict)
    forbidden_skills: dict[str, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        """Return True when all five category maps are empty."""
        return not any(self.category(name) for name in CONTEXT_CATEGORIES)

    def category(self, name: str) -> dict[str, int]:
        """Return one category map by field name."""
        return getattr(self, name)

    def copy(self) -> "ContextDay":
        """Return an independent copy."""
        return ContextDay(**{name: dict(self.category(name)) for name in CONTEXT_CATEGORIES})


ContextDayStats = dict[DayKey, ContextDay]


@dataclass(frozen=True)
class CarriedState:
    """Parser state carried from one scan of a file to the next."""

    model: str | None = None
    totals: TokenCounts | None = None
    approval_policy: str | None = None
    sandbox_mode: str | None = None
    effort: str | None = None
    session_id: str | None = None
    pending_risky_skills: dict[str, int] = field(default_factory=dict)
    pending_forbidden_skills: dict[str, int] = field(default_factory=dict)
    skills_assigned: bool = False


@dataclass
class FileScanRecord:
    """Per-file scan bookkeeping and the slice of aggregates the file contributed."""

    mtime_ms: int
    size: int
    day_model_usage: DayModelUsage = field(default_factory=dict)
    context_days: ContextDayStats = field(default_factory=dict)
    resume_offset: int | None = None
    resume_anchor: str | None = None
    last_model: str | None = None
    last_totals: TokenCounts | None = None
    last_approval_policy: str | None = None
    last_sandbox_mode: str | None = None
    last_effort: str | None = None
    session_id: str | None = None
    pending_risky_skills: dict[str, int] = field(default_factory=dict)
    pending_forbidden_skills: dict[str, int] = field(default_factory=dict)
    skills_assigned: bool = False

    def carried_state(self) -> CarriedState:
        """Return the state an incremental parse resumes from."""
        return CarriedState(
            model=self.last_model,
            totals=self.last_totals,
            approval_policy=self.last_approval_policy,
            sandbox_mode=self.last_sandbox_mode,
            effort=self.last_effort,
            session_id=self.session_id,
            pending_risky_skills=dict(self.pending_risky_skills),
            pending_forbidden_skills=dict(self.pending_forbidden_skills),
            skills_assigned=self.skills_assigned,
        )

    def apply_state(self, state: CarriedState) -> None:
        """Store the state reached at the end of a parse."""
        self.last_model = state.model
        self.last_totals = state.totals
        self.last_approval_policy = state.approval_policy
        self.last_sandbox_mode = state.sandbox_mode
        self.last_effort = state.effort
        self.session_id = state.session_id
        self.pending_risky_skills = dict(state.pending_risky_skills)
        self.pending_forbidden_skills = dict(state.pending_forbidden_skills)
        self.skills_assigned = state.skills_assigned


@dataclass
class ScanCache:
    """Persisted aggregate for one provider.

    `days` and `context_days` always equal the sum of the matching slices of every
    record in `files`.
    """

    schema_version: int = CACHE_SCHEMA_VERSION
    last_scan_ms: int = 0
    timezone: str | None = None
    scan_since_key: DayKey | None = None
    scan_until_key: DayKey | None = None
    files: dict[str, FileScanRecord] = field(default_factory=dict)
    days: DayModelUsage = field(default_factory=dict)
    context_days: ContextDayStats = field(default_factory=dict)


@dataclass(frozen=True)
class ParseResult:
    """Parser output for one file (full parse or tail delta)."""

    day_model_usage: DayModelUsage
    context_days: ContextDayStats
    parsed_bytes: int
    state: CarriedState
    lines_read: int = 0
    lines_skipped: int = 0

    @property
    def session_id(self) -> str | None:
        """Return the session id known at the end of the parse."""
        return self.state.session_id

    @property
    def last_totals(self) -> TokenCounts | None:
        """Return the last cumulative totals seen."""
        return self.state.totals


@dataclass(frozen=True)
class SkillClassification:
    """Skills named in session instructions, split by risk category."""

    risky: dict[str, int]
    forbidden: dict[str, int]


@dataclass(frozen=True)
class FileStat:
    """Filesystem metadata for one session file."""

    path: str
    size: int
    mtime_ms: int
    identity: str | None


@dataclass
class ScanState:
    """Dedup bookkeeping for one scan pass, filled in path order."""

    seen_session_ids: set[str] = field(default_factory=set)
    seen_file_ids: set[str] = field(default_factory=set)

    def mark(self, session_id: str | None, file_id: str | None) -> None:
        """Record a counted file's session id and identity."""
        if session_id is not None:
            self.seen_session_ids.add(session_id)
        if file_id is not None:
            self.seen_file_ids.add(file_id)


@dataclass
class ScanCounters:
    """Scan counters emitted by ScanService.scan()."""

    files_scanned: int = 0
    files_skipped_unchanged: int = 0
    files_parsed_incremental: int = 0
    files_parsed_full: int = 0
    files_dropped_duplicate: int = 0
    files_retracted_stale: int = 0
    files_failed: int = 0
    lines_skipped: int = 0
    pass_skipped: bool = False
    failed_files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScanOutcome:
    """Cache state after a scan pass plus the pass counters."""

    cache: ScanCache
    counters: ScanCounters
