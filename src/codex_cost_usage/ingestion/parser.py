"""Parsing helpers for Codex session log scanning."""

from __future__ import annotations

import logging
import re
from datetime import tzinfo
from pathlib import Path
from typing import Any

import orjson

from ..daykeys import DayKey, DayRange, day_key_from_timestamp
from .errors import FileAccessError
from .jsonl import MAX_LINE_BYTES, JsonlReader
from .schemas import (
    CarriedState,
    ContextDay,
    ContextDayStats,
    DayModelUsage,
    Label,
    ParseResult,
    SkillClassification,
    TokenCounts,
    normalize_model_name,
    normalized_label,
)

LOGGER = logging.getLogger(__name__)

FORBIDDEN_SKILL_KEYWORDS: tuple[str, ...] = (
    "forbidden",
    "must not",
    "do not",
    "never use",
    "out of scope",
    "blocked",
)

RISKY_SKILL_KEYWORDS: tuple[str, ...] = (
    "approval",
    "private repo",
    "private repos",
    "service role",
    "token",
    "credential",
    "install",
    "notarize",
    "release",
    "destructive",
    "network",
)

_SKILL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

_EVENT_MSG_MARKERS = (b'"type":"event_msg"', b'"type": "event_msg"')
_TURN_CONTEXT_MARKERS = (b'"type":"turn_context"', b'"type": "turn_context"')
_SESSION_META_MARKERS = (b'"type":"session_meta"', b'"type": "session_meta"')
_TOKEN_COUNT_MARKER = b'"token_count"'


def parse_session_log(
    session_file_path: Path,
    day_range: DayRange,
    start_offset: int = 0,
    carried: CarriedState | None = None,
    timezone: tzinfo | None = None,
    max_line_bytes: int = MAX_LINE_BYTES,
) -> ParseResult:
    """Parse one session log from `start_offset` into token and context deltas.

    Cumulative token totals and turn context are resumed from `carried`, so parsing a
    file in two steps yields the same aggregates as one full parse.

    Raises:
        FileAccessError: If the file cannot be opened or read.
    """
    state = _SessionLogState(day_range, carried or CarriedState(), timezone)
    try:
        with session_file_path.open("rb") as handle:
            reader = JsonlReader(handle, start_offset=start_offset, max_line_bytes=max_line_bytes)
            for line in reader:
                state.lines_read += 1
                if line.truncated:
                    state.lines_skipped += 1
                    continue
                if not line.data or not is_candidate_line(line.data):
                    continue
                event = _decode_event(line.data)
                if event is None:
                    state.lines_skipped += 1
                    continue
                state.handle_event(event)
            parsed_bytes = reader.end_offset
    except OSError as exc:
        raise FileAccessError(f"Failed to read {session_file_path}: {exc}.") from exc

    LOGGER.debug(
        "Parsed session log %s from offset %d to %d: %d lines read, %d skipped",
        session_file_path,
        start_offset,
        parsed_bytes,
        state.lines_read,
        state.lines_skipped,
    )

    return ParseResult(
        day_model_usage=state.days,
        context_days=state.context_days,
        parsed_bytes=parsed_bytes,
        state=state.snapshot(),
        lines_read=state.lines_read,
        lines_skipped=state.lines_skipped,
    )


def is_candidate_line(data: bytes) -> bool:
    """Cheap substring filter run before JSON decoding."""
    if any(marker in data for marker in _EVENT_MSG_MARKERS):
        return _TOKEN_COUNT_MARKER in data
    return any(marker in data for marker in _TURN_CONTEXT_MARKERS) or any(
        marker in data for marker in _SESSION_META_MARKERS
    )


def classify_skills(text: str) -> SkillClassification:
    """Classify bullet-style skill entries in session instructions as risky and/or forbidden."""
    risky: dict[str, int] = {}
    forbidden: dict[str, int] = {}

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line.startswith("- ") or "(file:" not in line:
            continue
        skill = parse_skill_name(line)
        if skill is None:
            continue

        lowered = line.lower()
        if any(keyword in lowered for keyword in FORBIDDEN_SKILL_KEYWORDS):
            forbidden[skill] = 1
        if any(keyword in lowered for keyword in RISKY_SKILL_KEYWORDS):
            risky[skill] = 1

    return SkillClassification(risky=risky, forbidden=forbidden)


def parse_skill_name(line: str) -> str | None:
    """Return the skill name of a `- name: description` line."""
    if not line.startswith("- "):
        return None
    name, colon, _ = line[2:].partition(":")
    if not colon:
        return None
    name = name.strip()
    if _SKILL_NAME_PATTERN.match(name) is None:
        return None
    return name


def sandbox_mode_label(raw: Any) -> Label | None:
    """Resolve the sandbox mode from a string or a `{mode|type: ...}` policy object."""
    if isinstance(raw, str):
        return normalized_label(raw)
    if not isinstance(raw, dict):
        return None
    mode = raw.get("mode")
    if not isinstance(mode, str):
        mode = raw.get("type")
    return normalized_label(mode)


def effort_level_label(payload: dict[str, Any]) -> Label | None:
    """Resolve reasoning effort, also looking under the collaboration-mode settings."""
    effort = payload.get("effort")
    if isinstance(effort, str):
        return normalized_label(effort)
    collaboration_mode = payload.get("collaboration_mode")
    if isinstance(collaboration_mode, dict):
        settings = collaboration_mode.get("settings")
        if isinstance(settings, dict):
            return normalized_label(settings.get("reasoning_effort"))
    return None


class _SessionLogState:
    """Mutable state threaded through the lines of one parse."""

    def __init__(self, day_range: DayRange, carried: CarriedState, timezone: tzinfo | None) -> None:
        self._day_range = day_range
        self._timezone = timezone
        self.model = carried.model
        self.totals = carried.totals
        self.approval_policy = carried.approval_policy
        self.sandbox_mode = carried.sandbox_mode
        self.effort = carried.effort
        self.session_id = carried.session_id
        self.pending_risky = dict(carried.pending_risky_skills)
        self.pending_forbidden = dict(carried.pending_forbidden_skills)
        self.skills_assigned = carried.skills_assigned
        self.days: DayModelUsage = {}
        self.context_days: ContextDayStats = {}
        self.lines_read = 0
        self.lines_skipped = 0

    def snapshot(self) -> CarriedState:
        return CarriedState(
            model=self.model,
            totals=self.totals,
            approval_policy=self.approval_policy,
            sandbox_mode=self.sandbox_mode,
            effort=self.effort,
            session_id=self.session_id,
            pending_risky_skills=dict(self.pending_risky),
            pending_forbidden_skills=dict(self.pending_forbidden),
            skills_assigned=self.skills_assigned,
        )

    def handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "session_meta":
            self._handle_session_meta(event)
            return

        timestamp = event.get("timestamp")
        if not isinstance(timestamp, str):
            return
        day = day_key_from_timestamp(timestamp, self._timezone)
        if day is None:
            return

        if event_type == "turn_context":
            self._handle_turn_context(event, day)
        elif event_type == "event_msg":
            self._handle_token_count(event, day)

    def _handle_session_meta(self, event: dict[str, Any]) -> None:
        payload = _mapping(event.get("payload"))
        if self.session_id is None:
            self.session_id = _first_non_empty_string(
                payload.get("session_id"),
                payload.get("sessionId"),
                payload.get("id"),
                event.get("session_id"),
                event.get("sessionId"),
                event.get("id"),
            )

        if not self.skills_assigned and not self.pending_risky and not self.pending_forbidden:
            instructions = payload.get("instructions")
            if not isinstance(instructions, str):
                instructions = _mapping(payload.get("base_instructions")).get("text")
            if isinstance(instructions, str):
                classified = classify_skills(instructions)
                self.pending_risky = classified.risky
                self.pending_forbidden = classified.forbidden

        if not self.skills_assigned:
            timestamp = event.get("timestamp")
            if not isinstance(timestamp, str):
                timestamp = payload.get("timestamp")
            if isinstance(timestamp, str):
                day = day_key_from_timestamp(timestamp, self._timezone)
                if day is not None:
                    self._assign_session_skills(day)

    def _handle_turn_context(self, event: dict[str, Any], day: DayKey) -> None:
        payload = event.get("payload")
        if not isinstance(payload, dict):
            return
        model = payload.get("model")
        if not isinstance(model, str):
            model = _mapping(payload.get("info")).get("model")
        if isinstance(model, str):
            self.model = model
        self.approval_policy = normalized_label(payload.get("approval_policy"))
        self.sandbox_mode = sandbox_mode_label(payload.get("sandbox_policy"))
        self.effort = effort_level_label(payload)
        self._assign_session_skills(day)

    def _handle_token_count(self, event: dict[str, Any], day: DayKey) -> None:
        payload = event.get("payload")
        if not isinstance(payload, dict) or payload.get("type") != "token_count":
            return
        info = _mapping(payload.get("info"))
        model = (
            _first_non_empty_string(info.get("model"), info.get("model_name"), payload.get("model"), event.get("model"))
            or self.model
        )

        total_usage = info.get("total_token_usage")
        last_usage = info.get("last_token_usage")
        if isinstance(total_usage, dict):
            current = _usage_counts(total_usage)
            delta = current.combine(self.totals or TokenCounts(), sign=-1)
            self.totals = current
        elif isinstance(last_usage, dict):
            delta = _usage_counts(last_usage)
        else:
            return

        if delta.is_zero:
            return
        delta = TokenCounts(
            input=delta.input,
            cached_input=min(delta.cached_input, delta.input),
            output=delta.output,
            reasoning_output=delta.reasoning_output,
        )
        self._add_usage(day, model, delta)
        self._add_context(day)
        self._assign_session_skills(day)

    def _add_usage(self, day: DayKey, model: str | None, delta: TokenCounts) -> None:
        if not self._day_range.scan_contains(day):
            return
        model_name = normalize_model_name(model)
        day_models = self.days.setdefault(day, {})
        day_models[model_name] = day_models.get(model_name, TokenCounts()).combine(delta)

    def _add_context(self, day: DayKey) -> None:
        if not self._day_range.scan_contains(day):
            return
        context = self.context_days.get(day) or ContextDay()
        _increment(context.approval_policies, self.approval_policy)
        _increment(context.sandbox_modes, self.sandbox_mode)
        _increment(context.effort_levels, self.effort)
        if context.is_empty:
            self.context_days.pop(day, None)
        else:
            self.context_days[day] = context

    def _assign_session_skills(self, day: DayKey) -> None:
        if self.skills_assigned:
            return
        if not self.pending_risky and not self.pending_forbidden:
            return
        if not self._day_range.scan_contains(day):
            return

        context = self.context_days.get(day) or ContextDay()
        for skill, count in self.pending_risky.items():
            context.risky_skills[skill] = max(0, context.risky_skills.get(skill, 0) + count)
        for skill, count in self.pending_forbidden.items():
            context.forbidden_skills[skill] = max(0, context.forbidden_skills.get(skill, 0) + count)
        self.context_days[day] = context
        self.pending_risky = {}
        self.pending_forbidden = {}
        self.skills_assigned = True


def _decode_event(data: bytes) -> dict[str, Any] | None:
    try:
        event = orjson.loads(data)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        return None
    return event


def _usage_counts(snapshot: dict[str, Any]) -> TokenCounts:
    cached = snapshot.get("cached_input_tokens")
    if cached is None:
        cached = snapshot.get("cache_read_input_tokens")
    reasoning = snapshot.get("reasoning_output_tokens")
    if reasoning is None:
        reasoning = snapshot.get("reasoning_tokens")
    return TokenCounts(
        input=max(0, _to_int(snapshot.get("input_tokens"))),
        cached_input=max(0, _to_int(cached)),
        output=max(0, _to_int(snapshot.get("output_tokens"))),
        reasoning_output=max(0, _to_int(reasoning)),
    )


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def _increment(counts: dict[str, int], label: str | None) -> None:
    key = normalized_label(label)
    if key is None:
        return
    counts[key] = max(0, counts.get(key, 0) + 1)


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_non_empty_string(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value
    return None
