"""Typed schemas for the daily cost report."""

from __future__ import annotations

from dataclasses import dataclass

from ..daykeys import DayKey
from ..ingestion.schemas import ModelName


@dataclass(frozen=True)
class ModelBreakdown:
    """Token usage and cost of one model on one day."""

    model_name: ModelName
    cost_usd: float | None
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    reasoning_output_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class CountBreakdown:
    """How often one context label was seen on one day."""

    name: str
    count: int


@dataclass(frozen=True)
class DailyEntry:
    """Aggregated usage for one day.

    Attributes:
        cost_usd: Sum of the known model costs; `None` when no model had a known cost.
        reasoning_output_tokens: `None` when zero.
        *_breakdowns: Context counts by descending count; `None` when the day has none.
    """

    date: DayKey
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    total_tokens: int
    cost_usd: float | None
    models_used: list[ModelName]
    model_breakdowns: list[ModelBreakdown] | None
    reasoning_output_tokens: int | None = None
    approval_policy_breakdowns: list[CountBreakdown] | None = None
    sandbox_mode_breakdowns: list[CountBreakdown] | None = None
    effort_breakdowns: list[CountBreakdown] | None = None
    risky_skill_breakdowns: list[CountBreakdown] | None = None
    forbidden_skill_breakdowns: list[CountBreakdown] | None = None


@dataclass(frozen=True)
class ReportSummary:
    """Totals over every entry of a report."""

    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    total_cost_usd: float | None
    total_reasoning_output_tokens: int | None = None


@dataclass(frozen=True)
class DailyReport:
    """Per-day entries for the requested range, sorted by date."""

    entries: list[DailyEntry]
    summary: ReportSummary | None
