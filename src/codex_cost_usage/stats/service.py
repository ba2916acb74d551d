"""Daily cost report built from the scan cache."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime

from ..daykeys import DayRange
from ..ingestion.schemas import CONTEXT_CATEGORIES, ContextDay, ScanCache, ScanCounters
from ..ingestion.service import ScanService
from .schemas import CountBreakdown, DailyEntry, DailyReport, ModelBreakdown, ReportSummary

LOGGER = logging.getLogger(__name__)

# cost(model, input_tokens, cached_input_tokens, output_tokens) -> USD, or None when unpriced.
CostFunction = Callable[[str, int, int, int], float | None]


class StatsService:
    """Run a scan pass when one is due and build the daily report from the cache."""

    def __init__(self, scan_service: ScanService, cost_function: CostFunction) -> None:
        self._scan_service = scan_service
        self._cost_function = cost_function
        self._last_counters: ScanCounters | None = None

    @property
    def last_counters(self) -> ScanCounters | None:
        """Return the counters of the most recent scan pass."""
        return self._last_counters

    def load_daily_report(
        self,
        since: date | datetime,
        until: date | datetime,
        now: datetime | None = None,
    ) -> DailyReport:
        """Scan the session logs and report `[since, until]` one day per entry."""
        day_range = DayRange.from_dates(since, until, self._scan_service.options.timezone)
        outcome = self._scan_service.scan(day_range, now=now)
        self._last_counters = outcome.counters
        return build_daily_report(outcome.cache, day_range, self._cost_function)


def build_daily_report(cache: ScanCache, day_range: DayRange, cost_function: CostFunction) -> DailyReport:
    """Build the daily report for the exact requested range of `day_range`."""
    entries: list[DailyEntry] = []
    total_input = 0
    total_output = 0
    total_tokens = 0
    total_reasoning_output = 0
    total_cost = 0.0
    cost_seen = False

    for day in sorted(key for key in cache.days if day_range.contains(key)):
        models = cache.days[day]
        model_names = sorted(models)

        day_input = 0
        day_output = 0
        day_cached = 0
        day_reasoning_output = 0
        day_cost = 0.0
        day_cost_seen = False
        breakdowns: list[ModelBreakdown] = []

        for model in model_names:
            counts = models[model]
            day_input += counts.input
            day_output += counts.output
            day_cached += counts.cached_input
            day_reasoning_output += counts.reasoning_output

            cost = cost_function(model, counts.input, counts.cached_input, counts.output)
            breakdowns.append(
                ModelBreakdown(
                    model_name=model,
                    cost_usd=cost,
                    input_tokens=counts.input,
                    output_tokens=counts.output,
                    cache_read_tokens=counts.cached_input,
                    reasoning_output_tokens=counts.reasoning_output,
                    total_tokens=counts.input + counts.output,
                )
            )
            if cost is not None:
                day_cost += cost
                day_cost_seen = True

        # Stable sort keeps name order among equal costs.
        breakdowns.sort(key=lambda item: item.cost_usd if item.cost_usd is not None else -1.0, reverse=True)

        day_total = day_input + day_output
        entry_cost = day_cost if day_cost_seen else None
        context = cache.context_days.get(day)
        entries.append(
            DailyEntry(
                date=day,
                input_tokens=day_input,
                output_tokens=day_output,
                cache_read_tokens=day_cached,
                total_tokens=day_total,
                cost_usd=entry_cost,
                models_used=model_names,
                model_breakdowns=breakdowns or None,
                reasoning_output_tokens=day_reasoning_output or None,
                **_context_breakdowns(context),
            )
        )

        total_input += day_input
        total_output += day_output
        total_tokens += day_total
        total_reasoning_output += day_reasoning_output
        if entry_cost is not None:
            total_cost += entry_cost
            cost_seen = True

    summary = None
    if entries:
        summary = ReportSummary(
            total_input_tokens=total_input,
            total_output_tokens=total_output,
            total_tokens=total_tokens,
            total_cost_usd=total_cost if cost_seen else None,
            total_reasoning_output_tokens=total_reasoning_output or None,
        )
    LOGGER.debug("Built daily report with %d entries.", len(entries))
    return DailyReport(entries=entries, summary=summary)


def count_breakdowns(counts: dict[str, int] | None) -> list[CountBreakdown] | None:
    """Sort label counts by descending count, then by name; `None` when there are none."""
    if not counts:
        return None
    items = sorted(((name, count) for name, count in counts.items() if count > 0), key=lambda item: (-item[1], item[0]))
    return [CountBreakdown(name=name, count=count) for name, count in items] or None


_BREAKDOWN_FIELDS = {
    "approval_policies": "approval_policy_breakdowns",
    "sandbox_modes": "sandbox_mode_breakdowns",
    "effort_levels": "effort_breakdowns",
    "risky_skills": "risky_skill_breakdowns",
    "forbidden_skills": "forbidden_skill_breakdowns",
}


def _context_breakdowns(context: ContextDay | None) -> dict[str, list[CountBreakdown] | None]:
    return {
        _BREAKDOWN_FIELDS[name]: count_breakdowns(context.category(name) if context is not None else None)
        for name in CONTEXT_CATEGORIES
    }
