"""Rich and JSON rendering helpers for the daily cost report."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

import orjson
from rich.console import Console
from rich.table import Table

from .schemas import CountBreakdown, DailyReport

TABLE_ROW_STYLES = ["white", "yellow"]
UNKNOWN_COST = "-"


def render_daily_report(report: DailyReport, console: Console, show_context: bool = False) -> None:
    """Render the per-model daily table, the daily cost table and optional context counts."""
    if not report.entries:
        console.print("No Codex token usage found in the requested range.")
        return

    _print_model_table(report, console)
    console.print("\n")
    _print_daily_table(report, console)

    if show_context:
        console.print("\n")
        _print_context_table(report, console)


def report_to_json(report: DailyReport) -> bytes:
    """Serialize the report as indented JSON; unknown costs become `null`."""
    payload: dict[str, Any] = {
        "data": [asdict(entry) for entry in report.entries],
        "summary": asdict(report.summary) if report.summary is not None else None,
    }
    return orjson.dumps(payload, option=orjson.OPT_INDENT_2)


def _format_cost(cost: float | None) -> str:
    return f"{cost:,.6f}" if cost is not None else UNKNOWN_COST


def _print_model_table(report: DailyReport, console: Console) -> None:
    table = Table(title="Daily Token Usage by Model", show_footer=True, footer_style="bold", title_justify="left")
    table.add_column("Date", footer="Grand Total", justify="left")
    table.add_column("Model", justify="left")
    table.add_column("Input Tokens", justify="right")
    table.add_column("Cached Tokens", justify="right")
    table.add_column("Output Tokens", justify="right")
    table.add_column("Reasoning Tokens", justify="right")
    table.add_column("Total Tokens", justify="right")
    table.add_column("Cost ($)", justify="right")

    total_cached = 0
    total_reasoning = 0
    for index, entry in enumerate(report.entries):
        style = TABLE_ROW_STYLES[index % len(TABLE_ROW_STYLES)]
        for breakdown in entry.model_breakdowns or []:
            total_cached += breakdown.cache_read_tokens
            total_reasoning += breakdown.reasoning_output_tokens
            table.add_row(
                entry.date,
                breakdown.model_name,
                f"{breakdown.input_tokens:,}",
                f"{breakdown.cache_read_tokens:,}",
                f"{breakdown.output_tokens:,}",
                f"{breakdown.reasoning_output_tokens:,}",
                f"{breakdown.total_tokens:,}",
                _format_cost(breakdown.cost_usd),
                style=style,
            )

    summary = report.summary
    if summary is not None:
        table.columns[2].footer = f"{summary.total_input_tokens:,}"
        table.columns[3].footer = f"{total_cached:,}"
        table.columns[4].footer = f"{summary.total_output_tokens:,}"
        table.columns[5].footer = f"{total_reasoning:,}"
        table.columns[6].footer = f"{summary.total_tokens:,}"
        table.columns[7].footer = _format_cost(summary.total_cost_usd)
    console.print(table)


def _print_daily_table(report: DailyReport, console: Console) -> None:
    cost_table = Table(title="Daily Aggregated Costs", show_footer=True, title_justify="left")
    cost_table.add_column("Date", justify="left")
    cost_table.add_column("Models", justify="left")
    cost_table.add_column("Total Tokens", justify="right", footer_style="bold")
    cost_table.add_column("Cost ($)", justify="right", footer_style="bold")

    for index, entry in enumerate(report.entries):
        style = TABLE_ROW_STYLES[index % len(TABLE_ROW_STYLES)]
        cost_table.add_row(
            entry.date,
            ", ".join(entry.models_used),
            f"{entry.total_tokens:,}",
            _format_cost(entry.cost_usd),
            style=style,
        )

    if report.summary is not None:
        cost_table.columns[2].footer = f"{report.summary.total_tokens:,}"
        cost_table.columns[3].footer = _format_cost(report.summary.total_cost_usd)
    console.print(cost_table)


def _print_context_table(report: DailyReport, console: Console) -> None:
    table = Table(title="Daily Session Context", title_justify="left")
    table.add_column("Date", justify="left")
    table.add_column("Approval Policy", justify="left")
    table.add_column("Sandbox Mode", justify="left")
    table.add_column("Effort", justify="left")
    table.add_column("Risky Skills", justify="left")
    table.add_column("Forbidden Skills", justify="left")

    for index, entry in enumerate(report.entries):
        style = TABLE_ROW_STYLES[index % len(TABLE_ROW_STYLES)]
        table.add_row(
            entry.date,
            _format_counts(entry.approval_policy_breakdowns),
            _format_counts(entry.sandbox_mode_breakdowns),
            _format_counts(entry.effort_breakdowns),
            _format_counts(entry.risky_skill_breakdowns),
            _format_counts(entry.forbidden_skill_breakdowns),
            style=style,
        )
    console.print(table)


def _format_counts(breakdowns: list[CountBreakdown] | None) -> str:
    if not breakdowns:
        return ""
    return ", ".join(f"{item.name} ({item.count})" for item in breakdowns)
