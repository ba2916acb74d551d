"""CLI entrypoints for Codex cost usage tools."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

import typer
from rich.console import Console

from model_pricing import build_cost_function, get_price_spec

from .config import DEFAULT_REFRESH_MIN_INTERVAL_SECONDS, ScanOptions
from .daykeys import DayRange
from .ingestion.repository import CacheRepository
from .ingestion.schemas import ScanCounters
from .ingestion.service import ScanService
from .stats.render import render_daily_report, report_to_json
from .stats.service import StatsService

LOGGER = logging.getLogger(__name__)
DEFAULT_REPORT_DAYS = 30

TYPER_APP = typer.Typer(help="Codex session cost usage tooling.")


@TYPER_APP.callback()
def main() -> None:
    """Root CLI callback."""


SESSIONS_ROOT_OPTION = typer.Option(
    None,
    "--sessions-root",
    "-s",
    help="Root directory containing Codex JSONL session files. Defaults to $CODEX_HOME/sessions or ~/.codex/sessions.",
)
ARCHIVED_OPTION = typer.Option(
    True,
    "--archived/--no-archived",
    help="Also scan the sibling archived_sessions directory.",
)
CACHE_ROOT_OPTION = typer.Option(
    None,
    "--cache-root",
    "-c",
    help="Directory holding the scan cache. Defaults to $XDG_CACHE_HOME/codex-cost-usage.",
)
REFRESH_INTERVAL_OPTION = typer.Option(
    DEFAULT_REFRESH_MIN_INTERVAL_SECONDS,
    "--refresh-interval",
    min=0.0,
    help="Minimum seconds between scan passes; 0 scans every time.",
)
FORCE_RESCAN_OPTION = typer.Option(
    False,
    "--force-rescan",
    help="Discard the scan cache and rebuild it from the session files.",
)
TIMEZONE_OPTION = typer.Option(
    None,
    "--timezone",
    "-tz",
    help="Timezone used to bucket usage into days (e.g., 'UTC', 'America/New_York'). Defaults to local system time.",
)
SINCE_OPTION = typer.Option(None, "--since", help="First day of the report (YYYY-MM-DD).")
UNTIL_OPTION = typer.Option(None, "--until", help="Last day of the report (YYYY-MM-DD). Defaults to today.")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable info-level logging.")


@TYPER_APP.command("scan")
def scan_command(
    sessions_root: Path | None = SESSIONS_ROOT_OPTION,
    archived: bool = ARCHIVED_OPTION,
    cache_root: Path | None = CACHE_ROOT_OPTION,
    refresh_interval: float = REFRESH_INTERVAL_OPTION,
    force_rescan: bool = FORCE_RESCAN_OPTION,
    timezone: str | None = TIMEZONE_OPTION,
    since: str | None = SINCE_OPTION,
    until: str | None = UNTIL_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run one scan pass over the session logs and print the pass counters."""
    _configure_logging(verbose)
    options = _build_options(sessions_root, archived, cache_root, refresh_interval, force_rescan, timezone)
    since_date, until_date = _resolve_report_dates(since, until, options)

    service = _build_scan_service(options)
    outcome = service.scan(DayRange.from_dates(since_date, until_date, options.timezone))
    _emit_summary(outcome.counters)
    if outcome.counters.failed_files:
        raise typer.Exit(code=1)


@TYPER_APP.command("daily")
def daily_command(
    sessions_root: Path | None = SESSIONS_ROOT_OPTION,
    archived: bool = ARCHIVED_OPTION,
    cache_root: Path | None = CACHE_ROOT_OPTION,
    refresh_interval: float = REFRESH_INTERVAL_OPTION,
    force_rescan: bool = FORCE_RESCAN_OPTION,
    timezone: str | None = TIMEZONE_OPTION,
    since: str | None = SINCE_OPTION,
    until: str | None = UNTIL_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON instead of tables."),
    show_context: bool = typer.Option(
        False,
        "--context",
        help="Also print approval policy, sandbox mode, effort and skill counts.",
    ),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Print daily token usage and costs, scanning the session logs when a pass is due."""
    _configure_logging(verbose)
    options = _build_options(sessions_root, archived, cache_root, refresh_interval, force_rescan, timezone)
    since_date, until_date = _resolve_report_dates(since, until, options)

    try:
        cost_function = build_cost_function(get_price_spec())
    except RuntimeError as exc:
        raise typer.BadParameter(str(exc)) from exc

    service = StatsService(scan_service=_build_scan_service(options), cost_function=cost_function)
    report = service.load_daily_report(since_date, until_date)
    if verbose and service.last_counters is not None:
        _emit_summary(service.last_counters)

    if as_json:
        typer.echo(report_to_json(report).decode("utf-8"))
        return
    render_daily_report(report, Console(), show_context=show_context)


def _build_options(
    sessions_root: Path | None,
    archived: bool,
    cache_root: Path | None,
    refresh_interval: float,
    force_rescan: bool,
    timezone: str | None,
) -> ScanOptions:
    """Map CLI options onto scan options."""
    return ScanOptions(
        sessions_root=sessions_root,
        include_archived=archived,
        cache_root=cache_root,
        refresh_min_interval_seconds=refresh_interval,
        force_rescan=force_rescan,
        timezone=_parse_timezone(timezone),
    )


def _build_scan_service(options: ScanOptions) -> ScanService:
    repository = CacheRepository(options.resolved_cache_root(), provider=options.provider)
    return ScanService(repository=repository, options=options)


def _configure_logging(verbose: bool) -> None:
    """Initialize default logging for CLI usage."""
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="[%(asctime)s][%(levelname)s][%(name)s] %(message)s",
    )


def _emit_summary(counters: ScanCounters) -> None:
    """Print scan counters to stdout."""
    summary_lines = [
        f"pass_skipped={str(counters.pass_skipped).lower()}",
        f"files_scanned={counters.files_scanned}",
        f"files_skipped_unchanged={counters.files_skipped_unchanged}",
        f"files_parsed_incremental={counters.files_parsed_incremental}",
        f"files_parsed_full={counters.files_parsed_full}",
        f"files_dropped_duplicate={counters.files_dropped_duplicate}",
        f"files_retracted_stale={counters.files_retracted_stale}",
        f"files_failed={counters.files_failed}",
        f"lines_skipped={counters.lines_skipped}",
    ]
    for line in summary_lines:
        typer.echo(line)

    for failed_file in counters.failed_files:
        typer.echo(f"failed_file={failed_file}")


def _parse_timezone(timezone: str | None) -> ZoneInfo | None:
    """Parse timezone option into a ZoneInfo instance."""
    if timezone is None:
        return None
    try:
        return ZoneInfo(timezone)
    except Exception as exc:
        raise typer.BadParameter(f"Invalid timezone: {timezone}.") from exc


def _parse_date(value: str | None, option_name: str) -> date | None:
    """Parse a `YYYY-MM-DD` option value."""
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid {option_name} value: {value}. Expected YYYY-MM-DD.") from exc


def _resolve_report_dates(since: str | None, until: str | None, options: ScanOptions) -> tuple[date, date]:
    """Resolve the report window; defaults to the last 30 days ending today."""
    until_date = _parse_date(until, "--until") or datetime.now(options.timezone).date()
    since_date = _parse_date(since, "--since") or until_date - timedelta(days=DEFAULT_REPORT_DAYS - 1)
    if since_date > until_date:
        raise typer.BadParameter(f"--since ({since_date}) must not be after --until ({until_date}).")
    return since_date, until_date


def module_cli_entry_point():
    TYPER_APP()
