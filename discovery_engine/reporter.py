from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from discovery_engine.budget import BudgetStatus
from discovery_engine.domain.models import BudgetLedger, Candidate, Run, RunStatus, Strategy
from discovery_engine.strategies import StrategyStats
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

_STATUS_STYLES = {
    RunStatus.COMPLETED: "bold green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.CANCELLED: "magenta",
    RunStatus.FAILED: "bold red",
    RunStatus.RUNNING: "cyan",
    RunStatus.PENDING: "dim",
}


def _console(console: Optional[Console]) -> Console:
    return console or Console()


def print_run_summary(run: Run, console: Optional[Console] = None, log_lines: int = 10) -> None:
    """
    Render one run: status, progress, costs, counters and the tail of its log.
    """
    console = _console(console)
    style = _STATUS_STYLES.get(run.status, "white")

    table = Table(title=f"Run {run.id}", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")

    table.add_row("Kind", run.kind.value)
    table.add_row("Status", f"[{style}]{run.status.value}[/{style}]")
    table.add_row("Progress", f"{run.progress.current}/{run.progress.total} ({run.progress.percentage:.1f}%)")
    table.add_row("Search queries", f"{run.costs.search_queries:,}")
    table.add_row("AI calls", f"{run.costs.ai_calls:,}")
    table.add_row("Spend (USD)", f"{run.costs.estimated_spend:.4f}")
    for stat, value in sorted(run.stats.items()):
        table.add_row(stat.replace("_", " ").capitalize(), f"{value:,}")
    if run.completed_at is not None:
        table.add_row("Duration (s)", f"{(run.completed_at - run.started_at).total_seconds():.1f}")
    if run.cancelled_by:
        table.add_row("Cancelled by", run.cancelled_by)
    if run.error:
        table.add_row("Error", f"[red]{run.error}[/red]")

    console.print(table)
    for entry in run.logs[-log_lines:]:
        level_style = "red" if entry.level == "error" else "yellow" if entry.level == "warning" else "dim"
        console.print(f"[{level_style}]{entry.timestamp:%H:%M:%S} {entry.level:<7}[/{level_style}] {entry.message}")


def print_budget_status(
    status: BudgetStatus,
    history: Sequence[BudgetLedger] = (),
    console: Optional[Console] = None,
) -> None:
    console = _console(console)
    title = "Budget Status"
    if status.throttled:
        title = f"{title} [bold red](THROTTLED)[/bold red]"

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Period", style="cyan", no_wrap=True)
    table.add_column("Spend (USD)", justify="right", style="magenta")
    table.add_column("Limit (USD)", justify="right", style="green")
    table.add_column("Remaining (USD)", justify="right", style="bold green")
    table.add_row("Today", f"{status.daily_spend:.4f}", f"{status.daily_limit:.2f}", f"{status.daily_remaining:.4f}")
    table.add_row(
        "This month", f"{status.monthly_spend:.4f}", f"{status.monthly_limit:.2f}", f"{status.monthly_remaining:.4f}"
    )
    table.caption = (
        f"{status.percentage_used:.1f}% of daily limit used │ "
        f"free searches {status.free_searches_today} │ paid searches {status.paid_searches_today} │ "
        f"AI calls {status.ai_calls_today}"
    )
    console.print(table)

    if not history:
        return
    days = Table(title="Daily History", box=box.SIMPLE)
    days.add_column("Day", style="cyan")
    days.add_column("Free", justify="right")
    days.add_column("Paid", justify="right")
    days.add_column("AI calls", justify="right")
    days.add_column("Cost (USD)", justify="right", style="magenta")
    days.add_column("Throttles", justify="right", style="red")
    for ledger in history:
        days.add_row(
            ledger.id,
            str(ledger.free_searches),
            str(ledger.paid_searches),
            str(sum(ledger.ai_calls.values())),
            f"{ledger.total_cost:.4f}",
            str(len(ledger.throttle_events)),
        )
    console.print(days)


def _strategy_rows(table: Table, strategies: Iterable[Strategy]) -> None:
    for strategy in strategies:
        table.add_row(
            strategy.id,
            f"{strategy.platform}/{strategy.country}",
            strategy.query_template,
            str(strategy.total_uses),
            f"{strategy.success_rate:.1f}",
        )


def _strategy_table(title: str) -> Table:
    table = Table(title=title, box=box.SIMPLE)
    table.add_column("Strategy", style="cyan", no_wrap=True)
    table.add_column("Target")
    table.add_column("Template", overflow="fold")
    table.add_column("Uses", justify="right")
    table.add_column("Success %", justify="right", style="bold green")
    return table


def print_strategy_stats(stats: StrategyStats, console: Optional[Console] = None) -> None:
    console = _console(console)

    summary = Table(title="Strategy Library", box=box.ROUNDED, show_header=False)
    summary.add_column("Field", style="cyan")
    summary.add_column("Value", justify="right")
    summary.add_row("Strategies", f"{stats.total_strategies} ({stats.active_strategies} active)")
    summary.add_row("Deprecated", str(stats.deprecated_strategies))
    summary.add_row("Average success %", f"{stats.average_success_rate:.1f}")
    summary.add_row("Uses", f"{stats.total_uses:,}")
    summary.add_row("Discoveries", f"{stats.total_discoveries:,}")
    summary.add_row("False positives", f"{stats.total_false_positives:,}")
    summary.add_row("Tiers", " │ ".join(f"{tier} {count}" for tier, count in stats.tiers.items()))
    if stats.by_platform:
        summary.add_row("By platform", ", ".join(f"{k}={v}" for k, v in sorted(stats.by_platform.items())))
    console.print(summary)

    if stats.top_strategies:
        top = _strategy_table("Top Performers")
        _strategy_rows(top, stats.top_strategies)
        console.print(top)
    if stats.struggling_strategies:
        struggling = _strategy_table("Struggling")
        _strategy_rows(struggling, stats.struggling_strategies)
        console.print(struggling)


def print_candidates(candidates: List[Candidate], console: Optional[Console] = None) -> None:
    console = _console(console)
    if not candidates:
        console.print("[yellow]No candidates to display.[/yellow]")
        return

    table = Table(title="Candidates", box=box.ROUNDED, caption="Sorted by confidence (descending)")
    table.add_column("Kind", style="cyan")
    table.add_column("Name")
    table.add_column("Platform", style="blue")
    table.add_column("Confidence", justify="right", style="bold green")
    table.add_column("Status", style="magenta")
    table.add_column("URL", overflow="fold", style="dim")
    for candidate in sorted(candidates, key=lambda c: c.confidence_score, reverse=True):
        table.add_row(
            candidate.kind.value,
            candidate.name or "-",
            candidate.platform,
            f"{candidate.confidence_score:.1f}",
            candidate.status.value,
            candidate.url,
        )
    console.print(table)


def persist_run_summary(run: Run, results_dir: Path = Path("results")) -> Path:
    """Write the final run snapshot to `latest.json` plus a timestamped archive copy."""
    results_dir.mkdir(parents=True, exist_ok=True)
    payload = run.model_dump(mode="json")
    latest_path = results_dir / "latest.json"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    archive_path = results_dir / f"{run.id}-{timestamp}.json"

    for path in (latest_path, archive_path):
        with path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)

    log.info("Run summary persisted", extra={"latest": str(latest_path), "archive": str(archive_path)})
    return archive_path


__all__ = [
    "persist_run_summary",
    "print_budget_status",
    "print_candidates",
    "print_run_summary",
    "print_strategy_stats",
]
