from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import typer

from discovery_engine.config import get_settings
from discovery_engine.domain.models import CandidateStatus, RunStatus
from discovery_engine.orchestrator import (
    DiscoveryRequest,
    ExtractionRequest,
    RunOrchestrator,
    RunOutcome,
    build_orchestrator,
)
from discovery_engine.platforms import available_platforms
from discovery_engine.reporter import (
    persist_run_summary,
    print_budget_status,
    print_candidates,
    print_run_summary,
    print_strategy_stats,
)
from discovery_engine.strategies import evolve as evolve_strategies
from discovery_engine.strategies import seed_strategies
from discovery_engine.utils.logging import configure_logging

app = typer.Typer(help="Venue discovery and extraction engine CLI.")

# Exit code for runs that ended failed; partial and cancelled still exit 0.
EXIT_RUN_FAILED = 1
EXIT_ADMISSION_DENIED = 2


def _orchestrator() -> RunOrchestrator:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    return build_orchestrator(settings)


def _report(outcome: RunOutcome, persist: bool, results_dir: Path) -> None:
    if outcome.run is None:
        typer.echo(f"Run not admitted: {outcome.decision.reason}", err=True)
        raise typer.Exit(code=EXIT_ADMISSION_DENIED)
    print_run_summary(outcome.run)
    print_candidates(outcome.candidates)
    if persist:
        path = persist_run_summary(outcome.run, results_dir)
        typer.echo(f"Run summary written to {path}")
    if outcome.run.status is RunStatus.FAILED:
        raise typer.Exit(code=EXIT_RUN_FAILED)


@app.command()
def info() -> None:
    """
    Show effective configuration values and missing service configuration.
    """
    settings = get_settings()
    typer.echo(
        f"store={settings.store_backend} | budget daily=${settings.budget_daily_limit_usd:.2f} "
        f"monthly=${settings.budget_monthly_limit_usd:.2f} throttle={settings.budget_throttle_fraction:.0%} | "
        f"search slots={len(settings.search_api_key_list)} quota={settings.search_free_daily_quota}/day | "
        f"concurrency={settings.max_concurrency_per_platform}/platform delay={settings.request_delay_seconds}s"
    )
    for warning in settings.validate_runtime():
        typer.echo(f"warning: {warning}", err=True)


@app.command()
def platforms() -> None:
    """
    List the delivery platforms the engine knows about.
    """
    typer.echo("Available platforms: " + ", ".join(available_platforms()))


@app.command()
def seed() -> None:
    """
    Load the built-in seed strategies into the strategy store.
    """
    orchestrator = _orchestrator()
    added = seed_strategies(orchestrator.strategies)
    typer.echo(f"Added {len(added)} seed strategy/strategies ({len(orchestrator.strategies)} total).")


@app.command()
def discover(
    platform: List[str] = typer.Option(..., "--platform", "-p", help="Platform to search (repeatable)."),
    country: str = typer.Option(..., "--country", "-c", help="ISO country code, e.g. DE."),
    city: List[str] = typer.Option(..., "--city", help="City to search (repeatable)."),
    max_queries: Optional[int] = typer.Option(None, "--max-queries", "-n", help="Cap on queries for this run."),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Write the run summary to results/."),
    results_dir: Path = typer.Option(Path("results"), "--results-dir", help="Where run summaries are written."),
) -> None:
    """
    Run a discovery pass: search platforms for venues in the given cities.
    """
    orchestrator = _orchestrator()
    if len(orchestrator.strategies) == 0:
        seed_strategies(orchestrator.strategies)
    request = DiscoveryRequest(platforms=platform, country=country, cities=city, max_queries=max_queries)
    typer.echo(f"Discovering on {', '.join(platform)} in {country.upper()} ({', '.join(city)}).")

    async def _run() -> RunOutcome:
        try:
            return await orchestrator.start_discovery(request)
        finally:
            await orchestrator.close()

    _report(asyncio.run(_run()), persist, results_dir)


@app.command()
def extract(
    urls: List[str] = typer.Argument(..., help="Venue page URLs to extract dishes from."),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Write the run summary to results/."),
    results_dir: Path = typer.Option(Path("results"), "--results-dir", help="Where run summaries are written."),
) -> None:
    """
    Run an extraction pass: render venue pages and extract dish candidates.
    """
    orchestrator = _orchestrator()
    typer.echo(f"Extracting {len(urls)} venue page(s).")

    async def _run() -> RunOutcome:
        try:
            return await orchestrator.start_extraction(ExtractionRequest(venue_urls=urls))
        finally:
            await orchestrator.close()

    _report(asyncio.run(_run()), persist, results_dir)


@app.command()
def budget(days: int = typer.Option(7, "--days", "-d", help="Days of history to show.")) -> None:
    """
    Show today's and this month's spend against the configured limits.
    """
    orchestrator = _orchestrator()
    print_budget_status(orchestrator.admission.status(), orchestrator.ledger.history(days))


@app.command()
def strategies() -> None:
    """
    Show strategy library statistics, top performers and struggling strategies.
    """
    orchestrator = _orchestrator()
    print_strategy_stats(orchestrator.strategies.stats())


@app.command()
def evolve(max_new: int = typer.Option(10, "--max-new", help="Upper bound on new strategies.")) -> None:
    """
    Derive new strategies from the current high performers.
    """
    orchestrator = _orchestrator()
    settings = orchestrator.settings
    created = evolve_strategies(
        orchestrator.strategies,
        min_success_rate=settings.evolve_min_success_rate,
        min_uses=settings.evolve_min_uses,
        max_new=max_new,
    )
    typer.echo(f"Evolved {len(created)} new strategy/strategies.")
    for strategy in created:
        typer.echo(f"  {strategy.id}: {strategy.query_template} (from {strategy.parent_strategy_id})")


@app.command()
def candidates(
    status: Optional[CandidateStatus] = typer.Option(None, "--status", "-s", help="Filter by review status."),
) -> None:
    """
    List stored venue and dish candidates.
    """
    orchestrator = _orchestrator()
    print_candidates(orchestrator.candidates.list(status))


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
