from __future__ import annotations

import json

import pytest
from rich.console import Console
from typer.testing import CliRunner

from discovery_engine import main
from discovery_engine.domain.models import StrategyOutcome
from discovery_engine.orchestrator import DiscoveryRequest
from discovery_engine.reporter import persist_run_summary, print_run_summary, print_strategy_stats

WOLT_VENUE_URL = "https://wolt.com/de/deu/berlin/restaurant/green-bowl"

runner = CliRunner()


@pytest.fixture
def cli(monkeypatch, orchestrator):
    monkeypatch.setattr(main, "_orchestrator", lambda: orchestrator)
    return orchestrator


def test_platforms_lists_catalogue() -> None:
    result = runner.invoke(main.app, ["platforms"])
    assert result.exit_code == 0
    assert "wolt" in result.output
    assert "uber_eats" in result.output


def test_info_prints_effective_settings() -> None:
    result = runner.invoke(main.app, ["info"])
    assert result.exit_code == 0
    assert "budget daily=" in result.output


def test_discover_runs_and_persists_summary(cli, tmp_path) -> None:
    result = runner.invoke(
        main.app,
        ["discover", "-p", "wolt", "-c", "de", "--city", "Berlin", "--results-dir", str(tmp_path)],
    )

    assert result.exit_code == 0, result.output
    assert "Discovering on wolt in DE" in result.output
    latest = json.loads((tmp_path / "latest.json").read_text(encoding="utf-8"))
    assert latest["status"] == "completed"
    assert latest["kind"] == "discovery"
    assert len(list(tmp_path.glob("discovery-*.json"))) == 1


def test_denied_discovery_exits_with_admission_code(cli) -> None:
    cli.ledger.record_usage("earlier-spend", search_cost=cli.settings.budget_daily_limit_usd)
    result = runner.invoke(main.app, ["discover", "-p", "wolt", "-c", "DE", "--city", "Berlin", "--no-persist"])
    assert result.exit_code == main.EXIT_ADMISSION_DENIED


def test_extract_reports_candidates(cli, tmp_path) -> None:
    result = runner.invoke(main.app, ["extract", WOLT_VENUE_URL, "--no-persist"])
    assert result.exit_code == 0, result.output
    assert "Candidates" in result.output
    assert len(cli.candidates.list()) == 3


def test_budget_strategies_and_candidates_commands(cli) -> None:
    for command in (["budget", "--days", "3"], ["strategies"], ["candidates"], ["candidates", "-s", "rejected"]):
        result = runner.invoke(main.app, command)
        assert result.exit_code == 0, (command, result.output)


def test_evolve_reports_new_strategies(cli) -> None:
    cli.strategies.create("wolt", "DE", 'site:wolt.com/de "vegan kebab" {city}', strategy_id="manual-kebab")
    for _ in range(cli.settings.evolve_min_uses):
        cli.strategies.record_outcome("manual-kebab", StrategyOutcome.SUCCESS)

    result = runner.invoke(main.app, ["evolve", "--max-new", "1"])

    assert result.exit_code == 0
    assert "Evolved 1 new strategy/strategies." in result.output
    assert "(from manual-kebab)" in result.output


@pytest.mark.asyncio
async def test_reporter_renders_run_and_persists(orchestrator, tmp_path) -> None:
    outcome = await orchestrator.start_discovery(
        DiscoveryRequest(platforms=("wolt",), country="DE", cities=("Berlin",))
    )
    console = Console(record=True, width=120)

    print_run_summary(outcome.run, console=console)
    print_strategy_stats(orchestrator.strategies.stats(), console=console)

    text = console.export_text()
    assert outcome.run.id in text
    assert "Strategy Library" in text
    path = persist_run_summary(outcome.run, tmp_path)
    assert path.name.startswith(outcome.run.id)
    assert (tmp_path / "latest.json").exists()
