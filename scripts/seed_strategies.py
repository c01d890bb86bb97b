"""
Strategy loading script for the venue discovery engine.

Loads the built-in seed strategies and, optionally, manually written ones from
a JSON file into the configured document store. Intended for the Postgres
backend, where strategies outlive the process; re-running it is safe because
existing strategy ids are skipped.

JSON file format: a list of objects with `platform`, `country`,
`query_template` and optional `tags`.
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List

import typer

from discovery_engine.config import get_settings
from discovery_engine.domain.models import StrategyOrigin
from discovery_engine.infrastructure.document_store import build_document_store
from discovery_engine.platforms import get_platform
from discovery_engine.strategies import StrategyStore, seed_strategies
from discovery_engine.utils.logging import configure_logging

app = typer.Typer(help="Load seed and manual strategies into the strategy store.")


def _read_manual(path: Path) -> List[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise typer.BadParameter(f"{path} must contain a JSON list of strategies")
    return entries


def _load_manual(store: StrategyStore, entries: List[Dict[str, Any]]) -> int:
    existing = {(s.platform, s.country, s.query_template) for s in store.all()}
    added = 0
    for entry in entries:
        platform = get_platform(entry["platform"]).name
        country = entry["country"].upper()
        template = entry["query_template"]
        if (platform, country, template) in existing:
            continue
        store.create(
            platform,
            country,
            template,
            origin=StrategyOrigin.MANUAL,
            tags=list(entry.get("tags", ["manual"])),
        )
        existing.add((platform, country, template))
        added += 1
    return added


@app.command()
def main(
    manual_file: Path | None = typer.Option(
        None,
        "--file",
        "-f",
        help="Optional JSON file with manually written strategies.",
    ),
    no_seeds: bool = typer.Option(
        False,
        "--no-seeds",
        help="Skip the built-in seed strategies.",
    ),
) -> None:
    """
    Load strategies into the store named by STORE_BACKEND.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    start = time.perf_counter()
    store = StrategyStore.from_settings(settings, build_document_store(settings))
    typer.echo(f"Store backend={settings.store_backend}, {len(store)} strategy/strategies present.")

    if not no_seeds:
        added = seed_strategies(store)
        typer.echo(f"Seed strategies added: {len(added)}")

    if manual_file:
        added_manual = _load_manual(store, _read_manual(manual_file))
        typer.echo(f"Manual strategies added: {added_manual}")

    typer.echo(f"Done in {time.perf_counter() - start:.2f}s. {len(store)} strategy/strategies in store.")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
