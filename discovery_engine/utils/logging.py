"""
Structured logging for the venue discovery engine.

Every process (CLI, orchestrator, seeding script) configures logging once via
`configure_logging`. Records are rendered either as a compact console line or
as one JSON object per line for log shipping. While a run executes, the
orchestrator binds its id with `bind_run_id`; the handler filter then stamps
`run_id` onto every record emitted inside that run, including records from
the budget, strategy and session layers that never see the run object.

Usage:
    from discovery_engine.utils.logging import bind_run_id, configure_logging, get_logger

    configure_logging(level="INFO", json_logs=True)
    log = get_logger(__name__)
    with bind_run_id(run.id):
        log.info("[QUERY] site:wolt.com vegan Berlin", extra={"platform": "wolt"})
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

_current_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "discovery_run_id", default=None
)

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "extra"}


@contextlib.contextmanager
def bind_run_id(run_id: str) -> Iterator[None]:
    """Attach `run_id` to records logged from this context (and tasks it spawns)."""
    token = _current_run_id.set(run_id)
    try:
        yield
    finally:
        _current_run_id.reset(token)


def current_run_id() -> Optional[str]:
    return _current_run_id.get()


class RunContextFilter(logging.Filter):
    """Stamp the bound run id on records that did not pass one explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "run_id", None) is None:
            record.run_id = _current_run_id.get() or "-"
        return True


def _json_formatter(record: logging.LogRecord) -> str:
    """Render a log record as a single JSON line."""
    payload: Dict[str, Any] = {
        "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
    }
    for key, value in vars(record).items():
        if key not in _RESERVED_ATTRS and not key.startswith("_"):
            payload[key] = value
    if payload.get("run_id") == "-":
        payload.pop("run_id")
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    # Older call sites pass a nested dict under `extra=`.
    if isinstance(getattr(record, "extra", None), dict):
        payload.update(record.extra)
    return json.dumps(payload, default=str)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        return _json_formatter(record)


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    force: bool = True,
) -> None:
    """
    Configure root logging for a CLI invocation or script.

    Parameters
    ----------
    level : str
        Logging level name (e.g., "DEBUG", "INFO", "WARNING").
    json_logs : bool
        Emit one JSON object per record instead of the console line format.
    force : bool
        Replace handlers installed by an earlier call (repeated CLI invocations
        in one process, test runners).
    """
    if not force and logging.getLogger().handlers:
        return

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "run_context": {"()": RunContextFilter},
            },
            "formatters": {
                "console": {
                    "format": "%(asctime)s | %(levelname)-7s | %(run_id)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
                "json": {
                    "()": JsonFormatter,
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_logs else "console",
                    "filters": ["run_context"],
                    "level": level,
                }
            },
            "root": {
                "handlers": ["default"],
                "level": level,
            },
            # Third-party HTTP clients are chatty at INFO.
            "loggers": {
                "httpx": {"level": "WARNING"},
                "httpcore": {"level": "WARNING"},
            },
        }
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the named logger (the root logger when `name` is None)."""
    return logging.getLogger(name)


__all__ = [
    "JsonFormatter",
    "RunContextFilter",
    "bind_run_id",
    "configure_logging",
    "current_run_id",
    "get_logger",
]
