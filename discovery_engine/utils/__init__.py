"""
Utilities package for the venue discovery engine.

Exports the shared logging helpers. Keep this package lightweight and free
of domain-specific logic.
"""

from discovery_engine.utils.logging import bind_run_id, configure_logging, get_logger

__all__ = [
    "bind_run_id",
    "configure_logging",
    "get_logger",
]
