"""
PostgreSQL connectivity for the document store.

One process-wide pool serves every `PostgresDocumentStore` operation; it is
opened lazily on first use, sized from DB_POOL_MIN/DB_POOL_MAX, and closed
at interpreter exit. Schema setup uses a dedicated short-lived connection
that is retried with tenacity while the database is still starting up
(docker compose, CI service containers).
"""

from __future__ import annotations

import atexit
import logging
import threading
from typing import Optional

import psycopg
from psycopg import Connection
from psycopg_pool import ConnectionPool
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from discovery_engine.config import Settings, get_settings
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

CONNECT_ATTEMPTS = 3


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose the DSN from DB_* settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


class PoolManager:
    """
    Thread-safe singleton owning the document store's connection pool.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "PoolManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._pool = None
                atexit.register(cls._instance.close)
            return cls._instance

    def pool(self, min_size: Optional[int] = None, max_size: Optional[int] = None) -> ConnectionPool:
        """
        Return the shared pool, opening it on first call.

        Sizes only apply to the call that opens the pool; later callers get
        the existing pool unchanged.
        """
        with self._lock:
            if self._pool is None:
                settings = get_settings()
                self._pool = ConnectionPool(
                    conninfo=build_dsn(settings),
                    min_size=min_size if min_size is not None else settings.db_pool_min,
                    max_size=max_size if max_size is not None else settings.db_pool_max,
                    open=True,
                )
                log.info(
                    f"[DB POOL OPENED] {settings.db_host}:{settings.db_port}/{settings.db_name}",
                    extra={"min_size": self._pool.min_size, "max_size": self._pool.max_size},
                )
            return self._pool

    def close(self) -> None:
        """Close the pool if it was opened. Registered with atexit."""
        with self._lock:
            if self._pool is None:
                return
            try:
                self._pool.close()
            except psycopg.Error as exc:
                log.warning(f"[DB POOL CLOSE FAILED] {exc}")
            finally:
                self._pool = None


@retry(
    stop=stop_after_attempt(CONNECT_ATTEMPTS),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True,
)
def get_sync_connection(dsn: Optional[str] = None) -> Connection:
    """
    Open a dedicated connection for one-off work such as schema creation.

    Raises
    ------
    psycopg.OperationalError
        If the database is still unreachable after the final attempt.
    """
    return psycopg.connect(dsn or build_dsn())


def get_sync_pool(min_size: Optional[int] = None, max_size: Optional[int] = None) -> ConnectionPool:
    return PoolManager().pool(min_size=min_size, max_size=max_size)


__all__ = [
    "PoolManager",
    "build_dsn",
    "get_sync_connection",
    "get_sync_pool",
]
