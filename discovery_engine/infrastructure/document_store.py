"""
Document persistence for strategies, runs, credential slots, ledgers and candidates.

The engine treats storage as a key-value/document store: point lookups by id,
filtering by status, and single-document read-modify-write. Two backends:

- InMemoryDocumentStore: dict-backed, lock-guarded; default backend and used by tests.
- PostgresDocumentStore: one JSONB `documents` table behind a psycopg pool.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from discovery_engine.config import Settings
from discovery_engine.infrastructure.db_factory import get_sync_connection, get_sync_pool
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

Document = Dict[str, Any]
Mutator = Callable[[Optional[Document]], Optional[Document]]

STRATEGIES = "strategies"
RUNS = "runs"
CREDENTIAL_SLOTS = "credential_slots"
BUDGET_LEDGERS = "budget_ledgers"
CANDIDATES = "candidates"
QUERY_CACHE = "query_cache"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection  TEXT NOT NULL,
    doc_id      TEXT NOT NULL,
    status      TEXT,
    body        JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, doc_id)
);
CREATE INDEX IF NOT EXISTS documents_status_idx ON documents (collection, status);
"""

_UPSERT_SQL = """
INSERT INTO documents (collection, doc_id, status, body, updated_at)
VALUES (%s, %s, %s, %s, now())
ON CONFLICT (collection, doc_id)
DO UPDATE SET status = EXCLUDED.status, body = EXCLUDED.body, updated_at = now();
"""


@runtime_checkable
class DocumentStore(Protocol):
    """Contract every persistence backend satisfies."""

    def put(self, collection: str, doc_id: str, document: Document) -> None: ...

    def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    def list(self, collection: str, status: Optional[str] = None) -> List[Document]: ...

    def update(self, collection: str, doc_id: str, mutator: Mutator) -> Optional[Document]: ...

    def delete(self, collection: str, doc_id: str) -> None: ...


def _status_of(document: Document) -> Optional[str]:
    status = document.get("status")
    return str(status) if status is not None else None


class InMemoryDocumentStore:
    """Process-local store; documents are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()

    def put(self, collection: str, doc_id: str, document: Document) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(document)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def list(self, collection: str, status: Optional[str] = None) -> List[Document]:
        with self._lock:
            documents = self._collections.get(collection, {}).values()
            return [
                copy.deepcopy(doc)
                for doc in documents
                if status is None or _status_of(doc) == status
            ]

    def update(self, collection: str, doc_id: str, mutator: Mutator) -> Optional[Document]:
        with self._lock:
            current = self.get(collection, doc_id)
            updated = mutator(current)
            if updated is not None:
                self.put(collection, doc_id, updated)
            return copy.deepcopy(updated) if updated is not None else current

    def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            self._collections.get(collection, {}).pop(doc_id, None)


class PostgresDocumentStore:
    """
    JSONB document table accessed through a psycopg connection pool.

    `update` takes a transaction-scoped advisory lock on the document key and
    a row lock (`SELECT ... FOR UPDATE`), so concurrent writers of the same
    document serialize, even while the document does not exist yet.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    @staticmethod
    def ensure_schema(dsn: Optional[str] = None) -> None:
        with get_sync_connection(dsn) as conn:
            conn.execute(_SCHEMA_SQL)
            conn.commit()
        log.info("Document schema ensured")

    def put(self, collection: str, doc_id: str, document: Document) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                _UPSERT_SQL, (collection, doc_id, _status_of(document), Jsonb(document))
            )

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._pool.connection() as conn:
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = %s AND doc_id = %s;",
                (collection, doc_id),
            ).fetchone()
        return row[0] if row else None

    def list(self, collection: str, status: Optional[str] = None) -> List[Document]:
        with self._pool.connection() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT body FROM documents WHERE collection = %s ORDER BY doc_id;",
                    (collection,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT body FROM documents WHERE collection = %s AND status = %s "
                    "ORDER BY doc_id;",
                    (collection, status),
                ).fetchall()
        return [row[0] for row in rows]

    def update(self, collection: str, doc_id: str, mutator: Mutator) -> Optional[Document]:
        with self._pool.connection() as conn:
            with conn.transaction():
                # Serializes first-time creation too, when there is no row to lock yet.
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s));", (f"{collection}/{doc_id}",)
                )
                row = conn.execute(
                    "SELECT body FROM documents WHERE collection = %s AND doc_id = %s "
                    "FOR UPDATE;",
                    (collection, doc_id),
                ).fetchone()
                current = row[0] if row else None
                updated = mutator(copy.deepcopy(current))
                if updated is None:
                    return current
                conn.execute(
                    _UPSERT_SQL, (collection, doc_id, _status_of(updated), Jsonb(updated))
                )
                return updated

    def delete(self, collection: str, doc_id: str) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                "DELETE FROM documents WHERE collection = %s AND doc_id = %s;",
                (collection, doc_id),
            )


def build_document_store(settings: Settings) -> DocumentStore:
    """Select the persistence backend named by STORE_BACKEND."""
    backend = settings.store_backend.lower()
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "postgres":
        PostgresDocumentStore.ensure_schema()
        pool = get_sync_pool(min_size=settings.db_pool_min, max_size=settings.db_pool_max)
        return PostgresDocumentStore(pool)
    raise ValueError(f"Unknown STORE_BACKEND '{settings.store_backend}'. Use 'memory' or 'postgres'.")


__all__ = [
    "BUDGET_LEDGERS",
    "CANDIDATES",
    "CREDENTIAL_SLOTS",
    "DocumentStore",
    "InMemoryDocumentStore",
    "PostgresDocumentStore",
    "QUERY_CACHE",
    "RUNS",
    "STRATEGIES",
    "build_document_store",
]
