"""
Infrastructure package for the venue discovery engine.

Centralizes I/O concerns: database connectivity and pooling, the document
store, and the clients for external search and content-analysis services.
Keep this layer focused on I/O and resource management, decoupled from
budget/strategy/orchestrator logic.
"""

from discovery_engine.infrastructure.db_factory import get_sync_connection, get_sync_pool
from discovery_engine.infrastructure.document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    PostgresDocumentStore,
    build_document_store,
)

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "PostgresDocumentStore",
    "build_document_store",
    "get_sync_connection",
    "get_sync_pool",
]
