"""
Progress storage backends.

- MemoryProgressStore:   in-process, for tests and throwaway sessions
- SqliteProgressStore:   aiosqlite, one JSON document table (default)
- PostgresProgressStore: asyncpg pool, JSONB documents

Usage:
    from storage import open_store

    async with open_store() as store:
        doc = await store.get("observers", visitor_id)
"""

from typing import Optional

from coherence_sync import config as cfg

from .base import (
    RemoteProgressStore,
    record_location,
    resolve_server_timestamps,
    encode_document,
    decode_document,
)
from .memory import MemoryProgressStore
from .sqlite_store import SqliteProgressStore
from .migrate import ObserverMigrator, erase_identity


def open_store(backend: Optional[str] = None) -> RemoteProgressStore:
    """Build (not yet initialized) the store selected by COHERENCE_STORE."""
    backend = (backend or cfg.STORE_BACKEND).lower()
    if backend == "memory":
        return MemoryProgressStore()
    if backend == "sqlite":
        return SqliteProgressStore()
    if backend == "postgres":
        from .postgres_store import PostgresProgressStore
        return PostgresProgressStore()
    raise ValueError(f"Unknown store backend: {backend}")


__all__ = [
    'RemoteProgressStore',
    'MemoryProgressStore',
    'SqliteProgressStore',
    'ObserverMigrator',
    'erase_identity',
    'open_store',
    'record_location',
    'resolve_server_timestamps',
    'encode_document',
    'decode_document',
]
