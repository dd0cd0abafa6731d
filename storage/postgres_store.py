"""
PostgreSQL progress store (JSONB documents, asyncpg pool).

Selected with COHERENCE_STORE=postgres; DSN from COHERENCE_DATABASE_URL.
Top-level merge for update() is done server-side with the jsonb || operator.
"""

import logging
from typing import List, Optional, Tuple

import asyncpg

from coherence_sync import config as cfg
from coherence_sync.errors import TransientStoreError

from .base import (
    Document,
    RemoteProgressStore,
    decode_document,
    encode_document,
    resolve_server_timestamps,
)

log = logging.getLogger("storage.postgres")

SCHEMA = """
CREATE TABLE IF NOT EXISTS progress_documents (
    collection  TEXT NOT NULL,
    doc_id      TEXT NOT NULL,
    body        JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (collection, doc_id)
)
"""

# Driver and socket failures are transient from the engine's point of view.
_TRANSIENT = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresProgressStore(RemoteProgressStore):

    def __init__(self, pool: Optional[asyncpg.Pool] = None, dsn: Optional[str] = None, clock=None):
        super().__init__(clock)
        self._pool: Optional[asyncpg.Pool] = pool
        self._owns_pool = pool is None  # only close pool if we created it
        self._dsn = dsn or cfg.PG_DSN

    async def initialize(self) -> None:
        try:
            if not self._pool:
                self._pool = await asyncpg.create_pool(
                    self._dsn,
                    min_size=cfg.PG_MIN_POOL,
                    max_size=cfg.PG_MAX_POOL,
                    command_timeout=30,
                )
                self._owns_pool = True
            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except _TRANSIENT as exc:
            raise TransientStoreError(f"Postgres init failed: {exc}") from exc
        log.info("Postgres progress store ready")

    async def close(self) -> None:
        if self._pool and self._owns_pool:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise TransientStoreError("Postgres store is not initialized")
        return self._pool

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            async with self._require_pool().acquire() as conn:
                body = await conn.fetchval(
                    "SELECT body::text FROM progress_documents WHERE collection = $1 AND doc_id = $2",
                    collection, doc_id,
                )
        except _TRANSIENT as exc:
            raise TransientStoreError(f"get {collection}/{doc_id} failed: {exc}") from exc
        return decode_document(body) if body is not None else None

    async def set(self, collection: str, doc_id: str, doc: Document) -> None:
        now = self.server_now()
        body = encode_document(resolve_server_timestamps(doc, now))
        try:
            async with self._require_pool().acquire() as conn:
                await conn.execute(
                    """INSERT INTO progress_documents (collection, doc_id, body, updated_at)
                       VALUES ($1, $2, $3::jsonb, $4)
                       ON CONFLICT (collection, doc_id) DO UPDATE SET
                           body = EXCLUDED.body,
                           updated_at = EXCLUDED.updated_at""",
                    collection, doc_id, body, now,
                )
        except _TRANSIENT as exc:
            raise TransientStoreError(f"set {collection}/{doc_id} failed: {exc}") from exc

    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        now = self.server_now()
        body = encode_document(resolve_server_timestamps(partial, now))
        try:
            async with self._require_pool().acquire() as conn:
                await conn.execute(
                    """INSERT INTO progress_documents (collection, doc_id, body, updated_at)
                       VALUES ($1, $2, $3::jsonb, $4)
                       ON CONFLICT (collection, doc_id) DO UPDATE SET
                           body = progress_documents.body || EXCLUDED.body,
                           updated_at = EXCLUDED.updated_at""",
                    collection, doc_id, body, now,
                )
        except _TRANSIENT as exc:
            raise TransientStoreError(f"update {collection}/{doc_id} failed: {exc}") from exc

    async def delete(self, collection: str, doc_id: str) -> bool:
        try:
            async with self._require_pool().acquire() as conn:
                status = await conn.execute(
                    "DELETE FROM progress_documents WHERE collection = $1 AND doc_id = $2",
                    collection, doc_id,
                )
        except _TRANSIENT as exc:
            raise TransientStoreError(f"delete {collection}/{doc_id} failed: {exc}") from exc
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return status.endswith(" 1")

    async def scan(self, collection: str) -> List[Tuple[str, Document]]:
        try:
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(
                    """SELECT doc_id, body::text AS body FROM progress_documents
                       WHERE collection = $1 ORDER BY doc_id""",
                    collection,
                )
        except _TRANSIENT as exc:
            raise TransientStoreError(f"scan {collection} failed: {exc}") from exc
        return [(row["doc_id"], decode_document(row["body"])) for row in rows]
