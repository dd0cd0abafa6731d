"""
SQLite progress store.

One table of JSON document bodies keyed by (collection, doc_id), WAL mode,
a single aiosqlite connection per store. Default backend for the CLI
runner; state lives at ~/.coherence_sync/progress.db.

Usage:
    async with SqliteProgressStore() as store:
        await store.set("observers", visitor_id, doc)
        doc = await store.get("observers", visitor_id)
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import aiosqlite

from coherence_sync import config as cfg
from coherence_sync.errors import TransientStoreError

from .base import (
    Document,
    RemoteProgressStore,
    decode_document,
    encode_document,
    resolve_server_timestamps,
)

log = logging.getLogger("storage.sqlite")

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    doc_id TEXT NOT NULL,
    body TEXT NOT NULL,  -- JSON
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, doc_id)
);

CREATE INDEX IF NOT EXISTS idx_documents_updated
ON documents(collection, updated_at);
"""


class SqliteProgressStore(RemoteProgressStore):

    def __init__(self, db_path: Optional[str] = None, clock=None):
        super().__init__(clock)
        self.db_path = Path(db_path) if db_path else cfg.SQLITE_PATH
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        if self._db is not None:
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except (aiosqlite.Error, OSError) as exc:
            raise TransientStoreError(f"SQLite init failed: {exc}") from exc
        log.info(f"SQLite progress store ready at {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise TransientStoreError("SQLite store is not initialized")
        return self._db

    async def _read(self, collection: str, doc_id: str) -> Optional[Document]:
        cursor = await self._conn().execute(
            "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )
        row = await cursor.fetchone()
        return decode_document(row[0]) if row else None

    async def _write(self, collection: str, doc_id: str, doc: Document) -> None:
        await self._conn().execute(
            """INSERT INTO documents (collection, doc_id, body, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(collection, doc_id) DO UPDATE SET
                   body = excluded.body,
                   updated_at = excluded.updated_at""",
            (collection, doc_id, encode_document(doc), self.server_now().isoformat()),
        )

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            return await self._read(collection, doc_id)
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"get {collection}/{doc_id} failed: {exc}") from exc

    async def set(self, collection: str, doc_id: str, doc: Document) -> None:
        try:
            await self._write(
                collection, doc_id, resolve_server_timestamps(doc, self.server_now())
            )
            await self._conn().commit()
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"set {collection}/{doc_id} failed: {exc}") from exc

    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        try:
            existing = await self._read(collection, doc_id) or {}
            existing.update(resolve_server_timestamps(partial, self.server_now()))
            await self._write(collection, doc_id, existing)
            await self._conn().commit()
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"update {collection}/{doc_id} failed: {exc}") from exc

    async def delete(self, collection: str, doc_id: str) -> bool:
        try:
            cursor = await self._conn().execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            await self._conn().commit()
            return cursor.rowcount > 0
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"delete {collection}/{doc_id} failed: {exc}") from exc

    async def scan(self, collection: str) -> List[Tuple[str, Document]]:
        try:
            cursor = await self._conn().execute(
                "SELECT doc_id, body FROM documents WHERE collection = ? ORDER BY doc_id",
                (collection,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"scan {collection} failed: {exc}") from exc
        return [(row[0], decode_document(row[1])) for row in rows]
