"""
Migration and erasure tooling for the progress store.

Migrates legacy per-uid progress (users/{uid}) to the visitor-keyed layout:
- observers/{uid} with visitorId=uid (the uid doubles as visitor id for
  legacy continuity) and anchoredPrincipalUid=uid when anchored
- principal_mappings/{uid} -> uid

Admin documents stay in users/. Erasure removes every document an identity
owns; it is an administrative action and never part of a session.

Usage:
    python -m coherence_sync migrate-observers [--dry-run]
    python -m coherence_sync erase <uid>
"""

import logging
from typing import Any, Dict

from coherence_sync import config as cfg
from coherence_sync.models import SERVER_TIMESTAMP

from .base import RemoteProgressStore

log = logging.getLogger("storage.migrate")


class ObserverMigrator:
    """Copies non-admin users/ documents into observers/ plus mappings."""

    def __init__(self, store: RemoteProgressStore, dry_run: bool = False):
        self.store = store
        self.dry_run = dry_run
        self.stats = {"found": 0, "migrated": 0, "skipped_admin": 0, "errors": 0}

    async def migrate_all(self) -> Dict[str, int]:
        docs = await self.store.scan(cfg.ADMIN_COLLECTION)
        self.stats["found"] = len(docs)
        log.info(f"Found {len(docs)} documents in {cfg.ADMIN_COLLECTION}")

        for uid, data in docs:
            if data.get("role") == "admin":
                log.info(f"Skipping admin: {uid}")
                self.stats["skipped_admin"] += 1
                continue
            try:
                await self.migrate_one(uid, data)
                self.stats["migrated"] += 1
            except Exception as exc:
                log.error(f"Migration failed for {uid}: {exc}")
                self.stats["errors"] += 1

        log.info(
            f"Migration complete: {self.stats['migrated']} migrated, "
            f"{self.stats['skipped_admin']} admins skipped, {self.stats['errors']} errors"
            f"{' (dry run)' if self.dry_run else ''}"
        )
        return dict(self.stats)

    async def migrate_one(self, uid: str, data: Dict[str, Any]) -> None:
        observer = dict(data)
        observer["visitorId"] = uid
        observer["anchoredPrincipalUid"] = uid if data.get("isAnchored") is True else None
        observer["migratedAt"] = SERVER_TIMESTAMP
        mapping = {"visitorId": uid, "lastUpdated": SERVER_TIMESTAMP, "migrated": True}

        if self.dry_run:
            log.info(f"[dry run] would migrate {uid}")
            return
        await self.store.set(cfg.OBSERVER_COLLECTION, uid, observer)
        await self.store.set(cfg.MAPPING_COLLECTION, uid, mapping)


async def erase_identity(store: RemoteProgressStore, uid: str) -> Dict[str, bool]:
    """Delete users/, observers/ and principal_mappings/ documents for `uid`."""
    log.info(f"Initiating erasure for: {uid}")
    removed = {}
    for collection in (cfg.ADMIN_COLLECTION, cfg.OBSERVER_COLLECTION, cfg.MAPPING_COLLECTION):
        removed[collection] = await store.delete(collection, uid)
    log.info(f"Erasure complete for {uid}: {removed}")
    return removed
