"""
Coherence Sync: Identity Anchor

Reconciles the auth principal's uid with the local visitor identity through
the remote principal_mappings collection. The remote mapping is
authoritative: when it names a different visitor id, the local identity is
overwritten and dependents are told.

Upgrading an anonymous principal to a durable credential is owned by the
AuthGateway and cannot be made atomic with the engine. The anchor therefore
captures {day, score} into the MigrationChannel first; if the upgrade ends
up switching to a pre-existing principal, the next load consumes that
payload instead of silently dropping the anonymous progress.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from . import config as cfg
from .auth import AuthGateway
from .errors import IdentityCollisionError, TransientStoreError
from .identity import IdentitySession
from .models import SERVER_TIMESTAMP, MigrationPayload, Principal

log = logging.getLogger("coherence.anchor")


class MigrationChannel:
    """Holds at most one pending {day, score} payload."""

    def __init__(self):
        self._payload: Optional[MigrationPayload] = None

    def capture(self, day: int, score: float) -> MigrationPayload:
        self._payload = MigrationPayload(day=int(day), score=float(score))
        log.info(f"Migration payload captured: day={self._payload.day} score={self._payload.score:.1f}")
        return self._payload

    @property
    def pending(self) -> Optional[MigrationPayload]:
        return self._payload

    def consume(self) -> Optional[MigrationPayload]:
        payload, self._payload = self._payload, None
        return payload

    def clear(self) -> None:
        self._payload = None


class IdentityAnchor:
    """
    Keeps IdentitySession.visitorId consistent with the remote mapping.

    Lifecycle:
      new observer principal -> reconcile() -> visitor id settled
      anonymous upgrade      -> upgrade()   -> payload captured / cleared
      recovery grant         -> reanchor()  -> visitor id adopted, signed in
    """

    def __init__(
        self,
        store,
        identity: IdentitySession,
        migration: Optional[MigrationChannel] = None,
    ):
        self._store = store
        self.identity = identity
        self.migration = migration or MigrationChannel()
        self._listeners: List[Callable[[str], Any]] = []
        self.reanchored = 0

    def add_listener(self, callback: Callable[[str], Any]) -> None:
        """Called with the new visitor id whenever the local identity changes."""
        self._listeners.append(callback)

    def _propagate(self, visitor_id: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(visitor_id)
            except Exception as exc:
                log.warning(f"Visitor id listener failed: {exc}")

    def _adopt(self, visitor_id: str) -> None:
        self.identity.adopt(visitor_id)
        self.reanchored += 1
        self._propagate(visitor_id)

    async def reconcile(self, principal: Principal) -> str:
        """Settle the visitor id for `principal` and return it.

        Admins are keyed by uid and skip the mapping. A store failure keeps
        the local id; progress may then land under the wrong key for this
        session, which the next successful reconcile repairs.
        """
        local_id = self.identity.visitor_id
        if principal.is_admin:
            return local_id

        try:
            mapping = await self._store.get(cfg.MAPPING_COLLECTION, principal.uid)
            if mapping and mapping.get("visitorId"):
                remote_id = mapping["visitorId"]
                if remote_id != local_id:
                    log.info(f"Re-anchoring to known visitor id {remote_id} (was {local_id})")
                    self._adopt(remote_id)
                return remote_id

            log.info(f"Establishing new identity anchor {principal.uid} -> {local_id}")
            await self._store.set(
                cfg.MAPPING_COLLECTION,
                principal.uid,
                {"visitorId": local_id, "lastUpdated": SERVER_TIMESTAMP},
            )
        except TransientStoreError as exc:
            log.error(f"Identity anchoring failure, progress may not persist: {exc}")
        return local_id

    async def upgrade(
        self,
        gateway: AuthGateway,
        principal: Principal,
        kind: str,
        payload: Dict[str, Any],
        day: int,
        score: float,
        switch_on_collision: bool = False,
    ) -> Principal:
        """Link a durable credential to an anonymous principal.

        Success in place (same uid) clears the captured payload. On
        collision the payload stays pending and either the error propagates
        or, with switch_on_collision, the existing principal is signed in.
        """
        self.migration.capture(day, score)
        try:
            upgraded = await gateway.link_credential(principal, kind, payload)
        except IdentityCollisionError as exc:
            log.warning(
                f"Credential {kind} already bound to {exc.existing_uid}; "
                f"anonymous progress held for migration"
            )
            if not switch_on_collision:
                raise
            return await gateway.sign_in_with_credential(kind, payload)

        self.migration.clear()
        return upgraded

    async def reanchor(self, gateway: AuthGateway, visitor_id: Optional[str], token: str) -> Principal:
        """Device re-anchoring from a recovery grant."""
        if visitor_id and visitor_id != self.identity.visitor_id:
            self._adopt(visitor_id)
        return await gateway.sign_in_with_token(token)
