"""
Coherence Sync: Session

CoherenceSession wires one device's engine, identity, timers and sync
triggers together and drives them from auth state:

    start()
      -> ensure principal (single-flight anonymous sign-in)
      -> establish (single-flight per uid + anonymity)
           reconcile visitor id -> locate record -> load + decay
           -> persist -> bind sync -> recovery tick -> arm rollover
    sign_in / upgrade / recover -> re-establish under the new principal
    sign_out -> ghost cached locally -> teardown -> anonymous re-induction
    stop()   -> every timer cancelled, final flush

There is no module-level instance. Construct one per session and pass it to
whatever needs it.
"""

import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from . import config as cfg
from .anchor import IdentityAnchor, MigrationChannel
from .auth import AuthGateway
from .engine import CoherenceEngine
from .errors import PrivilegeError, RecoveryError, TransientStoreError
from .flight import SingleFlight
from .identity import IdentitySession, LocalStateStore
from .models import CoherenceState, MigrationPayload, Principal, ProgressRecord, utc_now
from .recovery import RecoveryChannel
from .rollover import RolloverScheduler
from .sync import SyncCoordinator
from .timers import TimerRegistry

from storage.base import record_location

log = logging.getLogger("coherence.session")

RECOVERY_TICK = "recovery_tick"
REINDUCTION = "reinduction"


class CoherenceSession:

    def __init__(
        self,
        gateway: AuthGateway,
        store,
        local: Optional[LocalStateStore] = None,
        recovery: Optional[RecoveryChannel] = None,
        clock: Optional[Callable[[], datetime]] = None,
        recovery_tick_s: float = cfg.RECOVERY_TICK_S,
        reinduction_delay_s: float = cfg.REINDUCTION_DELAY_S,
        rollover_bonus: float = cfg.ROLLOVER_BONUS,
        transition_signal_s: float = cfg.TRANSITION_SIGNAL_S,
        sync_options: Optional[Dict[str, Any]] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.local = local or LocalStateStore()
        self.recovery = recovery
        self._clock = clock or utc_now
        self._recovery_tick_s = recovery_tick_s
        self._reinduction_delay_s = reinduction_delay_s

        self.identity = IdentitySession(self.local)
        self.migration = MigrationChannel()
        self.anchor = IdentityAnchor(store, self.identity, self.migration)
        self.timers = TimerRegistry()
        self.engine = CoherenceEngine(clock=self._clock)
        self.sync = SyncCoordinator(
            self.engine, store, self.timers, clock=self._clock, **(sync_options or {})
        )
        self.rollover = RolloverScheduler(
            self.engine,
            self.timers,
            clock=self._clock,
            bonus=rollover_bonus,
            signal_s=transition_signal_s,
        )

        self.principal: Optional[Principal] = None
        self._flight = SingleFlight()
        self._authorizing = 0
        self._running = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # ── Read side ──

    @property
    def running(self) -> bool:
        return self._running

    @property
    def score(self) -> float:
        return self.engine.score

    @property
    def state(self) -> CoherenceState:
        return self.engine.state

    @property
    def day(self) -> int:
        return self.engine.day

    @property
    def is_anchored(self) -> bool:
        return self.engine.is_anchored

    @property
    def is_admin(self) -> bool:
        return self.engine.is_admin

    @property
    def transitioning(self) -> bool:
        return self.rollover.transitioning

    @property
    def visitor_id(self) -> str:
        return self.identity.visitor_id

    # ── Lifecycle ──

    async def start(self) -> ProgressRecord:
        """Induct and establish. On a store failure nothing is left running,
        so the caller can simply call start() again."""
        fresh = not self._running
        if fresh:
            self._running = True
            self.gateway.add_listener(self._on_principal_changed)
        try:
            principal = await self._ensure_principal()
            return await self._establish(principal)
        except TransientStoreError as exc:
            if fresh:
                log.error(f"Session start failed, retry when the store is back: {exc}")
                self._running = False
                self.gateway.remove_listener(self._on_principal_changed)
            raise

    async def stop(self) -> bool:
        """Cancel every timer and flush once more. Safe to call twice."""
        if not self._running:
            return False
        self._running = False
        self.gateway.remove_listener(self._on_principal_changed)
        flushed = await self._suspend(flush=True)
        self.timers.cancel_all()
        log.info(
            f"Session stopped: flushed={flushed} "
            f"flushes={self.sync.stats['flushes']} failures={self.sync.stats['failures']}"
        )
        return flushed

    async def _authorize(self, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run a session-initiated auth call without reacting to its own event."""
        self._authorizing += 1
        try:
            return await factory()
        finally:
            self._authorizing -= 1

    async def _ensure_principal(self) -> Principal:
        current = self.gateway.current
        if current is not None:
            return current
        return await self._flight.run(
            "anonymous", lambda: self._authorize(self.gateway.sign_in_anonymous)
        )

    async def _establish(self, principal: Principal) -> ProgressRecord:
        if (
            self.principal is not None
            and self.engine.loaded
            and self.principal.session_key == principal.session_key
        ):
            return self.engine.record.copy()
        return await self._flight.run(principal.session_key, lambda: self._load(principal))

    async def _load(self, principal: Principal) -> ProgressRecord:
        previous = self.principal
        if (
            previous is not None
            and previous.is_anonymous
            and previous.uid != principal.uid
            and self.engine.loaded
            and self.migration.pending is None
        ):
            log.info(f"Identity shift {previous.uid} -> {principal.uid}, bridging progress")
            self.migration.capture(self.engine.day, self.engine.score)

        await self._suspend(flush=self.engine.loaded)

        visitor_id = await self.anchor.reconcile(principal)
        collection, doc_id = record_location(principal, visitor_id)
        now = self._clock()
        doc = await self.store.get(collection, doc_id)
        stored = ProgressRecord.from_document(doc, now) if doc else None

        migration = self.migration.consume()
        ghost = self._consume_ghost() if principal.is_anonymous else None
        if migration is None:
            migration = ghost

        self.engine.load(stored, principal, now=now, migration=migration)
        record = self.engine.record
        if not principal.is_admin:
            record.visitor_id = visitor_id
        record.visit_count += 1

        try:
            await self.store.set(collection, doc_id, self.engine.snapshot())
        except TransientStoreError as exc:
            log.warning(f"Initial persist of {collection}/{doc_id} failed: {exc}")

        self.principal = principal
        self.sync.bind(collection, doc_id)
        self.sync.start()
        self.timers.every(RECOVERY_TICK, self._recovery_tick_s, self.engine.tick)
        self.rollover.arm()
        log.info(
            f"Session established for {principal.uid} at {collection}/{doc_id} "
            f"(visit {record.visit_count})"
        )
        return record.copy()

    async def _suspend(self, flush: bool) -> bool:
        """Stop the per-record timers; optionally flush before unbinding."""
        self.timers.cancel(RECOVERY_TICK)
        self.timers.cancel(REINDUCTION)
        self.rollover.disarm()
        if self.sync.target is None:
            return False
        return await self.sync.stop(final_flush=flush)

    # ── Ghost ──

    def _write_ghost(self) -> None:
        ghost = MigrationPayload(day=self.engine.day, score=self.engine.score)
        self.local.set(cfg.GHOST_KEY, json.dumps(ghost.to_dict()))
        log.info(f"Logout ghost cached: day={ghost.day} score={ghost.score:.1f}")

    def _consume_ghost(self) -> Optional[MigrationPayload]:
        cached = self.local.get(cfg.GHOST_KEY)
        if not cached:
            return None
        self.local.remove(cfg.GHOST_KEY)
        try:
            return MigrationPayload.from_dict(json.loads(cached))
        except (ValueError, KeyError, TypeError) as exc:
            log.warning(f"Discarding unreadable logout ghost: {exc}")
            return None

    # ── Auth flows ──

    async def sign_in(self, kind: str, payload: Dict[str, Any]) -> ProgressRecord:
        principal = await self._authorize(
            lambda: self.gateway.sign_in_with_credential(kind, payload)
        )
        return await self._establish(principal)

    async def upgrade(
        self, kind: str, payload: Dict[str, Any], switch_on_collision: bool = False
    ) -> ProgressRecord:
        """Attach a durable credential to the current principal.

        IdentityCollisionError propagates unless switch_on_collision is set,
        in which case the existing principal is signed in and inherits the
        captured progress.
        """
        principal = self.principal or await self._ensure_principal()
        upgraded = await self._authorize(
            lambda: self.anchor.upgrade(
                self.gateway,
                principal,
                kind,
                payload,
                self.engine.day,
                self.engine.score,
                switch_on_collision=switch_on_collision,
            )
        )
        return await self._establish(upgraded)

    async def sign_out(self) -> None:
        if self.principal is not None and self.engine.loaded:
            self._write_ghost()
        else:
            log.info("Sign-out without an active session, ghost not cached")
        await self._teardown()
        await self._authorize(self.gateway.sign_out)
        self._schedule_reinduction()

    async def _teardown(self) -> None:
        await self._suspend(flush=True)
        self.engine.reset()
        self.principal = None

    def _schedule_reinduction(self) -> None:
        if self._running:
            self.timers.once(REINDUCTION, self._reinduction_delay_s, self._reinduce)

    async def _reinduce(self) -> None:
        if not self._running:
            return
        log.info("Re-inducing anonymous observer")
        principal = await self._ensure_principal()
        await self._establish(principal)

    async def _on_principal_changed(self, principal: Optional[Principal]) -> None:
        """React to auth changes this session did not initiate."""
        if self._authorizing or not self._running:
            return
        if principal is None:
            if self.principal is not None and self.engine.loaded:
                self._write_ghost()
            await self._teardown()
            self._schedule_reinduction()
            return
        await self._establish(principal)

    # ── Recovery ──

    def _require_recovery(self) -> RecoveryChannel:
        if self.recovery is None:
            raise RecoveryError("No recovery channel configured")
        return self.recovery

    async def request_access_code(self) -> str:
        channel = self._require_recovery()
        principal = self.principal or await self._ensure_principal()
        if principal.is_admin:
            raise RecoveryError("Access codes are issued to observers only")
        token = await self.gateway.id_token()
        code = await channel.assign(principal.uid, self.identity.visitor_id, token=token)
        if self.engine.record is not None:
            self.engine.record.access_code = code
        return code

    async def recover(self, code: str) -> ProgressRecord:
        """Exchange an access code for the identity it was issued to."""
        grant = await self._require_recovery().recover(code)
        principal = await self._authorize(
            lambda: self.anchor.reanchor(self.gateway, grant.visitor_id, grant.token)
        )
        return await self._establish(principal)

    # ── Overrides ──

    def _require_admin(self) -> None:
        if not self.engine.is_admin:
            raise PrivilegeError("Overrides require an admin principal")

    async def set_score(self, value: float) -> float:
        self._require_admin()
        score = self.engine.set_score(value)
        await self.sync.flush("override")
        return score

    async def set_current_day(self, day: int) -> int:
        self._require_admin()
        result = self.engine.set_current_day(day)
        self.rollover.arm()
        await self.sync.flush("override")
        return result

    # ── Host signals ──

    def mark_fragment_seen(self, fragment_id: str) -> bool:
        return self.engine.mark_fragment_seen(fragment_id)

    async def on_visibility_change(self, hidden: bool) -> bool:
        return await self.sync.on_visibility_change(hidden)

    def on_unload(self):
        return self.sync.on_unload()

    @property
    def stats(self) -> dict:
        return {
            "principal": self.principal.uid if self.principal else None,
            "visitor_id": self.identity.visitor_id,
            "day": self.engine.day,
            "score": round(self.engine.score, 2),
            "state": self.engine.state.value,
            "anchored": self.engine.is_anchored,
            "reanchored": self.anchor.reanchored,
            "coalesced": self._flight.coalesced,
            "sync": self.sync.stats,
            "timers": self.timers.stats,
            "rollovers": self.rollover.fired,
        }
