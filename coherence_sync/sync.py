"""
Coherence Sync: Sync Coordinator

Decides when the engine snapshot is written to the remote store. Every
flush is a full-document upsert (lastSeenAt = server time), last writer
wins, no merge and no version check. Triggers:

  1. hidden           host reports visibility loss
  2. unload           best effort, not awaited, may never land
  3. state_transition label differs from the last synced label (polled)
  4. backup           polled; time floor AND magnitude floor (see should_backup)
  5. initial          short delay after the session establishes
  6. teardown         final flush on stop()
  + override          privileged score/day overrides

A failed flush is logged and dropped. There is no retry loop: the next
trigger to fire carries the same (or newer) state.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from . import config as cfg
from .engine import CoherenceEngine
from .models import SyncCursor, utc_now
from .timers import TimerRegistry

log = logging.getLogger("coherence.sync")

STATE_POLL = "state_poll"
BACKUP_POLL = "backup_poll"
INITIAL_SYNC = "initial_sync"


class SyncCoordinator:

    def __init__(
        self,
        engine: CoherenceEngine,
        store,
        timers: TimerRegistry,
        clock: Optional[Callable[[], datetime]] = None,
        state_poll_s: float = cfg.STATE_POLL_S,
        backup_poll_s: float = cfg.BACKUP_POLL_S,
        backup_min_interval: timedelta = cfg.BACKUP_MIN_INTERVAL,
        backup_score_delta: float = cfg.BACKUP_SCORE_DELTA,
        initial_delay_s: float = cfg.INITIAL_SYNC_DELAY_S,
    ):
        self._engine = engine
        self._store = store
        self._timers = timers
        self._clock = clock or utc_now
        self._state_poll_s = state_poll_s
        self._backup_poll_s = backup_poll_s
        self._backup_min_interval = backup_min_interval
        self._backup_score_delta = backup_score_delta
        self._initial_delay_s = initial_delay_s
        self._target: Optional[Tuple[str, str]] = None
        self._unload_task: Optional[asyncio.Task] = None
        self.cursor: Optional[SyncCursor] = None
        self._flushes = 0
        self._failures = 0
        self._skipped = 0
        self._by_reason = {}

    # ── Binding ──

    @property
    def target(self) -> Optional[Tuple[str, str]]:
        return self._target

    def bind(self, collection: str, doc_id: str, synced_at: Optional[datetime] = None) -> None:
        """Point at the record the engine just loaded and persisted."""
        self._target = (collection, doc_id)
        self.cursor = SyncCursor(
            score=self._engine.score,
            day=self._engine.day,
            state=self._engine.state,
            synced_at=synced_at or self._clock(),
        )
        log.info(f"Sync bound to {collection}/{doc_id}")

    def unbind(self) -> None:
        self._target = None
        self.cursor = None

    # ── Lifecycle ──

    def start(self) -> None:
        self._timers.every(STATE_POLL, self._state_poll_s, self.check_state_transition)
        self._timers.every(BACKUP_POLL, self._backup_poll_s, self.check_backup)
        self._timers.once(INITIAL_SYNC, self._initial_delay_s, self._initial_sync)

    async def stop(self, final_flush: bool = True) -> bool:
        for purpose in (STATE_POLL, BACKUP_POLL, INITIAL_SYNC):
            self._timers.cancel(purpose)
        flushed = await self.flush("teardown") if final_flush else False
        self.unbind()
        return flushed

    # ── Flush ──

    async def flush(self, reason: str) -> bool:
        """Upsert the full snapshot. Never raises on store failure."""
        if self._target is None or not self._engine.loaded:
            self._skipped += 1
            return False

        collection, doc_id = self._target
        snapshot = self._engine.snapshot()
        score, day, state = self._engine.score, self._engine.day, self._engine.state
        try:
            await self._store.set(collection, doc_id, snapshot)
        except Exception as exc:
            self._failures += 1
            log.warning(f"Flush ({reason}) to {collection}/{doc_id} failed, dropping: {exc}")
            return False

        now = self._clock()
        self.cursor = SyncCursor(score=score, day=day, state=state, synced_at=now)
        if self._engine.record is not None:
            self._engine.record.last_seen_at = now
        self._flushes += 1
        self._by_reason[reason] = self._by_reason.get(reason, 0) + 1
        log.debug(f"Flushed ({reason}): day={day} score={score:.1f} state={state.value}")
        return True

    async def _initial_sync(self) -> bool:
        return await self.flush("initial")

    # ── Trigger checks ──

    def should_backup(self, now: Optional[datetime] = None) -> bool:
        """Time floor AND (score magnitude floor OR day changed)."""
        if self.cursor is None or not self._engine.loaded:
            return False
        now = now or self._clock()
        if self.cursor.synced_at is not None:
            if now - self.cursor.synced_at <= self._backup_min_interval:
                return False
        score_moved = abs(self._engine.score - self.cursor.score) > self._backup_score_delta
        day_changed = self._engine.day != self.cursor.day
        return score_moved or day_changed

    async def check_backup(self) -> bool:
        if not self.should_backup():
            return False
        return await self.flush("backup")

    async def check_state_transition(self) -> bool:
        if self.cursor is None or not self._engine.loaded:
            return False
        if self._engine.state == self.cursor.state:
            return False
        log.info(f"State transition {self.cursor.state.value} -> {self._engine.state.value}")
        return await self.flush("state_transition")

    async def on_visibility_change(self, hidden: bool) -> bool:
        if not hidden:
            return False
        return await self.flush("hidden")

    def on_unload(self) -> Optional[asyncio.Task]:
        """Start a final flush without waiting for it.

        The host may exit before the write lands; losing it is accepted.
        """
        if self._target is None:
            return None
        self._unload_task = asyncio.ensure_future(self.flush("unload"))
        return self._unload_task

    @property
    def stats(self) -> dict:
        return {
            "flushes": self._flushes,
            "failures": self._failures,
            "skipped": self._skipped,
            "by_reason": dict(self._by_reason),
            "last_synced_at": self.cursor.synced_at.isoformat()
            if self.cursor and self.cursor.synced_at else None,
        }
