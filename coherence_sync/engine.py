"""
Coherence Sync: Coherence Engine

Holds the score, its state label and the day counter for one session.

  - load():   decay for elapsed absence, day derived from the temporal
              origin (startDate), anchoring flag healed from the principal
  - tick:     passive recovery, capped at 100, no catch-up for missed ticks
  - rollover: bounded bonus and +1 day, called by the RolloverScheduler
  - overrides: set_score / set_current_day (privileged)

Day progress has exactly one source of truth: startDate. Any override
(stored day ahead of the calendar, a migration payload, set_current_day)
is expressed by shifting startDate so that recomputation reproduces it.
startDate is always a UTC midnight, so the rollover timer fires on the
same boundary the calendar count uses.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from . import config as cfg
from .models import (
    SERVER_TIMESTAMP,
    CoherenceState,
    MigrationPayload,
    Principal,
    ProgressRecord,
    utc_now,
)

log = logging.getLogger("coherence.engine")

ONE_DAY = timedelta(days=1)


# ── Pure derivations ──────────────────────────────────────


def clamp_score(score: float) -> float:
    return max(cfg.MIN_SCORE, min(cfg.MAX_SCORE, float(score)))


def coherence_label(score: float) -> CoherenceState:
    """Map a score to its state label. Lower edges are inclusive."""
    score = clamp_score(score)
    for threshold, state in cfg.STATE_THRESHOLDS:
        if score >= threshold:
            return CoherenceState(state)
    return CoherenceState.CRITICAL


def derive_anchored(principal: Optional[Principal]) -> bool:
    """A principal is anchored iff it holds at least one durable credential."""
    if principal is None:
        return False
    return bool(principal.linked_credential_kinds & cfg.DURABLE_CREDENTIAL_KINDS)


def decay_rate_for(principal: Optional[Principal], anchored: bool) -> int:
    if principal is not None and principal.is_admin:
        return cfg.ADMIN_DECAY_RATE
    return cfg.ANCHORED_DECAY_RATE if anchored else cfg.DEFAULT_DECAY_RATE


def recovery_rate_for(anchored: bool) -> float:
    return cfg.ANCHORED_RECOVERY if anchored else cfg.DEFAULT_RECOVERY


def decay_units(
    last_seen: datetime, now: datetime, window: timedelta = cfg.DECAY_WINDOW
) -> int:
    """Whole decay windows elapsed since last_seen (never negative)."""
    if now <= last_seen:
        return 0
    return int((now - last_seen) // window)


def apply_decay(score: float, units: int, rate: float) -> float:
    return max(cfg.MIN_SCORE, clamp_score(score) - units * rate)


def utc_midnight(ts: datetime) -> datetime:
    ts = ts.astimezone(timezone.utc)
    return datetime.combine(ts.date(), time(0, tzinfo=timezone.utc))


def calculated_day(start_date: datetime, now: datetime) -> int:
    """Day number of `now` counted in UTC calendar days from start_date."""
    days = (utc_midnight(now) - utc_midnight(start_date)) // ONE_DAY
    return max(1, days + 1)


def shift_origin(start_date: datetime, now: datetime, target_day: int) -> datetime:
    """Midnight origin for which calculated_day(., now) == target_day."""
    origin = utc_midnight(start_date)
    current = (utc_midnight(now) - origin) // ONE_DAY + 1
    return origin - (target_day - current) * ONE_DAY


# ── Engine ────────────────────────────────────────────────


@dataclass
class LoadReport:
    """What load() did to the stored record."""
    decay_units: int = 0
    decay_applied: float = 0.0
    origin_shifted: bool = False
    day_capped: bool = False
    anchor_healed: bool = False
    migration_applied: bool = False
    clean_slate: bool = False
    created: bool = False


class CoherenceEngine:
    """
    In-memory coherence state for one principal.

    All mutation happens on the event loop; timers call tick()/advance_day()
    and the SyncCoordinator reads snapshot(). No locking.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        decay_window: timedelta = cfg.DECAY_WINDOW,
        day_cap: int = cfg.UNANCHORED_DAY_CAP,
    ):
        self._clock = clock or utc_now
        self._decay_window = decay_window
        self._day_cap = day_cap
        self._listeners: List[Callable[["CoherenceEngine"], Any]] = []
        self.principal: Optional[Principal] = None
        self.record: Optional[ProgressRecord] = None
        self.last_report: Optional[LoadReport] = None
        self.pinned = False
        self.reset()

    # ── Read side ──

    @property
    def loaded(self) -> bool:
        return self.record is not None

    @property
    def score(self) -> float:
        return self.record.coherence_score if self.record else cfg.INITIAL_SCORE

    @property
    def state(self) -> CoherenceState:
        return coherence_label(self.score)

    @property
    def day(self) -> int:
        return self.record.day_progress if self.record else 1

    @property
    def start_date(self) -> Optional[datetime]:
        return self.record.start_date if self.record else None

    @property
    def is_anchored(self) -> bool:
        return derive_anchored(self.principal)

    @property
    def is_admin(self) -> bool:
        return self.principal is not None and self.principal.is_admin

    def add_listener(self, callback: Callable[["CoherenceEngine"], Any]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[["CoherenceEngine"], Any]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception as exc:
                log.warning(f"Engine listener failed: {exc}")

    # ── Load ──

    def load(
        self,
        record: Optional[ProgressRecord],
        principal: Principal,
        now: Optional[datetime] = None,
        migration: Optional[MigrationPayload] = None,
    ) -> ProgressRecord:
        """Recompute state for `principal` from a stored record (or create one).

        Pure with respect to its inputs: the same record, principal and `now`
        always give the same result. The returned record becomes the engine's
        current record.
        """
        now = now or self._clock()
        report = LoadReport()
        anchored = derive_anchored(principal)

        if record is None:
            result = self._fresh_record(principal, now, migration, report)
        else:
            result = self._evolve_record(record, principal, now, migration, report)

        if result.is_anchored != anchored:
            log.warning(
                f"Anchoring flag healed for {principal.uid}: "
                f"stored={result.is_anchored} derived={anchored}"
            )
            report.anchor_healed = True
        result.is_anchored = anchored
        result.anchored_principal_uid = principal.uid if anchored else None
        if principal.email:
            result.email = principal.email
        result.coherence_score = clamp_score(result.coherence_score)
        result.coherence_state = coherence_label(result.coherence_score)

        self.principal = principal
        self.record = result
        self.last_report = report

        log.info(
            f"Loaded {principal.uid}: day={result.day_progress} "
            f"score={result.coherence_score:.1f} state={result.coherence_state.value} "
            f"decay_units={report.decay_units} anchored={anchored}"
        )
        self._notify()
        return result.copy()

    def _fresh_record(
        self,
        principal: Principal,
        now: datetime,
        migration: Optional[MigrationPayload],
        report: LoadReport,
    ) -> ProgressRecord:
        report.created = True
        day, score = 1, cfg.INITIAL_SCORE
        if migration is not None and not principal.is_admin:
            day, score = max(1, migration.day), clamp_score(migration.score)
            report.migration_applied = True
            log.info(f"Seeding new record for {principal.uid} from migration: day={day} score={score}")
        self.pinned = principal.is_admin and cfg.ADMIN_CLEAN_SLATE
        return ProgressRecord(
            start_date=shift_origin(now, now, day),
            last_seen_at=now,
            coherence_score=score,
            day_progress=day,
            is_anchored=derive_anchored(principal),
        )

    def _evolve_record(
        self,
        record: ProgressRecord,
        principal: Principal,
        now: datetime,
        migration: Optional[MigrationPayload],
        report: LoadReport,
    ) -> ProgressRecord:
        result = record.copy(last_seen_at=now)
        anchored = derive_anchored(principal)

        # Admin clean slate: a day-1 admin record is a sandbox baseline.
        if principal.is_admin and cfg.ADMIN_CLEAN_SLATE and record.day_progress <= 1:
            report.clean_slate = True
            self.pinned = True
            result.coherence_score = cfg.INITIAL_SCORE
            result.day_progress = 1
            result.start_date = utc_midnight(now)
            return result
        self.pinned = False

        units = decay_units(record.last_seen_at, now, self._decay_window)
        rate = decay_rate_for(principal, anchored)
        result.coherence_score = apply_decay(record.coherence_score, units, rate)
        report.decay_units = units
        report.decay_applied = clamp_score(record.coherence_score) - result.coherence_score

        start = utc_midnight(record.start_date)
        day = calculated_day(start, now)
        if record.day_progress > day:
            # Stored day is ahead of the calendar: it was overridden. Move the
            # origin back so the calendar reproduces it from now on.
            start = shift_origin(start, now, record.day_progress)
            day = record.day_progress
            report.origin_shifted = True

        if migration is not None and migration.day > day:
            log.info(
                f"Applying migration payload to {principal.uid}: "
                f"day {day} -> {migration.day}, score -> {migration.score}"
            )
            start = shift_origin(start, now, migration.day)
            day = migration.day
            result.coherence_score = clamp_score(migration.score)
            report.migration_applied = True
            report.origin_shifted = True

        if not principal.is_admin and not anchored and day > self._day_cap:
            day = self._day_cap
            report.day_capped = True

        result.start_date = start
        result.day_progress = day
        return result

    # ── Mutations ──

    def set_score(self, value: float) -> float:
        """Direct override. Returns the clamped score."""
        record = self._require_record()
        record.coherence_score = clamp_score(value)
        record.coherence_state = coherence_label(record.coherence_score)
        log.info(f"Score override: {record.coherence_score:.1f}")
        self._notify()
        return record.coherence_score

    def set_current_day(self, day: int, now: Optional[datetime] = None) -> int:
        """Direct override. Rewrites startDate so reloads reproduce `day`."""
        if day < 1:
            raise ValueError(f"day must be >= 1, got {day}")
        record = self._require_record()
        now = now or self._clock()
        record.start_date = shift_origin(record.start_date, now, int(day))
        record.day_progress = int(day)
        self.pinned = False
        log.info(f"Day override: {day} (origin now {record.start_date.isoformat()})")
        self._notify()
        return record.day_progress

    def tick(self) -> float:
        """One passive recovery step."""
        record = self._require_record()
        record.coherence_score = min(
            cfg.MAX_SCORE, record.coherence_score + recovery_rate_for(self.is_anchored)
        )
        record.coherence_state = coherence_label(record.coherence_score)
        self._notify()
        return record.coherence_score

    def advance_day(
        self, bonus: float = cfg.ROLLOVER_BONUS, now: Optional[datetime] = None
    ) -> int:
        """Calendar rollover: bounded bonus and exactly one more day.

        The day never passes the calendar day of `now` (plus ROLLOVER_GRACE),
        so it never records a day that a reload would not reproduce.
        """
        record = self._require_record()
        now = now or self._clock()
        calendar = calculated_day(record.start_date, now + cfg.ROLLOVER_GRACE)
        record.coherence_score = min(cfg.MAX_SCORE, record.coherence_score + max(0.0, bonus))
        record.coherence_state = coherence_label(record.coherence_score)
        capped = not self.is_admin and not self.is_anchored and record.day_progress >= self._day_cap
        if not self.pinned and not capped and record.day_progress < calendar:
            record.day_progress += 1
        self._notify()
        return record.day_progress

    def mark_fragment_seen(self, fragment_id: str) -> bool:
        record = self._require_record()
        if fragment_id in record.seen_fragments:
            return False
        record.seen_fragments.append(fragment_id)
        return True

    def reset(self) -> None:
        """Back to the unauthenticated baseline (sign-out)."""
        self.principal = None
        self.record = None
        self.last_report = None
        self.pinned = False

    # ── Snapshot ──

    def snapshot(self) -> Dict[str, Any]:
        """Full document for an idempotent upsert; lastSeenAt is server time."""
        record = self._require_record()
        doc = record.to_document()
        doc["coherenceState"] = coherence_label(record.coherence_score).value
        doc["lastSeenAt"] = SERVER_TIMESTAMP
        return doc

    def _require_record(self) -> ProgressRecord:
        if self.record is None:
            raise RuntimeError("Engine has no loaded record; call load() first")
        return self.record
