"""
Coherence Sync: Rollover Scheduler

Fires once per day at the time of day (UTC) of the temporal origin,
startDate, which the engine keeps at a UTC midnight. Each firing gives a
bounded bonus, advances the day by one (never past the calendar day) and
raises a short "transition" signal. It then re-arms from the origin rather
than from the previous firing, so delays never accumulate.

Firing is advisory. If the process sleeps through a rollover nothing is
lost: CoherenceEngine.load() recomputes the day from startDate.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from . import config as cfg
from .engine import CoherenceEngine
from .models import utc_now
from .timers import TimerRegistry

log = logging.getLogger("coherence.rollover")

ROLLOVER = "rollover"
TRANSITION_SIGNAL = "transition_signal"


def next_rollover(start_date: datetime, now: datetime) -> datetime:
    """Next occurrence of start_date's UTC time-of-day strictly after now."""
    start = start_date.astimezone(timezone.utc)
    now = now.astimezone(timezone.utc)
    candidate = now.replace(
        hour=start.hour,
        minute=start.minute,
        second=start.second,
        microsecond=start.microsecond,
    )
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class RolloverScheduler:

    def __init__(
        self,
        engine: CoherenceEngine,
        timers: TimerRegistry,
        clock: Optional[Callable[[], datetime]] = None,
        bonus: float = cfg.ROLLOVER_BONUS,
        signal_s: float = cfg.TRANSITION_SIGNAL_S,
    ):
        self._engine = engine
        self._timers = timers
        self._clock = clock or utc_now
        self._bonus = bonus
        self._signal_s = signal_s
        self._listeners: List[Callable[[int], Any]] = []
        self.transitioning = False
        self.next_fire_at: Optional[datetime] = None
        self.fired = 0

    def add_listener(self, callback: Callable[[int], Any]) -> None:
        """Called with the new day number each time a transition starts."""
        self._listeners.append(callback)

    def arm(self, after: Optional[datetime] = None) -> Optional[datetime]:
        """Schedule the next firing strictly after max(now, after)."""
        start = self._engine.start_date
        if start is None:
            return None
        now = self._clock()
        reference = max(now, after) if after is not None else now
        self.next_fire_at = next_rollover(start, reference)
        delay = (self.next_fire_at - now).total_seconds()
        self._timers.once(ROLLOVER, delay, self.fire)
        log.info(f"Rollover armed for {self.next_fire_at.isoformat()} ({delay:.0f}s)")
        return self.next_fire_at

    def disarm(self) -> None:
        self._timers.cancel(ROLLOVER)
        self._timers.cancel(TRANSITION_SIGNAL)
        self.transitioning = False
        self.next_fire_at = None

    def fire(self) -> int:
        before = self._engine.day
        day = self._engine.advance_day(self._bonus, now=self._clock())
        self.fired += 1
        log.info(f"Day rollover: {before} -> {day} (score {self._engine.score:.1f})")

        self.transitioning = True
        self._timers.once(TRANSITION_SIGNAL, self._signal_s, self._end_transition)
        for callback in list(self._listeners):
            try:
                callback(day)
            except Exception as exc:
                log.warning(f"Transition listener failed: {exc}")

        # A timer can wake slightly before the wall clock reaches its target
        self.arm(after=self.next_fire_at)
        return day

    def _end_transition(self) -> None:
        self.transitioning = False
