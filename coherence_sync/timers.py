"""
Coherence Sync: Timer Registry

One owner for every timer a session runs, keyed by purpose:

    recovery_tick, rollover, transition_signal, state_poll,
    backup_poll, initial_sync, reinduction

Arming a purpose that is already armed replaces the old handle, so a
purpose never has two live timers. cancel_all() is the single teardown
point for a session.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

log = logging.getLogger("coherence.timers")

Callback = Callable[[], Union[Any, Awaitable[Any]]]


class TimerRegistry:
    """asyncio-task backed timers, one per purpose."""

    def __init__(self):
        self._handles: Dict[str, asyncio.Task] = {}
        self._fired: Dict[str, int] = {}
        self._errors = 0

    def every(self, purpose: str, interval_s: float, callback: Callback) -> asyncio.Task:
        """Call `callback` every `interval_s` seconds until cancelled."""
        if interval_s <= 0:
            raise ValueError(f"interval must be positive, got {interval_s}")

        async def _loop():
            while True:
                await asyncio.sleep(interval_s)
                await self._invoke(purpose, callback)
                # Cancelled or replaced from inside its own callback
                if self._handles.get(purpose) is not asyncio.current_task():
                    return

        return self._arm(purpose, _loop())

    def once(self, purpose: str, delay_s: float, callback: Callback) -> asyncio.Task:
        """Call `callback` once after `delay_s` seconds."""

        async def _single():
            await asyncio.sleep(max(0.0, delay_s))
            # Release the slot first: the callback may re-arm this purpose.
            if self._handles.get(purpose) is asyncio.current_task():
                del self._handles[purpose]
            await self._invoke(purpose, callback)

        return self._arm(purpose, _single())

    def cancel(self, purpose: str) -> bool:
        task = self._handles.pop(purpose, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def cancel_all(self) -> int:
        purposes = list(self._handles)
        for purpose in purposes:
            self.cancel(purpose)
        if purposes:
            log.debug(f"Cancelled timers: {', '.join(purposes)}")
        return len(purposes)

    def is_armed(self, purpose: str) -> bool:
        task = self._handles.get(purpose)
        return task is not None and not task.done()

    def __contains__(self, purpose: str) -> bool:
        return self.is_armed(purpose)

    @property
    def active(self) -> List[str]:
        return sorted(p for p, t in self._handles.items() if not t.done())

    def _arm(self, purpose: str, coro) -> asyncio.Task:
        self.cancel(purpose)
        task = asyncio.ensure_future(coro)
        self._handles[purpose] = task
        return task

    async def _invoke(self, purpose: str, callback: Callback) -> None:
        self._fired[purpose] = self._fired.get(purpose, 0) + 1
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._errors += 1
            log.error(f"Timer '{purpose}' callback failed: {exc}")

    @property
    def stats(self) -> dict:
        return {
            "active": self.active,
            "fired": dict(self._fired),
            "errors": self._errors,
        }
