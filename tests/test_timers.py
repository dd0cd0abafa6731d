"""
Tests for coherence_sync.timers and coherence_sync.flight

Covers:
- Periodic and one-shot timers
- One live timer per purpose
- Teardown through cancel_all
- Callback failures are contained
- Single-flight coalescing, failure propagation, no caching
"""

import asyncio

import pytest

from coherence_sync.flight import SingleFlight
from coherence_sync.timers import TimerRegistry


class TestTimerRegistry:

    @pytest.mark.asyncio
    async def test_every_repeats(self):
        timers = TimerRegistry()
        hits = []
        timers.every("tick", 0.01, lambda: hits.append(1))
        await asyncio.sleep(0.08)
        timers.cancel_all()
        assert len(hits) >= 2

    @pytest.mark.asyncio
    async def test_once_fires_once(self):
        timers = TimerRegistry()
        hits = []
        timers.once("signal", 0.01, lambda: hits.append(1))
        await asyncio.sleep(0.05)
        assert hits == [1]
        assert not timers.is_armed("signal")

    @pytest.mark.asyncio
    async def test_rearming_replaces(self):
        timers = TimerRegistry()
        hits = []
        timers.once("rollover", 0.05, lambda: hits.append("old"))
        timers.once("rollover", 0.01, lambda: hits.append("new"))
        await asyncio.sleep(0.1)
        assert hits == ["new"]

    @pytest.mark.asyncio
    async def test_once_callback_can_rearm_itself(self):
        timers = TimerRegistry()
        hits = []

        def callback():
            hits.append(1)
            if len(hits) < 3:
                timers.once("chain", 0.01, callback)

        timers.once("chain", 0.01, callback)
        await asyncio.sleep(0.15)
        assert len(hits) == 3

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self):
        timers = TimerRegistry()
        hits = []

        async def callback():
            await asyncio.sleep(0)
            hits.append(1)

        timers.once("async", 0.01, callback)
        await asyncio.sleep(0.05)
        assert hits == [1]

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        timers = TimerRegistry()
        hits = []
        timers.every("a", 0.02, lambda: hits.append("a"))
        timers.once("b", 0.02, lambda: hits.append("b"))
        assert timers.active == ["a", "b"]
        assert timers.cancel_all() == 2
        await asyncio.sleep(0.05)
        assert hits == []
        assert timers.active == []

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_loop_alive(self):
        timers = TimerRegistry()
        calls = []

        def callback():
            calls.append(1)
            raise RuntimeError("boom")

        timers.every("flaky", 0.01, callback)
        await asyncio.sleep(0.06)
        timers.cancel_all()
        assert len(calls) >= 2
        assert timers.stats["errors"] == len(calls)

    def test_every_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            TimerRegistry().every("bad", 0, lambda: None)


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_run(self):
        flight = SingleFlight()
        calls = []

        async def factory():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "principal"

        results = await asyncio.gather(*(flight.run("anon", factory) for _ in range(3)))
        assert results == ["principal"] * 3
        assert len(calls) == 1
        assert flight.coalesced == 2
        assert not flight.in_flight("anon")

    @pytest.mark.asyncio
    async def test_settled_key_runs_again(self):
        flight = SingleFlight()
        calls = []

        async def factory():
            calls.append(1)
            return len(calls)

        assert await flight.run("k", factory) == 1
        assert await flight.run("k", factory) == 2

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_cached(self):
        flight = SingleFlight()
        attempts = []

        async def failing():
            attempts.append(1)
            await asyncio.sleep(0.01)
            raise ValueError("store down")

        results = await asyncio.gather(
            flight.run("load", failing),
            flight.run("load", failing),
            return_exceptions=True,
        )
        assert all(isinstance(r, ValueError) for r in results)
        assert len(attempts) == 1

        async def working():
            return "ok"

        assert await flight.run("load", working) == "ok"

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        flight = SingleFlight()

        async def factory(value):
            await asyncio.sleep(0.01)
            return value

        a, b = await asyncio.gather(
            flight.run("a", lambda: factory("a")),
            flight.run("b", lambda: factory("b")),
        )
        assert (a, b) == ("a", "b")
        assert flight.coalesced == 0
