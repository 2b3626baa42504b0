"""Tests for the virtual scheduler and typed event channels."""

import asyncio
from datetime import timedelta

import pytest

from core.events import EventChannel
from core.scheduling import AsyncioScheduler, VirtualScheduler


class TestVirtualScheduler:
    """Test deterministic timer firing."""

    @pytest.mark.asyncio
    async def test_timers_fire_in_due_order(self):
        scheduler = VirtualScheduler()
        fired = []
        scheduler.call_later(20, lambda: fired.append("b"))
        scheduler.call_later(10, lambda: fired.append("a"))

        await scheduler.advance(15)
        assert fired == ["a"]

        await scheduler.advance(10)
        assert fired == ["a", "b"]
        assert scheduler.elapsed == 25

    @pytest.mark.asyncio
    async def test_now_reports_due_time_inside_callback(self):
        scheduler = VirtualScheduler()
        seen = []
        start = scheduler.now()
        scheduler.call_later(30, lambda: seen.append(scheduler.now()))

        await scheduler.advance(100)

        assert seen == [start + timedelta(seconds=30)]
        assert scheduler.now() == start + timedelta(seconds=100)

    @pytest.mark.asyncio
    async def test_periodic_timer(self):
        scheduler = VirtualScheduler()
        ticks = []
        handle = scheduler.call_every(10, lambda: ticks.append(scheduler.elapsed))

        await scheduler.advance(35)
        assert ticks == [10, 20, 30]

        handle.cancel()
        await scheduler.advance(50)
        assert ticks == [10, 20, 30]

    @pytest.mark.asyncio
    async def test_cancelled_timer_does_not_fire(self):
        scheduler = VirtualScheduler()
        fired = []
        handle = scheduler.call_later(5, lambda: fired.append(True))
        handle.cancel()

        await scheduler.advance(10)

        assert fired == []
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_coroutine_callbacks_are_awaited(self):
        scheduler = VirtualScheduler()
        done = []

        async def work():
            done.append(scheduler.elapsed)

        scheduler.call_later(5, work)
        await scheduler.advance(5)

        assert done == [5]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_others(self):
        scheduler = VirtualScheduler()
        fired = []

        def broken():
            raise RuntimeError("boom")

        scheduler.call_later(1, broken)
        scheduler.call_later(2, lambda: fired.append(True))
        await scheduler.advance(3)

        assert fired == [True]


class TestAsyncioScheduler:
    """Test timers on the running loop."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_running_callbacks(self):
        scheduler = AsyncioScheduler()
        release = asyncio.Event()
        done = []

        async def work():
            await release.wait()
            done.append(True)

        scheduler.call_later(0, work)
        await asyncio.sleep(0.01)
        assert done == []

        release.set()
        await scheduler.drain()

        assert done == [True]

    @pytest.mark.asyncio
    async def test_cancelled_timer_does_not_fire(self):
        scheduler = AsyncioScheduler()
        fired = []

        handle = scheduler.call_later(0.01, lambda: fired.append(True))
        handle.cancel()
        await asyncio.sleep(0.03)

        assert fired == []


class TestEventChannel:
    """Test observer channels."""

    def test_publish_in_subscription_order(self):
        channel = EventChannel("test")
        received = []
        channel.subscribe(lambda p: received.append(("first", p)))
        channel.subscribe(lambda p: received.append(("second", p)))

        channel.publish(1)

        assert received == [("first", 1), ("second", 1)]

    def test_subscription_cancel(self):
        channel = EventChannel("test")
        received = []
        subscription = channel.subscribe(received.append)

        subscription.cancel()
        channel.publish("ignored")

        assert received == []
        assert channel.subscriber_count == 0

    def test_duplicate_subscription_is_ignored(self):
        channel = EventChannel("test")
        received = []
        channel.subscribe(received.append)
        channel.subscribe(received.append)

        channel.publish("once")

        assert received == ["once"]

    def test_async_handler_rejected(self):
        channel = EventChannel("test")

        async def handler(payload):
            return payload

        with pytest.raises(TypeError):
            channel.subscribe(handler)

    def test_handler_error_is_isolated(self):
        channel = EventChannel("test")
        received = []

        def broken(payload):
            raise ValueError("bad handler")

        channel.subscribe(broken)
        channel.subscribe(received.append)
        channel.publish("still delivered")

        assert received == ["still delivered"]
