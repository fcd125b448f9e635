"""Tests for the event bus and the refresh scheduler."""

import asyncio

from source_sync.events import (
    SOURCE_REMOVED,
    SOURCE_UPDATED,
    ChangeEvent,
    EventBus,
)
from source_sync.scheduler import RefreshScheduler


# ── Helpers ──────────────────────────────────────────────────────────

def _run_async(coro):
    """Run an async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _event(topic=SOURCE_UPDATED, source_id=1, n=0):
    return ChangeEvent(topic, source_id, [{"id": source_id, "n": n}])


# ── Event Bus ────────────────────────────────────────────────────────


class TestSubscribe:
    def test_topic_and_wildcard_subscribers(self):
        bus = EventBus()
        updated, everything = [], []
        bus.subscribe(SOURCE_UPDATED, updated.append)
        bus.subscribe("*", everything.append)
        bus.publish(_event(SOURCE_UPDATED))
        bus.publish(_event(SOURCE_REMOVED))
        assert [e.topic for e in updated] == [SOURCE_UPDATED]
        assert [e.topic for e in everything] == [SOURCE_UPDATED, SOURCE_REMOVED]
        assert bus.latest.topic == SOURCE_REMOVED

    def test_failing_callback_is_isolated(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(SOURCE_UPDATED, broken)
        bus.subscribe(SOURCE_UPDATED, received.append)
        bus.publish(_event())
        assert len(received) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(SOURCE_UPDATED, received.append)
        unsubscribe()
        unsubscribe()
        bus.publish(_event())
        assert received == []


class TestStream:
    def test_stream_receives_events_in_order(self):
        async def scenario():
            bus = EventBus()
            stream = bus.stream()
            for n in range(3):
                bus.publish(_event(n=n))
            received = []
            async for event in stream:
                received.append(event.sources[0]["n"])
                if len(received) == 3:
                    break
            stream.close()
            return received, bus.stream_count

        received, count = _run_async(scenario())
        assert received == [0, 1, 2]
        assert count == 0

    def test_full_stream_drops_oldest(self):
        async def scenario():
            bus = EventBus(stream_maxsize=3)
            async with bus.stream() as stream:
                for n in range(10):
                    bus.publish(_event(n=n))
                pending = stream.pending()
                events = [await stream.get(timeout=1) for _ in range(pending)]
                return [e.sources[0]["n"] for e in events], stream.dropped

        values, dropped = _run_async(scenario())
        assert values == [7, 8, 9]
        assert dropped == 7

    def test_closed_stream_stops_receiving(self):
        async def scenario():
            bus = EventBus()
            stream = bus.stream()
            stream.close()
            bus.publish(_event())
            return stream.pending()

        assert _run_async(scenario()) == 0

    def test_close_wakes_waiting_consumer(self):
        async def scenario():
            bus = EventBus()
            stream = bus.stream()
            received = []

            async def consume():
                async for event in stream:
                    received.append(event.sources[0]["n"])

            task = asyncio.ensure_future(consume())
            bus.publish(_event(n=1))
            await asyncio.sleep(0.01)
            stream.close()
            await asyncio.wait_for(task, 1.0)
            return received, await stream.get(timeout=1)

        received, after = _run_async(scenario())
        assert received == [1]
        assert after is None

    def test_close_on_full_stream_still_ends_iteration(self):
        async def scenario():
            bus = EventBus(stream_maxsize=2)
            stream = bus.stream()
            for n in range(2):
                bus.publish(_event(n=n))
            stream.close()
            return [event.sources[0]["n"] async for event in stream]

        assert _run_async(scenario()) == [1]


# ── Scheduler ────────────────────────────────────────────────────────


class TestRefreshScheduler:
    def test_callback_fires_after_delay(self):
        async def scenario():
            scheduler = RefreshScheduler()
            fired = asyncio.Event()

            async def callback():
                fired.set()

            scheduler.schedule(1, 0.01, callback)
            assert scheduler.is_scheduled(1)
            await asyncio.wait_for(fired.wait(), 1)
            await asyncio.sleep(0)
            return scheduler.is_scheduled(1)

        assert _run_async(scenario()) is False

    def test_reschedule_replaces_timer(self):
        async def scenario():
            scheduler = RefreshScheduler()
            calls = []

            async def first():
                calls.append("first")

            async def second():
                calls.append("second")

            scheduler.schedule(1, 0.05, first)
            scheduler.schedule(1, 0.01, second)
            await asyncio.sleep(0.1)
            return calls, len(scheduler)

        calls, remaining = _run_async(scenario())
        assert calls == ["second"]
        assert remaining == 0

    def test_cancel(self):
        async def scenario():
            scheduler = RefreshScheduler()
            calls = []

            async def callback():
                calls.append(1)

            scheduler.schedule("a", 0.01, callback)
            assert scheduler.cancel("a") is True
            assert scheduler.cancel("a") is False
            await asyncio.sleep(0.05)
            return calls, scheduler.due_in("a")

        calls, due = _run_async(scenario())
        assert calls == []
        assert due is None

    def test_callback_can_reschedule_itself(self):
        async def scenario():
            scheduler = RefreshScheduler()
            calls = []

            async def tick():
                calls.append(1)
                if len(calls) < 3:
                    scheduler.schedule("tick", 0.01, tick)

            scheduler.schedule("tick", 0.01, tick)
            await asyncio.sleep(0.2)
            await scheduler.cancel_all()
            return len(calls)

        assert _run_async(scenario()) == 3

    def test_failing_callback_is_logged_not_raised(self):
        async def scenario():
            scheduler = RefreshScheduler()

            async def broken():
                raise RuntimeError("boom")

            scheduler.schedule(1, 0, broken)
            await asyncio.sleep(0.05)
            return len(scheduler)

        assert _run_async(scenario()) == 0
