import asyncio
import time

import pytest

from bookjobs.events import EventBus, resolve_future
from bookjobs.schemas import Event, EventType


def make_event(event_type=EventType.PROGRESS, request_id="r1", batch_id=None, **payload):
    return Event(type=event_type, request_id=request_id, batch_id=batch_id, timestamp=time.time(), payload=payload)


def test_subscribe_by_request_id_wildcard_and_predicate():
    bus = EventBus()
    by_id, everything, failures = [], [], []
    bus.subscribe("r1", by_id.append)
    bus.subscribe("*", everything.append)
    bus.subscribe(lambda event: event.type == EventType.FAILED, failures.append)

    bus.publish(make_event(request_id="r1"))
    bus.publish(make_event(EventType.FAILED, request_id="r2"))
    bus.publish(make_event(EventType.QUEUE_EMPTY, request_id=None))

    assert [e.request_id for e in by_id] == ["r1"]
    assert len(everything) == 3
    assert [e.request_id for e in failures] == ["r2"]


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe("*", seen.append)
    bus.publish(make_event())
    unsubscribe()
    unsubscribe()
    bus.publish(make_event())
    assert len(seen) == 1
    assert len(bus) == 0


def test_listener_errors_are_isolated():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.subscribe("*", broken)
    bus.subscribe("*", seen.append)
    bus.subscribe(lambda event: 1 / 0, seen.append)

    bus.publish(make_event())
    assert len(seen) == 1


def test_events_are_immutable():
    event = make_event()
    with pytest.raises(Exception):
        event.request_id = "other"


@pytest.mark.asyncio
async def test_async_listener_receives_events_in_order():
    bus = EventBus()
    seen = []

    async def listener(event):
        await asyncio.sleep(0.001)
        seen.append(event.payload["n"])

    bus.subscribe("r1", listener)
    for n in range(5):
        bus.publish(make_event(request_id="r1", n=n))
    await bus.drain()
    assert seen == [0, 1, 2, 3, 4]
    await bus.close()


@pytest.mark.asyncio
async def test_slow_async_listener_times_out_without_blocking_others():
    bus = EventBus(listener_timeout=0.05)
    fast, slow_done = [], []

    async def slow(event):
        await asyncio.sleep(1)
        slow_done.append(event)

    bus.subscribe("*", slow)
    bus.subscribe("*", fast.append)

    started = time.monotonic()
    bus.publish(make_event())
    assert len(fast) == 1
    await bus.drain()
    assert time.monotonic() - started < 0.5
    assert slow_done == []
    await bus.close()


@pytest.mark.asyncio
async def test_async_listener_failure_is_isolated():
    bus = EventBus()
    seen = []

    async def broken(event):
        raise RuntimeError("boom")

    async def good(event):
        seen.append(event)

    bus.subscribe("*", broken)
    bus.subscribe("*", good)
    bus.publish(make_event())
    bus.publish(make_event())
    await bus.drain()
    assert len(seen) == 2
    await bus.close()


@pytest.mark.asyncio
async def test_resolve_future_from_another_thread():
    loop = asyncio.get_running_loop()
    future = loop.create_future()
    await asyncio.to_thread(resolve_future, loop, future, "done")
    assert await asyncio.wait_for(future, 1) == "done"
    resolve_future(loop, future, "ignored")
    assert future.result() == "done"


@pytest.mark.asyncio
async def test_async_listener_needs_a_running_loop():
    bus = EventBus()
    seen = []

    async def listener(event):
        seen.append(event)

    with pytest.raises(RuntimeError, match="running event loop"):
        await asyncio.to_thread(bus.subscribe, "*", listener)
    assert len(bus) == 0

    # plain callables can be registered from any thread
    await asyncio.to_thread(bus.subscribe, "*", seen.append)
    bus.publish(make_event())
    assert len(seen) == 1
