"""Tests for forge/events.py and forge/control.py."""

import asyncio

from forge.control import ABORT, PAUSE, CommandKind, CommandQueue, inject_feedback
from forge.events import EventBus, Lagged, RoundStarted, SessionPaused
from forge.models import RoundKind


def _started(n: int) -> RoundStarted:
    return RoundStarted(round_number=n, kind=RoundKind.CRITIQUE)


async def test_every_subscriber_gets_every_event():
    bus = EventBus()
    first, second = bus.subscribe(), bus.subscribe()
    bus.publish(_started(0))
    bus.publish(_started(1))
    assert [await first.get(), await first.get()] == [_started(0), _started(1)]
    assert (await second.get()).round_number == 0


def test_history_is_bounded():
    bus = EventBus(history=2)
    for n in range(3):
        bus.publish(_started(n))
    assert [e.round_number for e in bus.history()] == [1, 2]


def test_replay_delivers_history_first():
    bus = EventBus()
    bus.publish(_started(0))
    late = bus.subscribe(replay=True)
    fresh = bus.subscribe()
    bus.publish(_started(1))
    assert late.get_nowait() == _started(0)
    assert late.get_nowait() == _started(1)
    assert fresh.get_nowait() == _started(1)
    assert fresh.get_nowait() is None


def test_slow_subscriber_sees_lagged():
    bus = EventBus(subscriber_queue=2)
    sub = bus.subscribe()
    for n in range(5):
        bus.publish(_started(n))
    assert sub.get_nowait() == Lagged(missed=3)
    assert sub.get_nowait() == _started(3)
    assert sub.get_nowait() == _started(4)


def test_publish_without_subscribers():
    bus = EventBus()
    bus.publish(SessionPaused(round_number=2))
    assert bus.history() == [SessionPaused(round_number=2)]


async def test_close_ends_iteration():
    bus = EventBus()
    sub = bus.subscribe()
    bus.publish(_started(0))

    async def collect():
        return [event async for event in sub]

    task = asyncio.create_task(collect())
    await asyncio.sleep(0.01)
    sub.close()
    assert await asyncio.wait_for(task, timeout=1) == [_started(0)]

    bus.publish(_started(1))
    assert sub.get_nowait() is None


async def test_command_queue_is_fifo():
    queue = CommandQueue()
    queue.send(PAUSE)
    queue.send(inject_feedback("more tests"))
    queue.send(ABORT)
    assert await queue.receive() == PAUSE
    drained = queue.drain()
    assert [c.kind for c in drained] == [CommandKind.INJECT_FEEDBACK, CommandKind.ABORT]
    assert drained[0].text == "more tests"
    assert queue.drain() == []


async def test_send_threadsafe():
    queue = CommandQueue()
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, queue.send_threadsafe, ABORT, loop)
    assert await asyncio.wait_for(queue.receive(), timeout=1) == ABORT
