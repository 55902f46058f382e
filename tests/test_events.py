import asyncio

from guiloop.agent.events import AgentEvent, EventChannel, is_terminal_status
from guiloop.agent.history import RunStatus


def _ev(i: int, kind: str = "status", status: RunStatus = RunStatus.RUNNING) -> AgentEvent:
    return AgentEvent(iteration=i, status=status, kind=kind)


def test_observers_called_in_order_and_failures_isolated():
    seen = []

    def first(e):
        seen.append(("first", e.iteration))

    def broken(e):
        raise RuntimeError("observer bug")

    async def last(e):
        seen.append(("last", e.iteration))

    ch = EventChannel()
    for fn in (first, broken, last):
        ch.add_observer(fn)

    asyncio.run(ch.emit(_ev(1)))
    assert seen == [("first", 1), ("last", 1)]

    ch.remove_observer(first)
    asyncio.run(ch.emit(_ev(2)))
    assert seen[-1] == ("last", 2)
    assert ("first", 2) not in seen


def test_full_queue_drops_oldest():
    async def scenario():
        ch = EventChannel(queue_size=2)
        q = ch.subscribe()
        for i in range(3):
            await ch.emit(_ev(i))
        await ch.emit(_ev(3, kind="terminal", status=RunStatus.FINISHED))
        return [q.get_nowait().iteration for _ in range(q.qsize())]

    assert asyncio.run(scenario()) == [2, 3]


def test_terminal_reaches_every_subscriber():
    async def scenario():
        ch = EventChannel()
        qs = [ch.subscribe(), ch.subscribe()]
        await ch.emit(_ev(1, kind="terminal", status=RunStatus.ABORTED))
        return [q.get_nowait() for q in qs], ch

    events, ch = asyncio.run(scenario())
    assert all(e.terminal and e.status == RunStatus.ABORTED for e in events)
    assert len(ch.terminal_events()) == 1


def test_unsubscribed_queue_gets_nothing():
    async def scenario():
        ch = EventChannel()
        q = ch.subscribe()
        ch.unsubscribe(q)
        await ch.emit(_ev(1))
        return q.qsize()

    assert asyncio.run(scenario()) == 0


def test_event_to_dict():
    d = AgentEvent(iteration=2, status=RunStatus.ERRORED, error="boom", error_code="unknown", kind="terminal").to_dict()
    assert d["status"] == "errored"
    assert d["error_code"] == "unknown"
    assert d["kind"] == "terminal"


def test_terminal_statuses():
    assert is_terminal_status(RunStatus.FINISHED)
    assert is_terminal_status(RunStatus.STOPPED)
    assert not is_terminal_status(RunStatus.AWAITING_HUMAN)
    assert not is_terminal_status(RunStatus.PAUSED)
