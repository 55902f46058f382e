from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from guiloop.agent.history import TERMINAL_STATUSES, RunStatus
from guiloop.util.log import get_logger

log = get_logger("guiloop.agent.events")

Observer = Callable[["AgentEvent"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class AgentEvent:
    iteration: int
    status: RunStatus
    last_action: Optional[str] = None
    timing_ms: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    kind: str = "status"  # status | turn | error | terminal
    detail: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.kind == "terminal"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "status": self.status.value,
            "last_action": self.last_action,
            "timing_ms": self.timing_ms,
            "error": self.error,
            "error_code": self.error_code,
            "kind": self.kind,
            "detail": self.detail,
            "ts": self.ts,
        }


class EventChannel:
    """
    Outbound notifications of a run. Observers are called in registration
    order; queue subscribers each get their own bounded asyncio.Queue.

    A full queue drops its oldest event to make room. The terminal event is
    the last one a run emits, so it is never the one dropped.
    """

    def __init__(self, queue_size: int = 256) -> None:
        self._observers: List[Observer] = []
        self._queues: List[asyncio.Queue] = []
        self._queue_size = queue_size
        self.history: List[AgentEvent] = []

    def add_observer(self, fn: Observer) -> None:
        self._observers.append(fn)

    def remove_observer(self, fn: Observer) -> None:
        if fn in self._observers:
            self._observers.remove(fn)

    def subscribe(self) -> "asyncio.Queue[AgentEvent]":
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._queues:
            self._queues.remove(q)

    async def emit(self, event: AgentEvent) -> None:
        self.history.append(event)
        if event.terminal:
            log.info("Run ended: status=%s iteration=%d error=%s", event.status.value, event.iteration, event.error)
        else:
            log.debug("Event %s: status=%s iteration=%d", event.kind, event.status.value, event.iteration)

        for fn in list(self._observers):
            try:
                res = fn(event)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                # An observer must not take the run down with it.
                log.exception("Event observer %r failed", fn)

        for q in list(self._queues):
            self._put(q, event)

    def _put(self, q: asyncio.Queue, event: AgentEvent) -> None:
        while True:
            try:
                q.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    def terminal_events(self) -> List[AgentEvent]:
        return [e for e in self.history if e.terminal]


def is_terminal_status(status: RunStatus) -> bool:
    return status in TERMINAL_STATUSES
