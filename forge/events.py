"""Progress events and the one-to-many bus that carries them to observers.

Publishing never blocks: each subscriber owns a bounded queue, and when it is
full the oldest pending event is dropped. The subscriber is told how many it
missed through a ``Lagged`` event before its next delivery.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from forge.models import RoundKind, SessionStatus, TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForgeEvent:
    pass


@dataclass(frozen=True)
class SessionStarted(ForgeEvent):
    session_id: str
    topic: str


@dataclass(frozen=True)
class RoundStarted(ForgeEvent):
    round_number: int
    kind: RoundKind


@dataclass(frozen=True)
class RoundCompleted(ForgeEvent):
    round_number: int
    kind: RoundKind
    tokens: TokenUsage


@dataclass(frozen=True)
class ParticipantResponded(ForgeEvent):
    participant: str
    tokens: TokenUsage
    latency_sec: float


@dataclass(frozen=True)
class ParticipantError(ForgeEvent):
    participant: str
    error: str
    retrying_with: str | None = None


@dataclass(frozen=True)
class ConvergenceChecked(ForgeEvent):
    score: float
    converged: bool


@dataclass(frozen=True)
class CostUpdated(ForgeEvent):
    total_usd: float
    remaining_usd: float


@dataclass(frozen=True)
class SessionPaused(ForgeEvent):
    round_number: int


@dataclass(frozen=True)
class SessionResumed(ForgeEvent):
    round_number: int


@dataclass(frozen=True)
class SessionCompleted(ForgeEvent):
    status: SessionStatus
    reason: str
    final_content: str | None


@dataclass(frozen=True)
class ErrorEvent(ForgeEvent):
    message: str
    recoverable: bool


@dataclass(frozen=True)
class Lagged(ForgeEvent):
    missed: int


class Subscription:
    """One observer's view of the bus. Iterate it, or call ``get()``."""

    def __init__(self, bus: "EventBus", maxsize: int) -> None:
        self._bus = bus
        self._queue: deque[ForgeEvent] = deque()
        self._maxsize = maxsize
        self._missed = 0
        self._ready = asyncio.Event()
        self.closed = False

    def _deliver(self, event: ForgeEvent) -> None:
        if len(self._queue) >= self._maxsize:
            self._queue.popleft()
            self._missed += 1
        self._queue.append(event)
        self._ready.set()

    def get_nowait(self) -> ForgeEvent | None:
        if self._missed:
            missed, self._missed = self._missed, 0
            return Lagged(missed=missed)
        if not self._queue:
            self._ready.clear()
            return None
        return self._queue.popleft()

    async def get(self) -> ForgeEvent:
        while True:
            event = self.get_nowait()
            if event is not None:
                return event
            await self._ready.wait()

    def close(self) -> None:
        self.closed = True
        self._bus.unsubscribe(self)
        self._ready.set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ForgeEvent:
        while True:
            event = self.get_nowait()
            if event is not None:
                return event
            if self.closed:
                raise StopAsyncIteration
            await self._ready.wait()


class EventBus:
    """Bounded-history broadcast of ForgeEvents."""

    def __init__(self, history: int = 256, subscriber_queue: int = 64) -> None:
        self._history: deque[ForgeEvent] = deque(maxlen=history)
        self._subscribers: list[Subscription] = []
        self._subscriber_queue = subscriber_queue

    def publish(self, event: ForgeEvent) -> None:
        self._history.append(event)
        logger.debug("event %s", event)
        for sub in list(self._subscribers):
            sub._deliver(event)

    def subscribe(self, replay: bool = False) -> Subscription:
        """Register a new observer; with ``replay`` it first gets the retained history."""
        sub = Subscription(self, self._subscriber_queue)
        if replay:
            for event in self._history:
                sub._deliver(event)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def history(self) -> list[ForgeEvent]:
        return list(self._history)
