"""
Per-run event broadcast.

Every observer gets its own bounded queue. Publishing never blocks and never
fails: an observer whose queue is full or that has gone away is dropped from
the run's subscriber set. There is no replay; a subscriber only sees events
published after it subscribed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from catalogharvest.core.logging import json_dumps

logger = logging.getLogger(__name__)


DEFAULT_QUEUE_SIZE = 1000


class EventKind(str, Enum):
    """Kinds of events emitted for a run."""

    LOG = "log"
    NEEDS_RESOLUTION = "needs_resolution"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


# A subscription ends after one of these. needs_resolution is not final:
# the run resumes under the same id once resolved.
TERMINAL_KINDS = frozenset({EventKind.DONE, EventKind.CANCELLED, EventKind.ERROR})

# Exactly one of these closes every attempt
OUTCOME_KINDS = TERMINAL_KINDS | {EventKind.NEEDS_RESOLUTION}


@dataclass(frozen=True)
class RunEvent:
    """A single event on a run's channel."""

    run_id: str
    kind: EventKind
    payload: dict[str, Any]
    seq: int
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind.value,
            "seq": self.seq,
            "emitted_at": self.emitted_at.isoformat(),
            **self.payload,
        }

    def to_sse(self) -> str:
        """Format as a Server-Sent Events frame."""
        return f"event: {self.kind.value}\ndata: {json_dumps(self.to_dict())}\n\n"


class Subscription:
    """One observer's view of a run's channel.

    Iterate with ``async for``; iteration stops after a terminal event, or
    once the subscription is closed and its buffer is drained.
    """

    def __init__(self, channel: "EventChannel", run_id: str, maxsize: int):
        self.run_id = run_id
        self._channel = channel
        self._queue: asyncio.Queue[RunEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: RunEvent) -> bool:
        """Hand an event to this observer without blocking.

        Returns:
            False if the observer could not take it and was closed
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Dropping slow observer on run {self.run_id}")
            self.close()
            return False
        return True

    def close(self) -> None:
        """Detach from the channel. Buffered events can still be read."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass
        self._channel.discard(self)

    def pending(self) -> list[RunEvent]:
        """Drain buffered events without waiting."""
        events: list[RunEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RunEvent:
        if self._finished or (self._closed and self._queue.empty()):
            raise StopAsyncIteration

        event = await self._queue.get()
        if event is None:
            self._finished = True
            raise StopAsyncIteration

        if event.is_terminal:
            self._finished = True
            self.close()
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class EventChannel:
    """Ordered, per-run fan-out of events to live subscribers."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = {}
        self._sequence: dict[str, int] = {}

    def subscribe(self, run_id: str) -> Subscription:
        subscription = Subscription(self, run_id, self.queue_size)
        self._subscribers.setdefault(run_id, set()).add(subscription)
        return subscription

    def discard(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.run_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.run_id]

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))

    def publish(self, run_id: str, kind: EventKind, **payload: Any) -> RunEvent:
        """Deliver an event to every current subscriber of ``run_id``."""
        seq = self._sequence.get(run_id, 0) + 1
        self._sequence[run_id] = seq
        event = RunEvent(run_id=run_id, kind=kind, payload=payload, seq=seq)

        # offer() may discard from the set, so iterate over a copy
        for subscription in list(self._subscribers.get(run_id, ())):
            subscription.offer(event)

        return event
