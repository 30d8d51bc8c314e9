from __future__ import annotations

import asyncio
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Literal

logger = logging.getLogger(__name__)

EventKind = Literal[
    "job:added",
    "job:started",
    "job:completed",
    "job:failed",
    "job:requeued",
    "circuit:opened",
    "circuit:closed",
    "queue:backpressure",
    "pipeline:completed",
    "pipeline:failed",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RadarEvent:
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "payload": self.payload, "occurred_at": self.occurred_at.isoformat()}


class EventChannel:
    """Fan-out channel between the queue/engine and whoever wants to observe them.

    Publishing never blocks: every subscriber owns a bounded asyncio queue, and a
    subscriber that falls behind loses its oldest undelivered events.
    """

    def __init__(
        self,
        *,
        history_size: int = 200,
        subscriber_buffer: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._history: deque[RadarEvent] = deque(maxlen=history_size)
        self._subscribers: list[asyncio.Queue[RadarEvent]] = []
        self._subscriber_buffer = subscriber_buffer
        self._counts: Counter[str] = Counter()
        self._clock = clock

    def publish(self, kind: EventKind, **payload: Any) -> RadarEvent:
        event = RadarEvent(kind=kind, payload=payload, occurred_at=self._clock())
        self._history.append(event)
        self._counts[kind] += 1
        for queue in self._subscribers:
            if queue.full():
                dropped = queue.get_nowait()
                logger.debug("event subscriber lagging; dropped kind=%s", dropped.kind)
            queue.put_nowait(event)
        return event

    def subscribe(self) -> asyncio.Queue[RadarEvent]:
        queue: asyncio.Queue[RadarEvent] = asyncio.Queue(maxsize=self._subscriber_buffer)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[RadarEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def recent(self, limit: int = 50, kind: EventKind | None = None) -> list[RadarEvent]:
        events = [event for event in self._history if kind is None or event.kind == kind]
        return events[-limit:] if limit > 0 else []

    def counts(self) -> dict[str, int]:
        return dict(self._counts)
