from __future__ import annotations
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

log = logging.getLogger(__name__)

ALL = "*"


@dataclass(frozen=True)
class ExecutionEvent:
    type: str  # "progress" | "log" | "status"
    job_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": {"execution_id": self.job_id, **self.data},
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """Bounded, drop-oldest event buffer for a single consumer.

    Status events are never the ones discarded while a progress or log event
    is available to discard instead.
    """

    def __init__(self, broadcaster: "ProgressBroadcaster", scope: str, maxsize: int):
        self.broadcaster = broadcaster
        self.scope = scope
        self.maxsize = max(maxsize, 1)
        self.dropped = 0
        self._events: deque[ExecutionEvent] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def matches(self, event: ExecutionEvent) -> bool:
        return self.scope == ALL or self.scope == event.job_id

    def put(self, event: ExecutionEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._events) >= self.maxsize:
                self._discard_one()
            self._events.append(event)
            self._cond.notify()

    def put_first(self, event: ExecutionEvent) -> None:
        """Queue ahead of anything already buffered. Used for the subscribe-time snapshot."""
        with self._cond:
            if self._closed:
                return
            if len(self._events) >= self.maxsize:
                self._discard_one()
            self._events.appendleft(event)
            self._cond.notify()

    def _discard_one(self) -> None:
        for i, queued in enumerate(self._events):
            if queued.type != "status":
                del self._events[i]
                break
        else:
            self._events.popleft()
        self.dropped += 1

    def get(self, timeout: float | None = None) -> Optional[ExecutionEvent]:
        with self._cond:
            if not self._events and not self._closed:
                self._cond.wait(timeout)
            if self._events:
                return self._events.popleft()
            return None

    def drain(self) -> List[ExecutionEvent]:
        with self._cond:
            events = list(self._events)
            self._events.clear()
            return events

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self.broadcaster.unsubscribe(self)

    def __iter__(self) -> Iterator[ExecutionEvent]:
        while True:
            event = self.get()
            if event is None:
                if self._closed:
                    return
                continue
            yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ProgressBroadcaster:
    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, scope: str = ALL) -> Subscription:
        sub = Subscription(self, scope, self.queue_size)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, event: ExecutionEvent) -> None:
        # held across delivery: every subscriber sees one job's events in the same order
        with self._lock:
            for sub in self._subscribers:
                if sub.matches(event):
                    sub.put(event)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
