"""
Room-scoped publish/subscribe for job progress events.

Each job id is a topic. Observers are plain callables receiving a
ProgressEvent; publishing calls them synchronously in subscription order, so
events for a single job reach every observer in the order they were produced.
Publishing is fire-and-forget: an observer that raises is logged and skipped.

Observers must not block. ``JobEventStream`` is the queue-backed observer used
by WebSocket connections.
"""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Callable, Dict, List, Optional

from .models import ProgressEvent

logger = logging.getLogger(__name__)

Observer = Callable[[ProgressEvent], None]


class ProgressBroadcaster:
    def __init__(self) -> None:
        self._topics: Dict[str, List[Observer]] = {}
        self._lock = Lock()

    def subscribe(self, job_id: str, observer: Observer) -> None:
        with self._lock:
            observers = self._topics.setdefault(job_id, [])
            if observer not in observers:
                observers.append(observer)

    def unsubscribe(self, job_id: str, observer: Observer) -> None:
        with self._lock:
            observers = self._topics.get(job_id)
            if not observers:
                return
            if observer in observers:
                observers.remove(observer)
            if not observers:
                del self._topics[job_id]

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._topics.get(job_id, ()))

    def publish(self, job_id: str, event: ProgressEvent) -> int:
        """Deliver ``event`` to every observer of ``job_id``; returns how many succeeded."""
        with self._lock:
            observers = list(self._topics.get(job_id, ()))

        delivered = 0
        for observer in observers:
            try:
                observer(event)
            except Exception as exc:
                logger.warning(f"Dropping {event.type.value} event for job {job_id}: observer {observer!r} failed: {exc}")
                continue
            delivered += 1
        return delivered


class JobEventStream:
    """
    Buffers events for one consumer (typically a WebSocket connection).

    Must be fed from the event loop thread. Progress events older than what
    the consumer has already seen are dropped, so a snapshot sent on join
    followed by an in-flight event can never make progress appear to go back.
    """

    def __init__(self, job_id: str, maxsize: int = 256) -> None:
        self.job_id = job_id
        self._queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=maxsize)
        self._last_progress = -1

    def __call__(self, event: ProgressEvent) -> None:
        self._queue.put_nowait(event)

    def mark_seen(self, event: ProgressEvent) -> None:
        self._last_progress = max(self._last_progress, event.progress)

    async def next(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Return the next fresh event, or None if ``timeout`` elapses first."""
        while True:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
            if not event.is_terminal and event.progress < self._last_progress:
                continue
            self.mark_seen(event)
            return event

    def __repr__(self) -> str:
        return f"JobEventStream(job_id={self.job_id!r})"
