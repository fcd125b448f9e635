"""In-process change notifications.

The registry publishes a :class:`ChangeEvent` carrying the full snapshot
after every change.  Consumers either register a synchronous callback
with :meth:`EventBus.subscribe` or iterate an :class:`EventStream`
obtained from :meth:`EventBus.stream`.  Each stream has a bounded queue;
when a slow consumer falls behind the oldest events are dropped, so the
newest snapshot is always delivered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

SOURCE_UPDATED = "source:updated"
SOURCE_REMOVED = "source:removed"
SOURCE_REFRESHED = "source:refreshed"
SOURCES_LOADED = "sources:loaded"
REFRESH_OPTIONS_UPDATED = "source:refreshOptionsUpdated"

ALL_TOPICS = "*"

DEFAULT_STREAM_SIZE = 100

_END_OF_STREAM = object()


@dataclass(frozen=True)
class ChangeEvent:
    topic: str
    source_id: int | None = None
    sources: list[dict[str, Any]] = field(default_factory=list)


class EventStream:
    """Async iterator over events published after it was opened."""

    def __init__(self, bus: EventBus, maxsize: int):
        self._bus = bus
        self._queue: asyncio.Queue[ChangeEvent | object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._end_queued = False
        self.dropped = 0

    def _offer(self, event: ChangeEvent | object) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(event)

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Wait for the next event; None once the stream is closed and drained.

        Raises asyncio.TimeoutError after *timeout*.
        """
        if self._closed and not self._end_queued and self._queue.empty():
            return None
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _END_OF_STREAM:
            self._end_queued = False
            return None
        return item

    def pending(self) -> int:
        return self._queue.qsize() - (1 if self._end_queued else 0)

    def close(self) -> None:
        """Stop receiving; a consumer waiting on the stream is woken and ends."""
        if not self._closed:
            self._closed = True
            self._bus._remove_stream(self)
            self._end_queued = True
            self._offer(_END_OF_STREAM)

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Topic-based publish/subscribe for the asyncio loop."""

    def __init__(self, stream_maxsize: int = DEFAULT_STREAM_SIZE):
        self._stream_maxsize = stream_maxsize
        self._subscribers: dict[str, list[Callable[[ChangeEvent], None]]] = {}
        self._streams: list[EventStream] = []
        self._latest: ChangeEvent | None = None

    def subscribe(
        self, topic: str, callback: Callable[[ChangeEvent], None]
    ) -> Callable[[], None]:
        """Register *callback* for *topic* (``"*"`` for all). Returns an unsubscriber."""
        self._subscribers.setdefault(topic, []).append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.get(topic, []).remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def stream(self, maxsize: int | None = None) -> EventStream:
        """Open a bounded stream of every event published from now on."""
        stream = EventStream(self, maxsize or self._stream_maxsize)
        self._streams.append(stream)
        return stream

    def _remove_stream(self, stream: EventStream) -> None:
        try:
            self._streams.remove(stream)
        except ValueError:
            pass

    @property
    def latest(self) -> ChangeEvent | None:
        return self._latest

    @property
    def stream_count(self) -> int:
        return len(self._streams)

    def publish(self, event: ChangeEvent) -> None:
        self._latest = event
        for stream in list(self._streams):
            stream._offer(event)

        callbacks = self._subscribers.get(event.topic, []) + self._subscribers.get(ALL_TOPICS, [])
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Event callback error [%s]", event.topic)
