"""Common interface implemented by the file, env and HTTP engines.

The registry owns every :class:`~source_sync.models.Source`.  Engines only
receive a :class:`WatchDescriptor` copy describing what to read and when,
and hand results back as :class:`ContentUpdate` objects through the
callback installed with :meth:`SourceEngine.bind`.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from source_sync.models import (
    JsonFilter,
    RefreshOptions,
    RequestOptions,
    Source,
    SourceType,
)

logger = logging.getLogger(__name__)


@dataclass
class WatchDescriptor:
    """What an engine needs to know to keep one source fresh."""
    source_id: int
    type: SourceType
    path: str
    method: str = ""
    request_options: RequestOptions = field(default_factory=RequestOptions)
    json_filter: JsonFilter = field(default_factory=JsonFilter)
    refresh_options: RefreshOptions = field(default_factory=RefreshOptions)

    @classmethod
    def from_source(cls, source: Source) -> WatchDescriptor:
        return cls(
            source_id=source.id,
            type=source.type,
            path=source.path,
            method=source.method,
            request_options=copy.deepcopy(source.request_options),
            json_filter=copy.deepcopy(source.json_filter),
            refresh_options=copy.deepcopy(source.refresh_options),
        )


@dataclass
class ContentUpdate:
    """A freshly read value for one source.

    *refreshed_at* (epoch ms) is set only for scheduled HTTP refreshes and
    moves the source's refresh timestamps.
    """
    source_id: int
    content: str | None
    original_response: str | None = None
    refreshed_at: int | None = None


UpdateCallback = Callable[[ContentUpdate], Awaitable[object]]


class SourceEngine(ABC):
    """Produces content for every source of one :class:`SourceType`."""

    source_type: SourceType

    def __init__(self) -> None:
        self._on_update: UpdateCallback | None = None

    def bind(self, on_update: UpdateCallback) -> None:
        """Install the callback that receives every content update."""
        self._on_update = on_update

    async def _emit(self, update: ContentUpdate) -> None:
        if self._on_update is None:
            logger.debug("No listener for update of source %d", update.source_id)
            return
        try:
            await self._on_update(update)
        except Exception:
            logger.exception("Update callback failed for source %d", update.source_id)

    # ------ Lifecycle ------

    @abstractmethod
    async def watch(self, descriptor: WatchDescriptor, fetch_now: bool = True) -> None:
        """Start keeping *descriptor* fresh, reading it now if *fetch_now*."""

    @abstractmethod
    async def unwatch(self, source_id: int) -> None:
        """Stop all watching and timers for *source_id*."""

    @abstractmethod
    async def refresh(self, source_id: int) -> bool:
        """Read *source_id* once, off schedule. False when it is not watched."""

    async def update_schedule(self, descriptor: WatchDescriptor) -> None:
        """Apply new refresh options; engines without a schedule ignore it."""

    @abstractmethod
    async def dispose(self) -> None:
        """Release every watch, timer and connection."""
