"""
Source registry and orchestrator.

The registry is the single owner of every :class:`Source`.  It routes
sources to the engine for their type, applies the content those engines
report back, persists the list after each change and publishes a change
event carrying the full snapshot.

Engines never touch a source directly: they hold a
:class:`~source_sync.engine.WatchDescriptor` copy and report through
:meth:`SourceRegistry.update_content`.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from source_sync.engine import ContentUpdate, SourceEngine, WatchDescriptor
from source_sync.errors import SourceSyncError, ValidationError
from source_sync.events import (
    REFRESH_OPTIONS_UPDATED,
    SOURCE_REFRESHED,
    SOURCE_REMOVED,
    SOURCE_UPDATED,
    SOURCES_LOADED,
    ChangeEvent,
    EventBus,
)
from source_sync.http_client import validate_body
from source_sync.http_engine import HttpEngine, ProbeResult
from source_sync.models import (
    LOADING_CONTENT,
    NO_CONTENT,
    JsonFilter,
    RefreshOptions,
    RequestOptions,
    Source,
    SourceDefinition,
    SourceType,
    make_key,
    now_ms,
)
from source_sync.repository import SourceRepository

logger = logging.getLogger(__name__)


def _coerce(value: Any, cls: type) -> Any:
    if value is None:
        return cls()
    if isinstance(value, cls):
        return copy.deepcopy(value)
    if isinstance(value, dict):
        return cls.from_dict(value)
    raise ValidationError(f"Expected {cls.__name__} or dict, got {type(value).__name__}")


class SourceRegistry:
    """Owns the source list and coordinates engines, storage and events."""

    def __init__(
        self,
        repository: SourceRepository,
        bus: EventBus,
        engines: Iterable[SourceEngine],
        dedupe_window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._repository = repository
        self._bus = bus
        self._engines: dict[SourceType, SourceEngine] = {}
        for engine in engines:
            self._engines[engine.source_type] = engine
            engine.bind(self._apply_update)
        self._dedupe_window = dedupe_window
        self._clock = clock
        self._sources: list[Source] = []
        self._next_id = 1
        self._initialized = False
        # "<id>:<content length>" -> expiry (monotonic seconds)
        self._recent_updates: dict[str, float] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load persisted sources and start watching them. Idempotent."""
        if self._initialized:
            return
        self._initialized = True
        self._sources = await self._repository.load_sources()
        self._next_id = max((s.id for s in self._sources), default=0) + 1
        for source in list(self._sources):
            await self.start_watch(source, cold=True)
        logger.info("Registry initialised with %d sources", len(self._sources))
        self._publish(SOURCES_LOADED)

    async def dispose(self) -> None:
        for engine in self._engines.values():
            try:
                await engine.dispose()
            except Exception:
                logger.exception("Failed to dispose %s engine", engine.source_type.value)
        self._initialized = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_all(self) -> list[Source]:
        return list(self._sources)

    def get(self, source_id: int) -> Source | None:
        for source in self._sources:
            if source.id == source_id:
                return source
        return None

    def find(self, source_type: SourceType | str, path: str, method: str = "") -> Source | None:
        """Return the source matching (type, path, method-for-http), if any."""
        try:
            key = make_key(source_type, path, method)
        except ValidationError:
            return None
        for source in self._sources:
            if source.key() == key:
                return source
        return None

    def snapshot(self) -> list[dict[str, Any]]:
        return [source.to_dict() for source in self._sources]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self,
        type: SourceType | str,
        path: str,
        tag: str = "",
        method: str = "",
        request_options: RequestOptions | dict | None = None,
        refresh_options: RefreshOptions | dict | None = None,
        json_filter: JsonFilter | dict | None = None,
        initial_content: str = "",
    ) -> Source:
        """Create a source, or return the existing one with the same key.

        Raises ValidationError before any side effect when the definition
        is unusable.
        """
        try:
            source_type = SourceType(str(getattr(type, "value", type)).lower())
        except ValueError:
            raise ValidationError(f"Unknown source type: {type!r}") from None
        path = (path or "").strip()
        if not path:
            raise ValidationError("Source path must not be empty")
        if source_type == SourceType.HTTP:
            method = (method or "GET").strip().upper()
        else:
            method = ""
        request = _coerce(request_options, RequestOptions)
        refresh = _coerce(refresh_options, RefreshOptions)
        jfilter = _coerce(json_filter, JsonFilter)
        if jfilter.enabled and not jfilter.path.strip():
            raise ValidationError("JSON filter is enabled but has no path")
        if source_type == SourceType.HTTP:
            validate_body(request.body, request.content_type)

        existing = self.find(source_type, path, method)
        if existing is not None:
            logger.info("Source %s already exists as id %d", existing.key(), existing.id)
            return existing

        refresh.mark_refreshed(now_ms())
        source = Source(
            id=self._next_id,
            type=source_type,
            path=path,
            tag=tag or "",
            method=method,
            content=initial_content or LOADING_CONTENT,
            request_options=request,
            json_filter=jfilter,
            refresh_options=refresh,
        )
        self._next_id += 1
        self._sources.append(source)
        logger.info("Created source %d (%s)", source.id, source.key())

        await self.save()
        self._publish(SOURCE_UPDATED, source.id)
        await self.start_watch(source)
        return source

    async def start_watch(self, source: Source, cold: bool = False) -> None:
        """Hand *source* to its engine.

        On a cold start HTTP sources resume their persisted schedule
        instead of fetching immediately.
        """
        engine = self._engines.get(source.type)
        if engine is None:
            logger.warning("No engine for %s sources; %d not watched", source.type.value, source.id)
            return
        fetch_now = not (cold and source.is_http)
        try:
            await engine.watch(WatchDescriptor.from_source(source), fetch_now=fetch_now)
        except Exception:
            logger.exception("Failed to watch source %d", source.id)

    async def update_content(
        self,
        source_id: int,
        content: str | None,
        original_response: str | None = None,
        refreshed_at: int | None = None,
    ) -> bool:
        """Apply new content to a source. Returns False for unknown ids."""
        source = self.get(source_id)
        if source is None:
            logger.debug("Ignoring update for unknown source %d", source_id)
            return False
        content = NO_CONTENT if content is None else str(content)
        # Timestamps track the engine schedule even when the content is suppressed
        rescheduled = refreshed_at is not None and source.refresh_options.interval > 0
        if rescheduled:
            source.refresh_options.mark_refreshed(refreshed_at)

        if self._is_duplicate(source_id, content):
            logger.debug("Suppressed duplicate update for source %d", source_id)
            if rescheduled:
                await self.save()
            self._publish(SOURCE_REFRESHED, source_id)
            return True

        source.content = content
        if original_response is not None:
            source.original_response = original_response

        await self.save()
        self._publish(SOURCE_UPDATED, source_id)
        self._publish(SOURCE_REFRESHED, source_id)
        return True

    async def _apply_update(self, update: ContentUpdate) -> None:
        await self.update_content(
            update.source_id,
            update.content,
            original_response=update.original_response,
            refreshed_at=update.refreshed_at,
        )

    def _is_duplicate(self, source_id: int, content: str) -> bool:
        if self._dedupe_window <= 0:
            return False
        now = self._clock()
        self._recent_updates = {
            key: expiry for key, expiry in self._recent_updates.items() if expiry > now
        }
        key = f"{source_id}:{len(content)}"
        if key in self._recent_updates:
            return True
        self._recent_updates[key] = now + self._dedupe_window
        return False

    async def remove(self, source_id: int) -> bool:
        source = self.get(source_id)
        if source is None:
            return False
        self._sources.remove(source)
        engine = self._engines.get(source.type)
        if engine is not None:
            try:
                await engine.unwatch(source_id)
            except Exception:
                logger.exception("Failed to unwatch source %d", source_id)
        logger.info("Removed source %d (%s)", source_id, source.key())
        await self.save()
        self._publish(SOURCE_REMOVED, source_id)
        return True

    async def refresh_now(self, source_id: int) -> bool:
        """Fetch an HTTP source immediately without moving its schedule."""
        source = self.get(source_id)
        if source is None or not source.is_http:
            return False
        engine = self._engines.get(SourceType.HTTP)
        if engine is None:
            return False
        return await engine.refresh(source_id)

    async def update_refresh_options(
        self, source_id: int, refresh_options: RefreshOptions | dict
    ) -> bool:
        """Change an HTTP source's interval and restart its schedule from now."""
        source = self.get(source_id)
        if source is None or not source.is_http:
            return False
        options = _coerce(refresh_options, RefreshOptions)
        source.refresh_options.interval = options.interval
        source.refresh_options.mark_refreshed(now_ms())

        engine = self._engines.get(SourceType.HTTP)
        if engine is not None:
            await engine.update_schedule(WatchDescriptor.from_source(source))
        await self.save()
        self._publish(REFRESH_OPTIONS_UPDATED, source_id)
        return True

    async def test_http_request(
        self,
        url: str,
        method: str = "GET",
        request_options: RequestOptions | dict | None = None,
        json_filter: JsonFilter | dict | None = None,
    ) -> ProbeResult:
        """Try a request from the source editor without creating a source."""
        engine = self._engines.get(SourceType.HTTP)
        if not isinstance(engine, HttpEngine):
            raise SourceSyncError("HTTP engine is not available")
        return await engine.probe(
            url,
            method,
            _coerce(request_options, RequestOptions),
            _coerce(json_filter, JsonFilter) if json_filter is not None else None,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save(self) -> bool:
        return await self._repository.save_sources(self._sources)

    async def export_sources(self, path: str | Path) -> bool:
        definitions = [source.to_definition() for source in self._sources]
        try:
            await self._repository.write_definitions(path, definitions)
        except SourceSyncError as exc:
            logger.error("Export to %s failed: %s", path, exc)
            return False
        return True

    async def import_sources_from_file(self, path: str | Path) -> list[Source]:
        """Create sources from an export file.

        Raises ValidationError when the file is not a JSON array; bad entries
        are skipped.  Entries matching an existing source return that source.
        """
        entries = await self._repository.read_definitions(path)
        imported: list[Source] = []
        for index, entry in enumerate(entries):
            try:
                definition = SourceDefinition.from_dict(entry)
                source = await self.create(
                    definition.type,
                    definition.path,
                    tag=definition.tag,
                    method=definition.method,
                    request_options=definition.request_options,
                    refresh_options=definition.refresh_options,
                    json_filter=definition.json_filter,
                )
            except ValidationError as exc:
                logger.warning("Skipping import entry #%d: %s", index, exc)
                continue
            imported.append(source)
        logger.info("Imported %d of %d sources from %s", len(imported), len(entries), path)
        await self.save()
        self._publish(SOURCES_LOADED)
        return imported

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _publish(self, topic: str, source_id: int | None = None) -> None:
        self._bus.publish(ChangeEvent(topic, source_id, self.snapshot()))
