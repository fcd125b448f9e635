"""File system watcher for Source Sync.

Uses the watchdog library to monitor the folders that contain file
sources and pushes the new file contents into the registry whenever
one of them changes.  Watchdog calls us from its observer thread; every
event is handed to the asyncio loop before anything else happens.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import Any

from watchdog.events import (
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from source_sync.engine import ContentUpdate, SourceEngine, WatchDescriptor
from source_sync.models import SourceType

logger = logging.getLogger(__name__)


def read_file_content(path: str) -> str:
    """Return the file text, or a message describing why it could not be read."""
    try:
        with open(path, encoding="utf-8", errors="replace") as fh:
            return fh.read()
    except FileNotFoundError:
        return f"File not found: {path}"
    except IsADirectoryError:
        return f"Error reading file: {path} is a directory"
    except OSError as exc:
        return f"Error reading file: {exc}"


class _SourceFileHandler(FileSystemEventHandler):
    """Watchdog handler that reports changed file paths."""

    def __init__(self, on_change: Callable[[str], None]):
        super().__init__()
        self._on_change = on_change

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle a new file creation event."""
        if not event.is_directory:
            self._on_change(os.fsdecode(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle a file modification event."""
        if not event.is_directory:
            self._on_change(os.fsdecode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle a rename; editors often save by renaming over the target."""
        if not event.is_directory:
            self._on_change(os.fsdecode(event.src_path))
            self._on_change(os.fsdecode(event.dest_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle a deletion so the source shows the file as missing."""
        if not event.is_directory:
            self._on_change(os.fsdecode(event.src_path))


class FileEngine(SourceEngine):
    """Watches file sources with one watchdog observer.

    Usage:
        engine = FileEngine(debounce=0.2)
        engine.bind(registry_callback)
        await engine.watch(descriptor)
        ...
        await engine.dispose()
    """

    source_type = SourceType.FILE

    def __init__(self, debounce: float = 0.2):
        super().__init__()
        self._debounce = max(0.0, debounce)
        self._observer: Any | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        # source id -> normalised path
        self._sources: dict[int, str] = {}
        # normalised path -> source ids (several sources may share one file)
        self._paths: dict[str, set[int]] = {}
        # directory -> watchdog ObservedWatch
        self._dir_watches: dict[str, Any] = {}
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    @staticmethod
    def _normalize(path: str) -> str:
        return os.path.normcase(os.path.abspath(os.path.expanduser(path)))

    # ------ Lifecycle ------

    async def watch(self, descriptor: WatchDescriptor, fetch_now: bool = True) -> None:
        self._loop = asyncio.get_running_loop()
        source_id = descriptor.source_id
        if source_id in self._sources:
            await self.unwatch(source_id)

        path = self._normalize(descriptor.path)
        self._sources[source_id] = path
        self._paths.setdefault(path, set()).add(source_id)
        self._watch_directory(os.path.dirname(path))

        content = await asyncio.to_thread(read_file_content, path)
        await self._emit(ContentUpdate(source_id=source_id, content=content))

    async def unwatch(self, source_id: int) -> None:
        path = self._sources.pop(source_id, None)
        if path is None:
            return
        ids = self._paths.get(path)
        if ids is not None:
            ids.discard(source_id)
            if not ids:
                del self._paths[path]
                handle = self._pending.pop(path, None)
                if handle is not None:
                    handle.cancel()

        directory = os.path.dirname(path)
        if not any(os.path.dirname(p) == directory for p in self._paths):
            self._unwatch_directory(directory)
        if not self._dir_watches:
            await self._stop_observer()

    async def refresh(self, source_id: int) -> bool:
        path = self._sources.get(source_id)
        if path is None:
            return False
        content = await asyncio.to_thread(read_file_content, path)
        await self._emit(ContentUpdate(source_id=source_id, content=content))
        return True

    async def dispose(self) -> None:
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        for task in list(self._tasks):
            task.cancel()
        self._sources.clear()
        self._paths.clear()
        await self._stop_observer()

    @property
    def is_running(self) -> bool:
        """Return whether the observer thread is currently active."""
        return self._observer is not None and self._observer.is_alive()

    # ------ watchdog plumbing ------

    def _ensure_observer(self) -> Any:
        if self._observer is None:
            observer = Observer()
            observer.daemon = True
            observer.start()
            self._observer = observer
            logger.info("File observer started.")
        return self._observer

    def _watch_directory(self, directory: str) -> None:
        if directory in self._dir_watches:
            return
        if not os.path.isdir(directory):
            logger.warning("Cannot watch %s: directory does not exist", directory)
            return
        observer = self._ensure_observer()
        handler = _SourceFileHandler(self._on_fs_event)
        try:
            self._dir_watches[directory] = observer.schedule(
                handler, directory, recursive=False
            )
            logger.info("Watching '%s'", directory)
        except OSError as exc:
            logger.error("Could not watch %s: %s", directory, exc)

    def _unwatch_directory(self, directory: str) -> None:
        watch = self._dir_watches.pop(directory, None)
        if watch is None or self._observer is None:
            return
        try:
            self._observer.unschedule(watch)
        except (KeyError, OSError):
            logger.debug("Watch for %s already gone", directory)

    async def _stop_observer(self) -> None:
        observer = self._observer
        if observer is None:
            return
        self._observer = None
        self._dir_watches.clear()
        observer.stop()
        await asyncio.to_thread(observer.join, 5)
        logger.info("File observer stopped.")

    def _on_fs_event(self, raw_path: str) -> None:
        """Called on the observer thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        path = self._normalize(raw_path)
        try:
            loop.call_soon_threadsafe(self._schedule_read, path)
        except RuntimeError:
            # loop closed between the check and the call
            pass

    def _schedule_read(self, path: str) -> None:
        if path not in self._paths:
            return
        handle = self._pending.pop(path, None)
        if handle is not None:
            handle.cancel()
        assert self._loop is not None
        self._pending[path] = self._loop.call_later(
            self._debounce, self._start_read, path
        )

    def _start_read(self, path: str) -> None:
        self._pending.pop(path, None)
        assert self._loop is not None
        task = self._loop.create_task(self._read_and_emit(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _read_and_emit(self, path: str) -> None:
        content = await asyncio.to_thread(read_file_content, path)
        for source_id in sorted(self._paths.get(path, ())):
            logger.debug("File changed for source %d: %s", source_id, path)
            await self._emit(ContentUpdate(source_id=source_id, content=content))
