"""
Crash-safe file writes for Source Sync.

Every write goes to a uniquely named temp file in the target's directory,
is flushed and fsync'd, then renamed over the target, so readers only
ever see the previous or the next complete version of a file.

Concurrency rules:
  - writes (and reads) of one path are served strictly in arrival order
    by a per-path :class:`asyncio.Lock`, whose waiters wake FIFO;
  - a ``<target>.lock`` file created with ``O_EXCL`` keeps a second
    process from interleaving with us.  After ``lock_timeout`` the lock is
    treated as abandoned and broken; if it still cannot be taken the write
    goes ahead without it.  Availability of the agent is preferred to
    strict cross-process exclusion here;
  - failed writes are retried with exponential backoff and the temp file
    is always cleaned up.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any

from source_sync.errors import PersistenceError
from source_sync.platform_utils import IS_WINDOWS

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
STALE_LOCK_AGE = 3600.0  # seconds

_BUSY_UNLINK_ATTEMPTS = 3


def _temp_path_for(target: str) -> str:
    directory, name = os.path.split(target)
    return os.path.join(
        directory, f".{name}.{os.getpid()}.{secrets.token_hex(6)}.tmp"
    )


def _rename_into_place(tmp_path: str, target: str) -> None:
    """Atomically move *tmp_path* over *target*."""
    try:
        os.replace(tmp_path, target)
        return
    except PermissionError:
        if not IS_WINDOWS:
            raise
    # Windows refuses to replace a file another process has open; clear
    # the target out of the way and rename.
    for attempt in range(_BUSY_UNLINK_ATTEMPTS):
        try:
            os.unlink(target)
            break
        except FileNotFoundError:
            break
        except PermissionError:
            if attempt == _BUSY_UNLINK_ATTEMPTS - 1:
                raise
            time.sleep(0.05 * (attempt + 1))
    os.rename(tmp_path, target)


def _write_atomically(target: str, payload: bytes) -> None:
    """Blocking body of one write attempt."""
    tmp_path = _temp_path_for(target)
    try:
        with open(tmp_path, "wb") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        _rename_into_place(tmp_path, target)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_text(target: str) -> str:
    with open(target, encoding="utf-8") as fh:
        return fh.read()


def _try_create_lock(lock_path: str) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    except PermissionError:
        # Windows reports a lock being deleted concurrently as access denied
        return False
    try:
        os.write(fd, str(os.getpid()).encode("ascii"))
    finally:
        os.close(fd)
    return True


def _remove_stale_locks(directory: str, max_age: float, held: set[str]) -> int:
    removed = 0
    now = time.time()
    try:
        entries = list(os.scandir(directory))
    except OSError as exc:
        logger.debug("Stale lock sweep skipped for %s: %s", directory, exc)
        return 0
    for entry in entries:
        if not entry.name.endswith(LOCK_SUFFIX) or entry.path in held:
            continue
        try:
            if now - entry.stat().st_mtime > max_age:
                os.unlink(entry.path)
                removed += 1
                logger.info("Removed stale lock file %s", entry.path)
        except OSError as exc:
            logger.debug("Could not inspect lock file %s: %s", entry.path, exc)
    return removed


class AtomicFileWriter:
    """Serialised, atomic, lock-guarded file writer."""

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 0.1,
        lock_timeout: float = 5.0,
        lock_poll_interval: float = 0.05,
    ):
        self._max_retries = max(0, max_retries)
        self._retry_delay = retry_delay
        self._lock_timeout = lock_timeout
        self._lock_poll_interval = lock_poll_interval
        self._queues: dict[str, asyncio.Lock] = {}
        self._held_locks: set[str] = set()
        self._sweep_task: asyncio.Task | None = None

    @staticmethod
    def _normalize(path: str | Path) -> str:
        return os.path.abspath(os.fspath(path))

    def _queue_for(self, target: str) -> asyncio.Lock:
        queue = self._queues.get(target)
        if queue is None:
            queue = asyncio.Lock()
            self._queues[target] = queue
        return queue

    # ---- public API ----

    async def write_file(
        self, path: str | Path, data: str | bytes, validate_json: bool = False
    ) -> None:
        """Atomically replace *path* with *data*.

        Raises PersistenceError when the payload is not valid JSON (with
        *validate_json*) or when every attempt failed.
        """
        target = self._normalize(path)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        if validate_json:
            try:
                json.loads(payload)
            except ValueError as exc:
                raise PersistenceError(
                    f"Refusing to write invalid JSON to {target}: {exc}"
                ) from exc

        async with self._queue_for(target):
            await self._write_with_retries(target, payload)

    async def write_json(self, path: str | Path, obj: Any) -> None:
        """Serialise *obj* with indent 2 and write it atomically."""
        text = json.dumps(obj, indent=2, ensure_ascii=False)
        await self.write_file(path, text, validate_json=True)

    async def read_file(self, path: str | Path) -> str | None:
        """Return the file's text once pending writes settle, or None if absent."""
        target = self._normalize(path)
        async with self._queue_for(target):
            if not os.path.isfile(target):
                return None
            held = await self._acquire_lock(target)
            try:
                return await asyncio.to_thread(_read_text, target)
            except FileNotFoundError:
                return None
            finally:
                if held:
                    self._release_lock(target)

    async def read_json(self, path: str | Path) -> Any:
        """Parse the file as JSON; None if absent, ValueError if malformed."""
        text = await self.read_file(path)
        if text is None or not text.strip():
            return None
        return json.loads(text)

    async def sweep_stale_locks(
        self, directory: str | Path, max_age: float = STALE_LOCK_AGE
    ) -> int:
        """Delete ``*.lock`` files in *directory* older than *max_age* seconds."""
        return await asyncio.to_thread(
            _remove_stale_locks,
            self._normalize(directory),
            max_age,
            set(self._held_locks),
        )

    def start_stale_lock_sweep(self, directory: str | Path) -> asyncio.Task:
        """Run :meth:`sweep_stale_locks` in the background."""

        async def _sweep() -> None:
            try:
                await self.sweep_stale_locks(directory)
            except Exception:
                logger.exception("Stale lock sweep failed for %s", directory)

        self._sweep_task = asyncio.create_task(_sweep(), name="StaleLockSweep")
        return self._sweep_task

    async def dispose(self) -> None:
        """Cancel the background sweep and release lock files still held."""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
        for lock_path in list(self._held_locks):
            with contextlib.suppress(OSError):
                os.unlink(lock_path)
            self._held_locks.discard(lock_path)

    # ---- internals ----

    async def _write_with_retries(self, target: str, payload: bytes) -> None:
        os.makedirs(os.path.dirname(target), exist_ok=True)
        last_exc: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                await self._write_once(target, payload)
                return
            except OSError as exc:
                last_exc = exc
                if attempt < self._max_retries:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(
                        "Write to %s failed (%s); retry %d/%d in %.2fs",
                        target,
                        exc,
                        attempt + 1,
                        self._max_retries,
                        delay,
                    )
                    await asyncio.sleep(delay)
        logger.error("Giving up on write to %s: %s", target, last_exc)
        raise PersistenceError(f"Failed to write {target}: {last_exc}") from last_exc

    async def _write_once(self, target: str, payload: bytes) -> None:
        held = await self._acquire_lock(target)
        try:
            await asyncio.to_thread(_write_atomically, target, payload)
        finally:
            if held:
                self._release_lock(target)

    async def _acquire_lock(self, target: str) -> bool:
        lock_path = target + LOCK_SUFFIX
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock_timeout
        while True:
            if _try_create_lock(lock_path):
                self._held_locks.add(lock_path)
                return True
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self._lock_poll_interval)

        logger.warning(
            "Lock %s still held after %.1fs; breaking it", lock_path, self._lock_timeout
        )
        with contextlib.suppress(OSError):
            os.unlink(lock_path)
        if _try_create_lock(lock_path):
            self._held_locks.add(lock_path)
            return True
        logger.warning("Could not take %s; continuing without a lock", lock_path)
        return False

    def _release_lock(self, target: str) -> None:
        lock_path = target + LOCK_SUFFIX
        self._held_locks.discard(lock_path)
        try:
            os.unlink(lock_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove lock %s: %s", lock_path, exc)
