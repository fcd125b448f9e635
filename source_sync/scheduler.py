"""Cancellable one-shot timers keyed by source id."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """At most one pending timer per key; scheduling again replaces it.

    A callback may re-schedule its own key: the finished timer is removed
    from the table before the callback runs.
    """

    def __init__(self) -> None:
        self._tasks: dict[Hashable, asyncio.Task] = {}
        self._deadlines: dict[Hashable, float] = {}

    def schedule(
        self,
        key: Hashable,
        delay: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        """Run *callback* after *delay* seconds, replacing any pending timer."""
        self.cancel(key)
        delay = max(0.0, delay)
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run(key, delay, callback), name=f"refresh-{key}")
        self._tasks[key] = task
        self._deadlines[key] = loop.time() + delay
        logger.debug("Scheduled %s in %.1fs", key, delay)

    async def _run(
        self, key: Hashable, delay: float, callback: Callable[[], Awaitable[None]]
    ) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
            self._deadlines.pop(key, None)
        try:
            await callback()
        except Exception:
            logger.exception("Scheduled refresh for %s failed", key)

    def cancel(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        self._deadlines.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def is_scheduled(self, key: Hashable) -> bool:
        return key in self._tasks

    def due_in(self, key: Hashable) -> float | None:
        """Seconds until *key* fires, or None when nothing is pending."""
        deadline = self._deadlines.get(key)
        if deadline is None:
            return None
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._deadlines.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def __len__(self) -> int:
        return len(self._tasks)
