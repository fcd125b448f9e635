"""Environment variable sources.

Environment variables cannot be watched, so values are read when a source
is watched and whenever a refresh is requested.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from source_sync.engine import ContentUpdate, SourceEngine, WatchDescriptor
from source_sync.models import SourceType

logger = logging.getLogger(__name__)


def read_env_value(name: str, environ: Mapping[str, str] | None = None) -> str:
    environ = os.environ if environ is None else environ
    value = environ.get(name)
    if value is None:
        return f"Environment variable '{name}' is not set"
    return value


class EnvEngine(SourceEngine):
    """Resolves env sources from ``os.environ`` (or a supplied mapping)."""

    source_type = SourceType.ENV

    def __init__(self, environ: Mapping[str, str] | None = None):
        super().__init__()
        self._environ = environ
        self._names: dict[int, str] = {}

    async def watch(self, descriptor: WatchDescriptor, fetch_now: bool = True) -> None:
        self._names[descriptor.source_id] = descriptor.path
        await self.refresh(descriptor.source_id)

    async def unwatch(self, source_id: int) -> None:
        self._names.pop(source_id, None)

    async def refresh(self, source_id: int) -> bool:
        name = self._names.get(source_id)
        if name is None:
            return False
        logger.debug("Reading %s for source %d", name, source_id)
        await self._emit(
            ContentUpdate(source_id=source_id, content=read_env_value(name, self._environ))
        )
        return True

    async def dispose(self) -> None:
        self._names.clear()
