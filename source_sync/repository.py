"""Load and save the source list through the atomic writer."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any

from source_sync.atomic_writer import AtomicFileWriter
from source_sync.errors import SourceSyncError, ValidationError
from source_sync.models import Source, SourceDefinition

logger = logging.getLogger(__name__)


class SourceRepository:
    """Durable store for the canonical source list."""

    def __init__(self, path: str | Path, writer: AtomicFileWriter):
        self.path = Path(path)
        self._writer = writer

    async def save_sources(self, sources: list[Source]) -> bool:
        """Write *sources* atomically. Returns False (and logs) on failure."""
        try:
            await self._writer.write_json(self.path, [s.to_dict() for s in sources])
        except SourceSyncError as exc:
            logger.error("Could not save %d sources: %s", len(sources), exc)
            return False
        logger.debug("Saved %d sources to %s", len(sources), self.path)
        return True

    async def load_sources(self) -> list[Source]:
        """Return the persisted sources.

        A missing or empty file means no sources.  A file that does not
        parse is moved aside so the next save does not destroy it.
        """
        try:
            data = await self._writer.read_json(self.path)
        except ValueError as exc:
            await self._quarantine(f"invalid JSON ({exc})")
            return []
        except OSError as exc:
            logger.error("Could not read %s: %s", self.path, exc)
            return []

        if data is None:
            logger.info("No saved sources at %s", self.path)
            return []
        if not isinstance(data, list):
            await self._quarantine("top-level value is not an array")
            return []

        sources: list[Source] = []
        seen: set[int] = set()
        for index, record in enumerate(data):
            try:
                source = Source.from_dict(record)
            except ValidationError as exc:
                logger.warning("Skipping saved source #%d: %s", index, exc)
                continue
            if source.id in seen:
                logger.warning("Skipping duplicate saved source id %d", source.id)
                continue
            seen.add(source.id)
            sources.append(source)
        logger.info("Loaded %d sources from %s", len(sources), self.path)
        return sources

    # ---- export / import ----

    async def write_definitions(
        self, path: str | Path, definitions: list[SourceDefinition]
    ) -> None:
        """Write portable source definitions; raises PersistenceError."""
        await self._writer.write_json(path, [d.to_dict() for d in definitions])
        logger.info("Exported %d sources to %s", len(definitions), path)

    async def read_definitions(self, path: str | Path) -> list[Any]:
        """Return the raw entries of an export file; raises ValidationError."""
        try:
            data = await self._writer.read_json(path)
        except ValueError as exc:
            raise ValidationError(f"{path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise ValidationError(f"Cannot read {path}: {exc}") from exc
        if data is None:
            raise ValidationError(f"{path} does not exist or is empty")
        if not isinstance(data, list):
            raise ValidationError(f"{path} does not contain a list of sources")
        return data

    async def _quarantine(self, reason: str) -> None:
        stamp = time.strftime("%Y%m%d-%H%M%S")
        aside = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            await asyncio.to_thread(os.replace, self.path, aside)
            logger.error(
                "Saved sources at %s are unreadable (%s); moved to %s",
                self.path,
                reason,
                aside,
            )
        except OSError as exc:
            logger.error(
                "Saved sources at %s are unreadable (%s) and could not be moved: %s",
                self.path,
                reason,
                exc,
            )
