"""Tests for the file and environment engines."""

import asyncio

from source_sync.engine import WatchDescriptor
from source_sync.env_reader import EnvEngine, read_env_value
from source_sync.models import SourceType
from source_sync.watcher import FileEngine, read_file_content


# ── Helpers ──────────────────────────────────────────────────────────

def _run_async(coro):
    """Run an async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _descriptor(source_id, source_type, path):
    return WatchDescriptor(source_id=source_id, type=source_type, path=str(path))


async def _wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.05)
    return True


# ── Environment ──────────────────────────────────────────────────────


class TestEnvEngine:
    def test_read_env_value(self):
        assert read_env_value("X", {"X": "1"}) == "1"
        assert read_env_value("Y", {}) == "Environment variable 'Y' is not set"

    def test_watch_and_refresh(self):
        environ = {"TOKEN": "one"}
        updates = []

        async def collect(update):
            updates.append((update.source_id, update.content))

        async def scenario():
            engine = EnvEngine(environ)
            engine.bind(collect)
            await engine.watch(_descriptor(1, SourceType.ENV, "TOKEN"))
            await engine.watch(_descriptor(2, SourceType.ENV, "OTHER"))
            environ["TOKEN"] = "two"
            first = await engine.refresh(1)
            await engine.unwatch(1)
            refreshed = await engine.refresh(1)
            await engine.dispose()
            return first, refreshed

        first, refreshed = _run_async(scenario())
        assert first is True
        assert refreshed is False
        assert updates[0] == (1, "one")
        assert (1, "two") in updates
        assert (2, "Environment variable 'OTHER' is not set") in updates


# ── Files ────────────────────────────────────────────────────────────


class TestReadFileContent:
    def test_reads_text(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("hello", encoding="utf-8")
        assert read_file_content(str(path)) == "hello"

    def test_missing_file(self, tmp_path):
        path = tmp_path / "missing.txt"
        assert read_file_content(str(path)) == f"File not found: {path}"

    def test_directory(self, tmp_path):
        assert read_file_content(str(tmp_path)).startswith("Error reading file")


class TestFileEngine:
    def test_initial_read_and_change_detection(self, tmp_path):
        path = tmp_path / "status.txt"
        path.write_text("first", encoding="utf-8")
        updates = []

        async def collect(update):
            updates.append((update.source_id, update.content))

        async def scenario():
            engine = FileEngine(debounce=0.05)
            engine.bind(collect)
            await engine.watch(_descriptor(1, SourceType.FILE, path))
            await engine.watch(_descriptor(2, SourceType.FILE, path))
            running = engine.is_running
            path.write_text("second", encoding="utf-8")
            seen = await _wait_for(
                lambda: (1, "second") in updates and (2, "second") in updates
            )
            await engine.dispose()
            return running, seen

        running, seen = _run_async(scenario())
        assert running is True
        assert seen is True
        assert updates[0] == (1, "first")

    def test_deleted_file_reports_missing(self, tmp_path):
        path = tmp_path / "gone.txt"
        path.write_text("here", encoding="utf-8")
        updates = []

        async def collect(update):
            updates.append(update.content)

        async def scenario():
            engine = FileEngine(debounce=0.05)
            engine.bind(collect)
            await engine.watch(_descriptor(1, SourceType.FILE, path))
            path.unlink()
            seen = await _wait_for(lambda: any(u.startswith("File not found") for u in updates))
            await engine.dispose()
            return seen

        assert _run_async(scenario()) is True

    def test_unwatch_last_source_stops_observer(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("x", encoding="utf-8")

        async def scenario():
            engine = FileEngine()
            await engine.watch(_descriptor(1, SourceType.FILE, path))
            await engine.unwatch(1)
            running = engine.is_running
            refreshed = await engine.refresh(1)
            await engine.dispose()
            return running, refreshed

        running, refreshed = _run_async(scenario())
        assert running is False
        assert refreshed is False

    def test_missing_directory_still_reports(self, tmp_path):
        path = tmp_path / "nope" / "a.txt"
        updates = []

        async def collect(update):
            updates.append(update.content)

        async def scenario():
            engine = FileEngine()
            engine.bind(collect)
            await engine.watch(_descriptor(1, SourceType.FILE, path))
            await engine.dispose()

        _run_async(scenario())
        assert updates == [f"File not found: {path}"]
