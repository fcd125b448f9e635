"""Tests for atomic persistence and the source repository."""

import asyncio
import json
import os
import time

import pytest

import source_sync.atomic_writer as atomic_writer
from source_sync.atomic_writer import AtomicFileWriter
from source_sync.errors import PersistenceError, ValidationError
from source_sync.models import Source, SourceDefinition, SourceType
from source_sync.repository import SourceRepository


# ── Helpers ──────────────────────────────────────────────────────────

def _run_async(coro):
    """Run an async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _leftovers(directory):
    return sorted(p.name for p in directory.iterdir() if p.name.endswith((".tmp", ".lock")))


# ── Atomic Writer ────────────────────────────────────────────────────


class TestAtomicWrites:
    def test_write_and_read_json(self, tmp_path):
        target = tmp_path / "out" / "data.json"

        async def scenario():
            writer = AtomicFileWriter()
            await writer.write_json(target, [{"a": 1}])
            return await writer.read_json(target)

        assert _run_async(scenario()) == [{"a": 1}]
        assert json.loads(target.read_text(encoding="utf-8")) == [{"a": 1}]
        assert _leftovers(target.parent) == []

    def test_read_missing_file_returns_none(self, tmp_path):
        async def scenario():
            writer = AtomicFileWriter()
            return await writer.read_file(tmp_path / "nope.json")

        assert _run_async(scenario()) is None

    def test_invalid_json_is_refused(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text("[1]", encoding="utf-8")

        async def scenario():
            writer = AtomicFileWriter()
            await writer.write_file(target, "{broken", validate_json=True)

        with pytest.raises(PersistenceError):
            _run_async(scenario())
        assert target.read_text(encoding="utf-8") == "[1]"

    def test_crash_before_rename_keeps_previous_file(self, tmp_path, monkeypatch):
        target = tmp_path / "sources.json"
        target.write_text('[{"v": 1}]', encoding="utf-8")
        real_rename = atomic_writer._rename_into_place

        def exploding_rename(tmp_file, dest):
            raise OSError("simulated crash before rename")

        async def crashing_write():
            writer = AtomicFileWriter(max_retries=0)
            await writer.write_json(target, [{"v": 2}])

        monkeypatch.setattr(atomic_writer, "_rename_into_place", exploding_rename)
        with pytest.raises(PersistenceError):
            _run_async(crashing_write())

        assert json.loads(target.read_text(encoding="utf-8")) == [{"v": 1}]
        assert _leftovers(tmp_path) == []

        monkeypatch.setattr(atomic_writer, "_rename_into_place", real_rename)

        async def next_write():
            writer = AtomicFileWriter(max_retries=0)
            await writer.write_json(target, [{"v": 3}])

        _run_async(next_write())
        assert json.loads(target.read_text(encoding="utf-8")) == [{"v": 3}]

    def test_transient_failure_is_retried(self, tmp_path, monkeypatch):
        target = tmp_path / "data.json"
        real_rename = atomic_writer._rename_into_place
        calls = []

        def flaky_rename(tmp_file, dest):
            calls.append(tmp_file)
            if len(calls) == 1:
                raise PermissionError("busy")
            real_rename(tmp_file, dest)

        monkeypatch.setattr(atomic_writer, "_rename_into_place", flaky_rename)

        async def scenario():
            writer = AtomicFileWriter(max_retries=2, retry_delay=0.01)
            await writer.write_json(target, {"ok": True})

        _run_async(scenario())
        assert len(calls) == 2
        assert json.loads(target.read_text(encoding="utf-8")) == {"ok": True}
        assert _leftovers(tmp_path) == []

    def test_concurrent_writes_apply_in_order(self, tmp_path):
        target = tmp_path / "data.json"

        async def scenario():
            writer = AtomicFileWriter()
            await asyncio.gather(*(writer.write_json(target, {"n": n}) for n in range(25)))

        _run_async(scenario())
        assert json.loads(target.read_text(encoding="utf-8")) == {"n": 24}
        assert _leftovers(tmp_path) == []

    def test_read_waits_for_queued_write(self, tmp_path):
        target = tmp_path / "data.json"

        async def scenario():
            writer = AtomicFileWriter()
            write = asyncio.ensure_future(writer.write_json(target, {"n": 1}))
            read = asyncio.ensure_future(writer.read_json(target))
            await write
            return await read

        assert _run_async(scenario()) == {"n": 1}


class TestLockFiles:
    def test_abandoned_lock_is_broken(self, tmp_path):
        target = tmp_path / "data.json"
        lock = tmp_path / "data.json.lock"
        lock.write_text("999999", encoding="utf-8")

        async def scenario():
            writer = AtomicFileWriter(lock_timeout=0.2, lock_poll_interval=0.02)
            await writer.write_json(target, [1, 2])

        _run_async(scenario())
        assert json.loads(target.read_text(encoding="utf-8")) == [1, 2]
        assert not lock.exists()

    def test_writer_waits_for_released_lock(self, tmp_path):
        target = tmp_path / "data.json"
        lock = tmp_path / "data.json.lock"
        lock.write_text("1", encoding="utf-8")

        async def scenario():
            writer = AtomicFileWriter(lock_timeout=5, lock_poll_interval=0.02)
            loop = asyncio.get_running_loop()
            loop.call_later(0.1, lock.unlink)
            started = loop.time()
            await writer.write_json(target, ["after"])
            return loop.time() - started

        elapsed = _run_async(scenario())
        assert 0.05 <= elapsed < 4
        assert json.loads(target.read_text(encoding="utf-8")) == ["after"]

    def test_stale_locks_are_swept(self, tmp_path):
        old = tmp_path / "old.json.lock"
        fresh = tmp_path / "fresh.json.lock"
        old.write_text("1", encoding="utf-8")
        fresh.write_text("1", encoding="utf-8")
        two_hours_ago = time.time() - 7200
        os.utime(old, (two_hours_ago, two_hours_ago))

        async def scenario():
            writer = AtomicFileWriter()
            task = writer.start_stale_lock_sweep(tmp_path)
            await task
            await writer.dispose()

        _run_async(scenario())
        assert not old.exists()
        assert fresh.exists()


# ── Repository ───────────────────────────────────────────────────────


class TestSourceRepository:
    def test_absent_file_means_no_sources(self, sources_file):
        async def scenario():
            repo = SourceRepository(sources_file, AtomicFileWriter())
            return await repo.load_sources()

        assert _run_async(scenario()) == []

    def test_save_then_load(self, sources_file):
        sources = [
            Source(id=1, type=SourceType.ENV, path="HOME", content="/root"),
            Source(id=4, type=SourceType.HTTP, path="example.com", method="GET"),
        ]

        async def scenario():
            repo = SourceRepository(sources_file, AtomicFileWriter())
            assert await repo.save_sources(sources)
            return await repo.load_sources()

        assert _run_async(scenario()) == sources

    def test_corrupt_file_is_moved_aside(self, sources_file):
        sources_file.parent.mkdir(parents=True)
        sources_file.write_text("[{not json", encoding="utf-8")

        async def scenario():
            repo = SourceRepository(sources_file, AtomicFileWriter())
            return await repo.load_sources()

        assert _run_async(scenario()) == []
        assert not sources_file.exists()
        aside = list(sources_file.parent.glob("sources.json.corrupt-*"))
        assert len(aside) == 1
        assert aside[0].read_text(encoding="utf-8") == "[{not json"

    def test_malformed_records_are_skipped(self, sources_file):
        sources_file.parent.mkdir(parents=True)
        sources_file.write_text(
            json.dumps(
                [
                    {"id": 1, "type": "env", "path": "HOME"},
                    {"id": 2, "type": "bogus", "path": "x"},
                    {"type": "env", "path": "NO_ID"},
                    {"id": 1, "type": "env", "path": "DUPLICATE"},
                ]
            ),
            encoding="utf-8",
        )

        async def scenario():
            repo = SourceRepository(sources_file, AtomicFileWriter())
            return await repo.load_sources()

        loaded = _run_async(scenario())
        assert [s.path for s in loaded] == ["HOME"]

    def test_read_definitions_validates_shape(self, tmp_path):
        not_list = tmp_path / "obj.json"
        not_list.write_text('{"type": "env"}', encoding="utf-8")
        broken = tmp_path / "broken.json"
        broken.write_text("nope", encoding="utf-8")

        async def scenario(path):
            repo = SourceRepository(tmp_path / "sources.json", AtomicFileWriter())
            return await repo.read_definitions(path)

        with pytest.raises(ValidationError):
            _run_async(scenario(not_list))
        with pytest.raises(ValidationError):
            _run_async(scenario(broken))
        with pytest.raises(ValidationError):
            _run_async(scenario(tmp_path / "missing.json"))

    def test_write_definitions(self, tmp_path):
        path = tmp_path / "export.json"
        definition = SourceDefinition(type=SourceType.ENV, path="HOME", tag="home")

        async def scenario():
            repo = SourceRepository(tmp_path / "sources.json", AtomicFileWriter())
            await repo.write_definitions(path, [definition])

        _run_async(scenario())
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data == [definition.to_dict()]
