"""Tests for the WebSocket snapshot channel."""

import asyncio
import json

import aiohttp
from websockets.asyncio.client import connect

from source_sync.atomic_writer import AtomicFileWriter
from source_sync.broadcast import MSG_INITIAL, MSG_UPDATED, SnapshotServer
from source_sync.env_reader import EnvEngine
from source_sync.events import SOURCE_UPDATED, ChangeEvent, EventBus
from source_sync.registry import SourceRegistry
from source_sync.repository import SourceRepository


# ── Helpers ──────────────────────────────────────────────────────────

def _run_async(coro):
    """Run an async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _recv_json(ws, timeout=5.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def _recv_until(ws, predicate, timeout=5.0):
    """Read messages until *predicate* holds for one; return it."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        message = await _recv_json(ws, max(0.01, deadline - loop.time()))
        if predicate(message):
            return message


async def _start(tmp_path, environ=None):
    bus = EventBus()
    registry = SourceRegistry(
        SourceRepository(tmp_path / "sources.json", AtomicFileWriter()),
        bus,
        [EnvEngine(environ or {})],
        dedupe_window=0.0,
    )
    await registry.initialize()
    server = SnapshotServer(registry.snapshot, bus, host="127.0.0.1", port=0)
    assert await server.start()
    return registry, server


# ── Protocol ─────────────────────────────────────────────────────────


class TestSnapshotServer:
    def test_initial_snapshot_on_connect(self, tmp_path):
        async def scenario():
            registry, server = await _start(tmp_path, {"A": "1"})
            await registry.create("env", "A")
            try:
                async with connect(f"ws://127.0.0.1:{server.port}") as ws:
                    return await _recv_json(ws), registry.snapshot()
            finally:
                await server.stop()

        message, snapshot = _run_async(scenario())
        assert message["type"] == MSG_INITIAL
        assert message["sources"] == snapshot

    def test_clients_converge_on_registry_snapshot(self, tmp_path):
        async def scenario():
            registry, server = await _start(tmp_path, {"A": "alpha", "B": "beta"})
            url = f"ws://127.0.0.1:{server.port}"
            try:
                async with connect(url) as one, connect(url) as two:
                    assert (await _recv_json(one))["type"] == MSG_INITIAL
                    assert (await _recv_json(two))["type"] == MSG_INITIAL

                    await registry.create("env", "A")
                    await registry.create("env", "B")
                    source = await registry.create("env", "C")
                    await registry.remove(source.id)
                    expected = registry.snapshot()

                    def converged(message):
                        return message["type"] == MSG_UPDATED and message["sources"] == expected

                    await _recv_until(one, converged)
                    await _recv_until(two, converged)
                    return expected
            finally:
                await server.stop()

        expected = _run_async(scenario())
        assert [s["path"] for s in expected] == ["A", "B"]
        assert [s["content"] for s in expected] == ["alpha", "beta"]

    def test_request_sources(self, tmp_path):
        async def scenario():
            registry, server = await _start(tmp_path, {"A": "1"})
            await registry.create("env", "A")
            try:
                async with connect(f"ws://127.0.0.1:{server.port}") as ws:
                    await _recv_json(ws)
                    await ws.send("not json")
                    await ws.send(json.dumps({"type": "requestSources"}))
                    return await _recv_json(ws), registry.snapshot()
            finally:
                await server.stop()

        message, snapshot = _run_async(scenario())
        assert message == {"type": MSG_UPDATED, "sources": snapshot}

    def test_failed_client_does_not_block_others(self, tmp_path):
        async def scenario():
            registry, server = await _start(tmp_path, {"A": "1"})
            url = f"ws://127.0.0.1:{server.port}"
            try:
                async with connect(url) as healthy:
                    await _recv_json(healthy)
                    doomed = await connect(url)
                    await _recv_json(doomed)
                    await doomed.close()
                    await registry.create("env", "A")
                    expected = registry.snapshot()
                    await _recv_until(
                        healthy, lambda m: m["sources"] == expected and m["type"] == MSG_UPDATED
                    )
                    await asyncio.sleep(0.05)
                    return server.client_count
            finally:
                await server.stop()

        assert _run_async(scenario()) == 1

    def test_bursts_are_coalesced(self, tmp_path):
        async def scenario():
            bus = EventBus()
            snapshot = [{"id": 1}]
            server = SnapshotServer(lambda: snapshot, bus, port=0)
            assert await server.start()
            try:
                async with connect(f"ws://127.0.0.1:{server.port}") as ws:
                    await _recv_json(ws)
                    for _ in range(20):
                        bus.publish(ChangeEvent(SOURCE_UPDATED, 1, snapshot))
                    first = await _recv_json(ws)
                    try:
                        await _recv_json(ws, timeout=0.3)
                        extra = True
                    except asyncio.TimeoutError:
                        extra = False
                    return first, extra
            finally:
                await server.stop()

        first, extra = _run_async(scenario())
        assert first == {"type": MSG_UPDATED, "sources": [{"id": 1}]}
        assert extra is False


class TestHttpSurface:
    def test_ping(self, tmp_path):
        async def scenario():
            _, server = await _start(tmp_path)
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.get(f"http://127.0.0.1:{server.port}/ping") as resp:
                        return resp.status, await resp.text()
            finally:
                await server.stop()

        status, text = _run_async(scenario())
        assert status == 200
        assert text.strip() == "pong"

    def test_plain_http_is_rejected(self, tmp_path):
        async def scenario():
            _, server = await _start(tmp_path)
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.get(f"http://127.0.0.1:{server.port}/") as resp:
                        return resp.status
            finally:
                await server.stop()

        assert _run_async(scenario()) == 426

    def test_port_in_use_leaves_channel_unavailable(self, tmp_path):
        async def scenario():
            bus = EventBus()
            first = SnapshotServer(list, bus, port=0)
            assert await first.start()
            second = SnapshotServer(list, bus, port=first.port, bind_retry_delay=0.01)
            try:
                return await second.start(), second.is_running
            finally:
                await second.stop()
                await first.stop()

        started, running = _run_async(scenario())
        assert started is False
        assert running is False
