"""
WebSocket snapshot server for external consumers.

Protocol (JSON text frames):
  server -> client  {"type": "sourcesInitial", "sources": [...]}   once, on connect
  server -> client  {"type": "sourcesUpdated", "sources": [...]}   after changes
  client -> server  {"type": "requestSources"}                    ask for a resend

A plain ``GET /ping`` over HTTP answers ``pong`` so launchers can probe the
port without opening a WebSocket.

Every message carries the complete list, so clients converge on the
latest state even if they miss intermediate broadcasts.  Bursts of changes
are coalesced into one broadcast, and a failing client is dropped without
affecting the others.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from http import HTTPStatus
from typing import Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from source_sync.events import (
    REFRESH_OPTIONS_UPDATED,
    SOURCE_REMOVED,
    SOURCE_UPDATED,
    SOURCES_LOADED,
    ChangeEvent,
    EventBus,
)

logger = logging.getLogger(__name__)

MSG_INITIAL = "sourcesInitial"
MSG_UPDATED = "sourcesUpdated"
MSG_REQUEST = "requestSources"

BROADCAST_TOPICS = (SOURCE_UPDATED, SOURCE_REMOVED, SOURCES_LOADED, REFRESH_OPTIONS_UPDATED)
SEND_TIMEOUT = 5.0  # seconds


def encode_message(msg_type: str, sources: list[dict[str, Any]]) -> str:
    return json.dumps({"type": msg_type, "sources": sources})


class _Client:
    """Per-connection state."""

    def __init__(self, ws: ServerConnection):
        self.ws = ws
        self.initialized = False

    @property
    def label(self) -> str:
        return str(self.ws.remote_address)


class SnapshotServer:
    """Pushes source snapshots to every connected WebSocket client."""

    def __init__(
        self,
        snapshot: Callable[[], list[dict[str, Any]]],
        bus: EventBus,
        host: str = "127.0.0.1",
        port: int = 59210,
        bind_retry_delay: float = 1.0,
        send_timeout: float = SEND_TIMEOUT,
    ):
        self._snapshot = snapshot
        self._bus = bus
        self._host = host
        self._port = port
        self._bind_retry_delay = bind_retry_delay
        self._send_timeout = send_timeout
        self._server: Server | None = None
        self._clients: set[_Client] = set()
        self._version = 0
        self._dirty = asyncio.Event()
        self._flusher: asyncio.Task | None = None
        self._unsubscribers: list[Callable[[], None]] = []

    # ---- lifecycle ----

    async def start(self) -> bool:
        """Bind and start serving. Returns False if the port stays unavailable."""
        for attempt in range(2):
            try:
                self._server = await serve(
                    self._handle_connection,
                    self._host,
                    self._port,
                    process_request=self._process_request,
                )
                break
            except OSError as exc:
                if attempt == 0:
                    logger.warning(
                        "Cannot bind %s:%d (%s); retrying in %.1fs",
                        self._host,
                        self._port,
                        exc,
                        self._bind_retry_delay,
                    )
                    await asyncio.sleep(self._bind_retry_delay)
                else:
                    logger.error(
                        "WebSocket channel unavailable on %s:%d: %s",
                        self._host,
                        self._port,
                        exc,
                    )
                    return False

        self._unsubscribers = [
            self._bus.subscribe(topic, self._on_change) for topic in BROADCAST_TOPICS
        ]
        self._flusher = asyncio.create_task(self._flush_loop(), name="SnapshotFlusher")
        logger.info("WebSocket server listening on ws://%s:%d", self._host, self.port)
        return True

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._flusher is not None:
            self._flusher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flusher
            self._flusher = None
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("WebSocket server stopped.")
        self._clients.clear()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """The bound port (useful when configured with port 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._port

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # ---- connections ----

    def _process_request(
        self, connection: ServerConnection, request: Request
    ) -> Response | None:
        if request.path == "/ping":
            return connection.respond(HTTPStatus.OK, "pong")
        return None

    async def _handle_connection(self, ws: ServerConnection) -> None:
        client = _Client(ws)
        self._clients.add(client)
        logger.info("Client connected: %s", client.label)
        try:
            version = self._version
            await ws.send(encode_message(MSG_INITIAL, self._snapshot()))
            client.initialized = True
            if self._version != version:
                # Changes landed while the initial snapshot was in flight
                await ws.send(encode_message(MSG_UPDATED, self._snapshot()))

            async for raw in ws:
                await self._handle_message(client, raw)
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(client)
            logger.info("Client disconnected: %s", client.label)

    async def _handle_message(self, client: _Client, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring malformed message from %s", client.label)
            return
        if isinstance(message, dict) and message.get("type") == MSG_REQUEST:
            await client.ws.send(encode_message(MSG_UPDATED, self._snapshot()))
        else:
            logger.debug("Ignoring unknown message from %s: %r", client.label, message)

    # ---- broadcasting ----

    def _on_change(self, event: ChangeEvent) -> None:
        self._version += 1
        self._dirty.set()

    async def _flush_loop(self) -> None:
        while True:
            await self._dirty.wait()
            self._dirty.clear()
            try:
                await self.broadcast()
            except Exception:
                logger.exception("Snapshot broadcast failed")

    async def broadcast(self) -> int:
        """Send the current snapshot to every ready client; returns deliveries."""
        targets = [c for c in self._clients if c.initialized]
        if not targets:
            return 0
        message = encode_message(MSG_UPDATED, self._snapshot())
        results = await asyncio.gather(*(self._send(c, message) for c in targets))
        return sum(results)

    async def _send(self, client: _Client, message: str) -> bool:
        try:
            await asyncio.wait_for(client.ws.send(message), self._send_timeout)
            return True
        except ConnectionClosed:
            self._clients.discard(client)
        except asyncio.TimeoutError:
            logger.warning("Client %s too slow; closing", client.label)
            self._clients.discard(client)
            with contextlib.suppress(Exception):
                await client.ws.close()
        except Exception:
            logger.exception("Send to %s failed", client.label)
            self._clients.discard(client)
        return False
