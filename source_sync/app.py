"""
Main application controller for Source Sync.

Ties together configuration, logging, persistence, the three source
engines, the registry and the WebSocket channel, and keeps them running
on one asyncio loop until the process is asked to stop.

Cross-platform: Windows, macOS, and Linux.
"""

import asyncio
import logging
import logging.handlers
import signal
import sys

from source_sync import __app_name__, __version__
from source_sync.atomic_writer import AtomicFileWriter
from source_sync.broadcast import SnapshotServer
from source_sync.config import Config, get_log_path
from source_sync.env_reader import EnvEngine
from source_sync.events import EventBus
from source_sync.http_client import HttpClient
from source_sync.http_engine import HttpEngine
from source_sync.registry import SourceRegistry
from source_sync.repository import SourceRepository
from source_sync.resilience import CircuitBreakerRegistry
from source_sync.watcher import FileEngine

logger = logging.getLogger(__name__)


class App:
    """Central orchestrator."""

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or Config()
        self.bus = EventBus()
        self.writer: AtomicFileWriter | None = None
        self.registry: SourceRegistry | None = None
        self.server: SnapshotServer | None = None
        self._stop_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Set up logging and serve until interrupted."""
        self._setup_logging()

        logger.info("%s %s starting.", __app_name__, __version__)
        try:
            asyncio.run(self.serve())
        except KeyboardInterrupt:
            logger.info("Interrupted.")

    async def serve(self) -> None:
        """Start every component, wait for a stop request, then shut down."""
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def start(self) -> None:
        cfg = self.config
        sources_path = cfg.sources_path

        self.writer = AtomicFileWriter(
            max_retries=cfg.write_max_retries,
            retry_delay=cfg.write_retry_delay,
            lock_timeout=cfg.lock_timeout,
        )
        self.writer.start_stale_lock_sweep(sources_path.parent)

        http_engine = HttpEngine(
            HttpClient(timeout=cfg.http_timeout, user_agent=cfg.http_user_agent),
            CircuitBreakerRegistry(cfg.circuit_breaker_config()),
            cfg.retry_config(),
        )
        self.registry = SourceRegistry(
            SourceRepository(sources_path, self.writer),
            self.bus,
            [FileEngine(debounce=cfg.file_watch_debounce), EnvEngine(), http_engine],
            dedupe_window=cfg.dedupe_window,
        )

        if cfg.ws_enabled:
            self.server = SnapshotServer(
                self.registry.snapshot,
                self.bus,
                host=cfg.ws_host,
                port=cfg.ws_port,
                bind_retry_delay=cfg.ws_bind_retry_delay,
            )
            await self.server.start()

        await self.registry.initialize()
        logger.info(
            "%s is running with %d sources.", __app_name__, len(self.registry.get_all())
        )

    async def stop(self) -> None:
        """Cleanly shut down in reverse start order."""
        logger.info("Shutting down…")
        if self.server is not None:
            await self.server.stop()
            self.server = None
        if self.registry is not None:
            await self.registry.dispose()
            self.registry = None
        if self.writer is not None:
            await self.writer.dispose()
            self.writer = None

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops; Ctrl+C still raises KeyboardInterrupt
                pass

    def _setup_logging(self) -> None:
        """Configure rotating file log and stderr handler."""
        log_path = get_log_path()
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

        # Rotating file handler
        max_bytes = self.config.max_log_size_mb * 1024 * 1024
        fh = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=max_bytes,
            backupCount=self.config.log_backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

        # Stderr handler
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(level)
        sh.setFormatter(fmt)
        root_logger.addHandler(sh)
