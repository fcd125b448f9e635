"""Configuration management for Source Sync.

Stores and retrieves agent settings from a JSON config file
in the platform-appropriate application data directory.
"""

import json
import logging
from pathlib import Path
from typing import Any

from source_sync import __version__
from source_sync.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from source_sync.platform_utils import (
    get_log_path as _platform_log_path,
)
from source_sync.platform_utils import (
    get_sources_path as _platform_sources_path,
)
from source_sync.resilience import CircuitBreakerConfig, RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_WS_HOST = "127.0.0.1"
DEFAULT_WS_PORT = 59210
DEFAULT_USER_AGENT = f"source-sync/{__version__}"

DEFAULT_CONFIG: dict[str, Any] = {
    "sources_file": "",  # Empty = sources.json in the config directory
    "log_level": "INFO",
    # ---- network channel ----
    "ws_enabled": True,
    "ws_host": DEFAULT_WS_HOST,
    "ws_port": DEFAULT_WS_PORT,
    "ws_bind_retry_delay_seconds": 1.0,
    # ---- http ----
    "http_timeout_seconds": 10,
    "http_user_agent": DEFAULT_USER_AGENT,
    # ---- retry / circuit breaker ----
    "failure_threshold": 3,
    "retry_base_delay_seconds": 5,
    "retry_max_jitter_seconds": 5,
    "breaker_base_timeout_seconds": 30,
    "breaker_max_timeout_seconds": 3600,
    "breaker_timeout_jitter": 0.1,  # +/- fraction of the timeout
    "half_open_max_calls": 3,
    # ---- persistence ----
    "write_max_retries": 3,
    "write_retry_delay_seconds": 0.1,
    "lock_timeout_seconds": 5,
    # ---- update handling ----
    "dedupe_window_seconds": 1.0,
    "file_watch_debounce_seconds": 0.2,
    # ---- log rotation ----
    "max_log_size_mb": 10,  # rotate log when it exceeds this size
    "log_backup_count": 3,  # number of rotated log files to keep
}


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


class Config:
    """Configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = path or get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
                if not isinstance(stored, dict):
                    raise ValueError("config root is not an object")
                # Merge stored values over defaults so new keys get defaults
                self._data = {**DEFAULT_CONFIG, **stored}
                logger.info("Configuration loaded from %s", self._path)
            except (ValueError, OSError) as exc:
                logger.warning("Could not read config (%s); using defaults.", exc)
                self._data = dict(DEFAULT_CONFIG)
        else:
            self._data = dict(DEFAULT_CONFIG)
            self.save()
            logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.info("Configuration saved.")
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    # ---- accessors ----

    @property
    def sources_path(self) -> Path:
        """Return the path of the persisted source list."""
        value = self._data.get("sources_file", "")
        return Path(value) if value else _platform_sources_path()

    @sources_path.setter
    def sources_path(self, value: str | Path) -> None:
        """Set the path of the persisted source list (blank = default)."""
        self._data["sources_file"] = str(value) if value else ""

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        """Set the logging level name."""
        self._data["log_level"] = value

    # ---- network channel ----

    @property
    def ws_enabled(self) -> bool:
        """Return whether the WebSocket channel is started."""
        return bool(self._data.get("ws_enabled", True))

    @ws_enabled.setter
    def ws_enabled(self, value: bool) -> None:
        """Enable or disable the WebSocket channel."""
        self._data["ws_enabled"] = value

    @property
    def ws_host(self) -> str:
        """Return the WebSocket bind address."""
        return self._data.get("ws_host", DEFAULT_WS_HOST)

    @ws_host.setter
    def ws_host(self, value: str) -> None:
        """Set the WebSocket bind address."""
        self._data["ws_host"] = value.strip() or DEFAULT_WS_HOST

    @property
    def ws_port(self) -> int:
        """Return the WebSocket port."""
        return int(self._data.get("ws_port", DEFAULT_WS_PORT))

    @ws_port.setter
    def ws_port(self, value: int) -> None:
        """Set the WebSocket port (0 = any free port)."""
        self._data["ws_port"] = min(65535, max(0, int(value)))

    @property
    def ws_bind_retry_delay(self) -> float:
        """Return seconds to wait before retrying a failed bind."""
        return float(self._data.get("ws_bind_retry_delay_seconds", 1.0))

    @ws_bind_retry_delay.setter
    def ws_bind_retry_delay(self, value: float) -> None:
        """Set the bind retry delay."""
        self._data["ws_bind_retry_delay_seconds"] = max(0.0, float(value))

    # ---- http ----

    @property
    def http_timeout(self) -> float:
        """Return the per-request timeout in seconds."""
        return float(self._data.get("http_timeout_seconds", 10))

    @http_timeout.setter
    def http_timeout(self, value: float) -> None:
        """Set the per-request timeout (minimum 1 s)."""
        self._data["http_timeout_seconds"] = max(1.0, float(value))

    @property
    def http_user_agent(self) -> str:
        """Return the User-Agent header sent with every request."""
        return self._data.get("http_user_agent") or DEFAULT_USER_AGENT

    @http_user_agent.setter
    def http_user_agent(self, value: str) -> None:
        """Set the User-Agent header."""
        self._data["http_user_agent"] = value.strip()

    # ---- retry / circuit breaker ----

    @property
    def failure_threshold(self) -> int:
        """Return consecutive failures that open a breaker."""
        return int(self._data.get("failure_threshold", 3))

    @failure_threshold.setter
    def failure_threshold(self, value: int) -> None:
        """Set the breaker failure threshold (minimum 1)."""
        self._data["failure_threshold"] = max(1, int(value))

    @property
    def retry_base_delay(self) -> float:
        """Return the base delay before retrying a failed endpoint."""
        return float(self._data.get("retry_base_delay_seconds", 5))

    @retry_base_delay.setter
    def retry_base_delay(self, value: float) -> None:
        self._data["retry_base_delay_seconds"] = max(0.0, float(value))

    @property
    def retry_max_jitter(self) -> float:
        """Return the maximum random jitter added to the retry delay."""
        return float(self._data.get("retry_max_jitter_seconds", 5))

    @retry_max_jitter.setter
    def retry_max_jitter(self, value: float) -> None:
        self._data["retry_max_jitter_seconds"] = max(0.0, float(value))

    @property
    def breaker_base_timeout(self) -> float:
        """Return the first OPEN period in seconds."""
        return float(self._data.get("breaker_base_timeout_seconds", 30))

    @breaker_base_timeout.setter
    def breaker_base_timeout(self, value: float) -> None:
        self._data["breaker_base_timeout_seconds"] = max(1.0, float(value))

    @property
    def breaker_max_timeout(self) -> float:
        """Return the ceiling for the OPEN period in seconds."""
        return float(self._data.get("breaker_max_timeout_seconds", 3600))

    @breaker_max_timeout.setter
    def breaker_max_timeout(self, value: float) -> None:
        self._data["breaker_max_timeout_seconds"] = max(1.0, float(value))

    @property
    def breaker_timeout_jitter(self) -> float:
        """Return the +/- jitter fraction applied to OPEN periods."""
        return float(self._data.get("breaker_timeout_jitter", 0.1))

    @breaker_timeout_jitter.setter
    def breaker_timeout_jitter(self, value: float) -> None:
        self._data["breaker_timeout_jitter"] = min(1.0, max(0.0, float(value)))

    @property
    def half_open_max_calls(self) -> int:
        """Return the number of probes admitted while HALF_OPEN."""
        return int(self._data.get("half_open_max_calls", 3))

    @half_open_max_calls.setter
    def half_open_max_calls(self, value: int) -> None:
        self._data["half_open_max_calls"] = max(1, int(value))

    # ---- persistence ----

    @property
    def write_max_retries(self) -> int:
        """Return how many times a failed atomic write is retried."""
        return int(self._data.get("write_max_retries", 3))

    @write_max_retries.setter
    def write_max_retries(self, value: int) -> None:
        self._data["write_max_retries"] = max(0, int(value))

    @property
    def write_retry_delay(self) -> float:
        """Return the base delay between write retries."""
        return float(self._data.get("write_retry_delay_seconds", 0.1))

    @write_retry_delay.setter
    def write_retry_delay(self, value: float) -> None:
        self._data["write_retry_delay_seconds"] = max(0.0, float(value))

    @property
    def lock_timeout(self) -> float:
        """Return how long a writer waits for a lock file."""
        return float(self._data.get("lock_timeout_seconds", 5))

    @lock_timeout.setter
    def lock_timeout(self, value: float) -> None:
        self._data["lock_timeout_seconds"] = max(0.0, float(value))

    # ---- update handling ----

    @property
    def dedupe_window(self) -> float:
        """Return the window in which identical updates are collapsed."""
        return float(self._data.get("dedupe_window_seconds", 1.0))

    @dedupe_window.setter
    def dedupe_window(self, value: float) -> None:
        """Set the dedupe window (0 disables suppression)."""
        self._data["dedupe_window_seconds"] = max(0.0, float(value))

    @property
    def file_watch_debounce(self) -> float:
        """Return the debounce applied to file change events."""
        return float(self._data.get("file_watch_debounce_seconds", 0.2))

    @file_watch_debounce.setter
    def file_watch_debounce(self, value: float) -> None:
        self._data["file_watch_debounce_seconds"] = max(0.0, float(value))

    # ---- log rotation ----

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return int(self._data.get("max_log_size_mb", 10))

    @max_log_size_mb.setter
    def max_log_size_mb(self, value: int) -> None:
        """Set the maximum log file size in MB (minimum 1)."""
        self._data["max_log_size_mb"] = max(1, int(value))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return int(self._data.get("log_backup_count", 3))

    @log_backup_count.setter
    def log_backup_count(self, value: int) -> None:
        """Set the number of rotated log backups to keep."""
        self._data["log_backup_count"] = max(0, int(value))

    # ---- component settings ----

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        """Build the breaker settings used for every polled endpoint."""
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            base_timeout=self.breaker_base_timeout,
            max_timeout=max(self.breaker_base_timeout, self.breaker_max_timeout),
            timeout_jitter=self.breaker_timeout_jitter,
            half_open_max_calls=self.half_open_max_calls,
        )

    def retry_config(self) -> RetryConfig:
        """Build the pre-breaker retry settings."""
        return RetryConfig(
            base_delay=self.retry_base_delay,
            jitter_max=self.retry_max_jitter,
        )
