"""
Cross-platform utilities for Source Sync.

Centralises all OS-detection logic so every other module can import
a single canonical set of helpers rather than scattering ``sys.platform``
checks throughout the codebase.

Supported platforms:
  - Windows 10/11
  - macOS 12+ (Monterey and newer)
  - Linux
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"
IS_LINUX: bool = sys.platform.startswith("linux")

APP_DIR_NAME = "SourceSync"
HOME_ENV_VAR = "SOURCE_SYNC_HOME"

# ---- directories -------------------------------------------------------


def get_config_dir() -> Path:
    """
    Return the application config directory, created if needed.

    - Override : ``$SOURCE_SYNC_HOME``
    - Windows  : ``%APPDATA%\\SourceSync``
    - macOS    : ``~/Library/Application Support/SourceSync``
    - Linux    : ``$XDG_CONFIG_HOME/SourceSync`` (default ``~/.config``)
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        config_dir = Path(override)
    else:
        if IS_WINDOWS:
            base = os.environ.get("APPDATA", str(Path.home()))
        elif IS_MACOS:
            base = str(Path.home() / "Library" / "Application Support")
        else:
            base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))
        config_dir = Path(base) / APP_DIR_NAME

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_log_path() -> Path:
    """Return the path to the log file (inside the config directory)."""
    return get_config_dir() / "source_sync.log"


def get_sources_path() -> Path:
    """Return the default path of the persisted source list."""
    return get_config_dir() / "sources.json"
