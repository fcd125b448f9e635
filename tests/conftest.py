"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point the application directory at a per-test temp folder."""
    home = tmp_path / "home"
    monkeypatch.setenv("SOURCE_SYNC_HOME", str(home))
    return home


@pytest.fixture
def sources_file(tmp_path):
    return tmp_path / "data" / "sources.json"
