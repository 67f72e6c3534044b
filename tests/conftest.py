"""Shared test fixtures for apicache.

Provides a controllable clock, isolated config directories, ready-made
stores and coordinators backed by a temporary SQLite file, and the CLI
runner. These fixtures are automatically discovered by pytest and available
to all test modules without explicit imports. Entity models used across
the suite live in ``tests/entities.py``.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from apicache.coordinator import CacheCoordinator, reset_default_coordinator
from apicache.memory import MemoryStore
from apicache.models import CacheConfig
from apicache.persistent import EntityStore


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Auto-reset the process-wide coordinator between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_default_coordinator() -> None:
    """Forget (and close) any default coordinator a test created."""
    yield
    previous = reset_default_coordinator()
    if previous is not None:
        previous.close()


# ---------------------------------------------------------------------------
# Clock and paths
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Location of a fresh SQLite file for the persistent tier."""
    return tmp_path / "cache" / "entity_cache.sqlite"


# ---------------------------------------------------------------------------
# Stores and coordinators
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(max_size=100, clock=clock)


@pytest.fixture
def entity_store(db_path: Path, clock: FakeClock) -> EntityStore:
    store = EntityStore(db_path, clock=clock)
    yield store
    store.close()


@pytest.fixture
def cache_config(db_path: Path) -> CacheConfig:
    """Default config pointing at the temporary database, maintenance off."""
    return CacheConfig(database_path=str(db_path), maintenance_enabled=False)


@pytest.fixture
def coordinator(cache_config: CacheConfig, clock: FakeClock) -> CacheCoordinator:
    coord = CacheCoordinator(cache_config, clock=clock)
    yield coord
    coord.close()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_CACHE_HOME to subdirectories of tmp_path
    so that tests never touch real user config, and clears all APICACHE_*
    environment variables.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))
    monkeypatch.setattr("apicache.config._is_xdg_platform", lambda: True)
    for var in ["APICACHE_CONFIG", "APICACHE_DATABASE", "APICACHE_DISABLED"]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
