"""Pytest configuration and fixtures."""

from collections.abc import Callable
from pathlib import Path

import pytest

DIMENSION = 16


@pytest.fixture
def test_config(tmp_path: Path):
    """Provide test configuration."""
    from presence.core.config import (
        LoggingConfig,
        MatchingConfig,
        PresenceConfig,
        StorageConfig,
    )

    return PresenceConfig(
        matching=MatchingConfig(feature_dimension=DIMENSION, match_timeout_ms=5000),
        storage=StorageConfig(backend="memory", db_path=tmp_path / "test.db"),
        logging=LoggingConfig(level="DEBUG", file=str(tmp_path / "test.log")),
    )


@pytest.fixture
def flat() -> Callable[..., list[float]]:
    """Factory for constant feature vectors.

    Two flat vectors at levels a and b score exactly 100 * (1 - |a - b|).
    """

    def _flat(value: float, dimension: int = DIMENSION) -> list[float]:
        return [value] * dimension

    return _flat


@pytest.fixture
def database(tmp_path: Path):
    """Provide a connected database with schema."""
    from presence.core.database import Database

    db = Database(tmp_path / "test.db")
    db.connect()
    db.initialize_schema()
    yield db
    db.close()


@pytest.fixture
def memory_coordinator(test_config):
    """Coordinator over in-memory index and store."""
    from presence.matching import InMemoryContextStore, InMemoryMatchIndex, MatchingCoordinator

    return MatchingCoordinator(
        InMemoryMatchIndex(DIMENSION),
        InMemoryContextStore(),
        config=test_config.matching,
    )


@pytest.fixture
def sqlite_coordinator(test_config, database):
    """Coordinator over SQLite index and store."""
    from presence.matching import MatchingCoordinator, SqliteContextStore, SqliteMatchIndex

    return MatchingCoordinator(
        SqliteMatchIndex(database, DIMENSION),
        SqliteContextStore(database),
        config=test_config.matching,
    )
