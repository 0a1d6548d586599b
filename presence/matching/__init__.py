"""Fingerprint matching engine."""

from .coordinator import MatchingCoordinator, build_coordinator
from .fingerprint import FingerprintBuilder
from .index import InMemoryMatchIndex, SqliteMatchIndex
from .similarity import similarity
from .store import InMemoryContextStore, SqliteContextStore

__all__ = [
    "FingerprintBuilder",
    "InMemoryContextStore",
    "InMemoryMatchIndex",
    "MatchingCoordinator",
    "SqliteContextStore",
    "SqliteMatchIndex",
    "build_coordinator",
    "similarity",
]
