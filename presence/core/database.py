"""SQLite database manager for contexts and fingerprints."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from presence.core.repositories import ContextRepository, FingerprintRepository


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    """Row factory that returns dicts instead of sqlite3.Row."""
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


class Database:
    """SQLite database manager.

    Provides access to specialized repositories for database operations:
        - contexts: ContextRepository for context records
        - fingerprints: FingerprintRepository for reference fingerprints

    One connection is shared by every thread; ``lock`` serializes access to
    it, and ``transaction()`` holds the lock for the whole block.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database.

        Args:
            db_path: Path to SQLite database file (":memory:" for a private in-memory db)
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self.conn: sqlite3.Connection | None = None
        self.lock = threading.RLock()
        self._in_transaction: bool = False
        # Repositories (lazy initialized after connect)
        self._contexts: ContextRepository | None = None
        self._fingerprints: FingerprintRepository | None = None

    def connect(self) -> None:
        """Connect to database and enable foreign keys."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = _dict_factory
        self.conn.execute("PRAGMA foreign_keys = ON")

    def close(self) -> None:
        """Close the connection."""
        with self.lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    # ========== Repository Properties ==========

    @property
    def contexts(self) -> ContextRepository:
        """Get the context repository."""
        if self._contexts is None:
            from presence.core.repositories import ContextRepository

            self._contexts = ContextRepository(self)
        return self._contexts

    @property
    def fingerprints(self) -> FingerprintRepository:
        """Get the fingerprint repository."""
        if self._fingerprints is None:
            from presence.core.repositories import FingerprintRepository

            self._fingerprints = FingerprintRepository(self)
        return self._fingerprints

    # ========== Transaction Management ==========

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions.

        Provides atomic operations with automatic commit on success
        or rollback on failure. Repository methods will skip their
        individual commits while inside a transaction.

        Usage:
            with database.transaction():
                database.contexts.add(context)
                database.fingerprints.add(fingerprint, context.id)
            # All operations committed, or all rolled back on error

        Raises:
            RuntimeError: If database not connected
        """
        if self.conn is None:
            raise RuntimeError("Database not connected")

        with self.lock:
            self._in_transaction = True
            try:
                # SQLite auto-commits by default, so we start a transaction explicitly
                self.conn.execute("BEGIN")
                yield
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            finally:
                self._in_transaction = False

    # ========== Schema Management ==========

    def initialize_schema(self) -> None:
        """Create database schema."""
        if self.conn is None:
            raise RuntimeError("Database not connected")

        with self.lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS contexts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'unknown',
                    listener_count INTEGER NOT NULL DEFAULT 0 CHECK (listener_count >= 0),
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_contexts_created_at
                ON contexts(created_at DESC);

                CREATE TABLE IF NOT EXISTS fingerprints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    context_id TEXT NOT NULL,
                    signature TEXT NOT NULL,
                    features TEXT,
                    dimension INTEGER,
                    quality REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (context_id) REFERENCES contexts(id) ON DELETE CASCADE
                );

                -- Exact-duplicate pre-filter
                CREATE INDEX IF NOT EXISTS idx_fingerprints_signature
                ON fingerprints(signature);

                CREATE INDEX IF NOT EXISTS idx_fingerprints_context_id
                ON fingerprints(context_id);
            """
            )
            self.conn.commit()
