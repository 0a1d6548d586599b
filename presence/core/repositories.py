"""Repository classes for database operations."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import TYPE_CHECKING, Any

from presence.core.models import Context, ContextType, Fingerprint, utcnow

if TYPE_CHECKING:
    from presence.core.database import Database


class BaseRepository:
    """Base class for repositories."""

    def __init__(self, database: Database) -> None:
        """Initialize repository with database reference.

        Args:
            database: Database instance
        """
        self._db = database

    @property
    def _conn(self) -> sqlite3.Connection:
        """Get database connection."""
        if self._db.conn is None:
            raise RuntimeError("Database not connected")
        return self._db.conn

    def _commit(self) -> None:
        """Commit if not inside a transaction.

        When inside a database.transaction() block, commits are deferred
        to the transaction manager.
        """
        if not self._db._in_transaction:
            self._conn.commit()


def _row_to_context(row: dict[str, Any]) -> Context:
    return Context(
        id=row["id"],
        name=row["name"],
        type=ContextType(row["type"]),
        listener_count=row["listener_count"],
        metadata=json.loads(row["metadata"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_fingerprint(row: dict[str, Any]) -> Fingerprint:
    features = row["features"]
    return Fingerprint(
        signature=row["signature"],
        features=tuple(json.loads(features)) if features is not None else None,
        quality=row["quality"],
        context_id=row["context_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class ContextRepository(BaseRepository):
    """Repository for context operations."""

    def add(self, context: Context) -> None:
        """Insert a new context.

        Args:
            context: Context to store
        """
        with self._db.lock:
            self._conn.execute(
                """
                INSERT INTO contexts (
                    id, name, type, listener_count, metadata, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    context.id,
                    context.name,
                    context.type.value,
                    context.listener_count,
                    json.dumps(context.metadata),
                    context.created_at.isoformat(),
                    context.updated_at.isoformat(),
                ),
            )
            self._commit()

    def get(self, context_id: str) -> Context | None:
        """Get context by ID.

        Args:
            context_id: Context ID

        Returns:
            Context or None
        """
        with self._db.lock:
            row = self._conn.execute(
                "SELECT * FROM contexts WHERE id = ?", (context_id,)
            ).fetchone()
        return _row_to_context(row) if row else None

    def increment_listeners(self, context_id: str, delta: int = 1) -> Context | None:
        """Atomically adjust the listener count and touch ``updated_at``.

        Args:
            context_id: Context ID
            delta: Amount to add (the count never drops below zero)

        Returns:
            Updated context, or None if it doesn't exist
        """
        with self._db.lock:
            cursor = self._conn.execute(
                """
                UPDATE contexts
                SET listener_count = MAX(0, listener_count + ?), updated_at = ?
                WHERE id = ?
            """,
                (delta, utcnow().isoformat(), context_id),
            )
            self._commit()
            if cursor.rowcount == 0:
                return None
            return self.get(context_id)

    def delete(self, context_id: str) -> bool:
        """Delete a context (its fingerprints cascade).

        Args:
            context_id: Context ID

        Returns:
            True if deleted
        """
        with self._db.lock:
            cursor = self._conn.execute("DELETE FROM contexts WHERE id = ?", (context_id,))
            self._commit()
            return cursor.rowcount > 0

    def recent(self, limit: int = 20) -> list[Context]:
        """Get the most recently created contexts.

        Args:
            limit: Maximum results

        Returns:
            Contexts, newest first
        """
        with self._db.lock:
            rows = self._conn.execute(
                "SELECT * FROM contexts ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_context(row) for row in rows]

    def count(self) -> int:
        """Number of stored contexts."""
        with self._db.lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM contexts").fetchone()
        return int(row["n"])

    def clear(self) -> None:
        """Delete all contexts."""
        with self._db.lock:
            self._conn.execute("DELETE FROM contexts")
            self._commit()


class FingerprintRepository(BaseRepository):
    """Repository for reference fingerprint operations."""

    def add(self, fingerprint: Fingerprint, context_id: str) -> int:
        """Store a fingerprint under a context.

        Args:
            fingerprint: Fingerprint to store
            context_id: Owning context ID

        Returns:
            Row ID (insertion sequence)
        """
        features = fingerprint.features
        with self._db.lock:
            cursor = self._conn.execute(
                """
                INSERT INTO fingerprints (
                    context_id, signature, features, dimension, quality, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    context_id,
                    fingerprint.signature,
                    json.dumps(list(features)) if features is not None else None,
                    fingerprint.dimension,
                    fingerprint.quality,
                    fingerprint.created_at.isoformat(),
                ),
            )
            self._commit()
        return int(cursor.lastrowid) if cursor.lastrowid is not None else 0

    def recent(self, limit: int) -> list[tuple[int, Fingerprint]]:
        """Get the most recently inserted fingerprints.

        Args:
            limit: Maximum results

        Returns:
            List of (row_id, fingerprint), newest first
        """
        with self._db.lock:
            rows = self._conn.execute(
                "SELECT * FROM fingerprints ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [(row["id"], _row_to_fingerprint(row)) for row in rows]

    def by_signature(self, signature: str, limit: int) -> list[tuple[int, Fingerprint]]:
        """Get fingerprints sharing an exact signature.

        Args:
            signature: Signature hex digest
            limit: Maximum results

        Returns:
            List of (row_id, fingerprint), oldest first
        """
        with self._db.lock:
            rows = self._conn.execute(
                "SELECT * FROM fingerprints WHERE signature = ? ORDER BY id LIMIT ?",
                (signature, limit),
            ).fetchall()
        return [(row["id"], _row_to_fingerprint(row)) for row in rows]

    def delete_by_context(self, context_id: str) -> int:
        """Delete all fingerprints recorded under a context.

        Returns:
            Number of rows deleted
        """
        with self._db.lock:
            cursor = self._conn.execute(
                "DELETE FROM fingerprints WHERE context_id = ?", (context_id,)
            )
            self._commit()
            return cursor.rowcount

    def count(self) -> int:
        """Number of stored fingerprints."""
        with self._db.lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM fingerprints").fetchone()
        return int(row["n"])

    def clear(self) -> None:
        """Delete all fingerprints."""
        with self._db.lock:
            self._conn.execute("DELETE FROM fingerprints")
            self._commit()
