"""Context stores.

Listener increments are serialized per context: a lock keyed by context id in
memory, a single atomic UPDATE statement in SQLite. Callers always receive
copies, never the stored record itself.
"""

from __future__ import annotations

import dataclasses
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager

from presence.core.database import Database
from presence.core.errors import StoreUnavailable
from presence.core.models import Context, utcnow


def _copy(context: Context) -> Context:
    return dataclasses.replace(context, metadata=dict(context.metadata))


class InMemoryContextStore:
    """Thread-safe in-memory context store."""

    def __init__(self) -> None:
        self._contexts: dict[str, Context] = {}
        self._order: list[str] = []
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _context_lock(self, context_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(context_id)
        if lock is None:
            raise KeyError(context_id)
        return lock

    def create(self, context: Context) -> Context:
        """Store a new context.

        Raises:
            ValueError: If a context with the same id already exists
        """
        with self._guard:
            if context.id in self._contexts:
                raise ValueError(f"Context already exists: {context.id}")
            self._contexts[context.id] = _copy(context)
            self._order.append(context.id)
            self._locks[context.id] = threading.Lock()
        return _copy(context)

    def get(self, context_id: str) -> Context | None:
        with self._guard:
            context = self._contexts.get(context_id)
        return _copy(context) if context is not None else None

    def increment_listeners(self, context_id: str, delta: int = 1) -> Context:
        """Adjust a context's listener count and touch ``updated_at``.

        Raises:
            KeyError: If the context doesn't exist
        """
        with self._context_lock(context_id):
            with self._guard:
                context = self._contexts.get(context_id)
            if context is None:
                raise KeyError(context_id)
            context.listener_count = max(0, context.listener_count + delta)
            context.updated_at = utcnow()
            return _copy(context)

    def delete(self, context_id: str) -> bool:
        with self._guard:
            if self._contexts.pop(context_id, None) is None:
                return False
            self._order.remove(context_id)
            self._locks.pop(context_id, None)
        return True

    def recent(self, limit: int = 20) -> list[Context]:
        """Most recently created contexts, newest first."""
        with self._guard:
            ids = self._order[::-1][:limit]
            return [_copy(self._contexts[i]) for i in ids]

    def count(self) -> int:
        with self._guard:
            return len(self._contexts)


class SqliteContextStore:
    """Context store persisted in the ``contexts`` table."""

    def __init__(self, database: Database):
        """Initialize store.

        Args:
            database: Connected Database with schema initialized
        """
        self._db = database

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Commit every write made inside the block together, or none of them.

        Covers any index sharing this store's database.
        """
        try:
            with self._db.transaction():
                yield
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Transaction failed: {e}") from e

    def create(self, context: Context) -> Context:
        try:
            self._db.contexts.add(context)
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Context already exists: {context.id}") from e
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to create context: {e}") from e
        return _copy(context)

    def get(self, context_id: str) -> Context | None:
        try:
            return self._db.contexts.get(context_id)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to read context: {e}") from e

    def increment_listeners(self, context_id: str, delta: int = 1) -> Context:
        """Atomically adjust a context's listener count.

        Raises:
            KeyError: If the context doesn't exist
        """
        try:
            context = self._db.contexts.increment_listeners(context_id, delta)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to update context: {e}") from e
        if context is None:
            raise KeyError(context_id)
        return context

    def delete(self, context_id: str) -> bool:
        try:
            return self._db.contexts.delete(context_id)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to delete context: {e}") from e

    def recent(self, limit: int = 20) -> list[Context]:
        try:
            return self._db.contexts.recent(limit)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to list contexts: {e}") from e

    def count(self) -> int:
        try:
            return self._db.contexts.count()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to count contexts: {e}") from e
