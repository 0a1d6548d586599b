"""Match index: searchable collection of reference fingerprints.

A query never scans the full history. Candidates are the fingerprints sharing
the query's exact signature (most relevant) followed by the most recently
inserted ones, capped at ``candidate_limit``.
"""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import threading
import time
from collections.abc import Iterable

from presence.core.database import Database
from presence.core.errors import DimensionMismatch, IndexUnavailable, MatchTimeout
from presence.core.models import Fingerprint

from .similarity import similarity

logger = logging.getLogger(__name__)


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise MatchTimeout("Match index scan exceeded deadline")


def select_best(
    fingerprint: Fingerprint,
    candidates: Iterable[tuple[int, Fingerprint]],
    deadline: float | None = None,
) -> tuple[Fingerprint, float] | None:
    """Score candidates and pick the best one.

    Ties on score go to the higher quality, then the earlier ``created_at``,
    then the earlier insertion sequence (oldest wins).

    Args:
        fingerprint: Query fingerprint
        candidates: (insertion sequence, fingerprint) pairs
        deadline: ``time.monotonic()`` value after which the scan aborts

    Returns:
        (best fingerprint, score) or None if there are no candidates

    Raises:
        MatchTimeout: If the deadline passes mid-scan
    """
    best: tuple[float, float, float, int] | None = None
    best_fp: Fingerprint | None = None

    for seq, candidate in candidates:
        _check_deadline(deadline)
        score = similarity(fingerprint, candidate)
        key = (score, candidate.quality, -candidate.created_at.timestamp(), -seq)
        if best is None or key > best:
            best = key
            best_fp = candidate

    if best is None or best_fp is None:
        return None
    return best_fp, best[0]


def _merge_candidates(
    exact: list[tuple[int, Fingerprint]],
    recent: list[tuple[int, Fingerprint]],
    limit: int,
) -> list[tuple[int, Fingerprint]]:
    """Exact-signature hits first, then recent ones, deduplicated and capped."""
    seen: set[int] = set()
    merged: list[tuple[int, Fingerprint]] = []
    for seq, fp in [*exact, *recent]:
        if len(merged) >= limit:
            break
        if seq in seen:
            continue
        seen.add(seq)
        merged.append((seq, fp))
    return merged


class InMemoryMatchIndex:
    """Thread-safe in-memory match index.

    Insertion is O(1) amortized. Scoring happens outside the lock on a
    snapshot of the candidates.
    """

    def __init__(self, dimension: int | None = None):
        """Initialize index.

        Args:
            dimension: Feature dimension of this index generation. If None,
                       the first inserted fingerprint fixes it.
        """
        self.dimension = dimension
        self._lock = threading.RLock()
        self._next_seq = 0
        self._entries: dict[int, Fingerprint] = {}
        self._order: list[int] = []
        self._by_signature: dict[str, list[int]] = {}
        self._by_context: dict[str, list[int]] = {}

    def _check_dimension(self, fingerprint: Fingerprint) -> None:
        dim = fingerprint.dimension
        if dim is None:
            return
        if self.dimension is None:
            self.dimension = dim
        elif dim != self.dimension:
            raise DimensionMismatch(self.dimension, dim)

    def insert(self, fingerprint: Fingerprint, context_id: str) -> Fingerprint:
        """Add a fingerprint bound to a context.

        Returns:
            The stored (context-bound) fingerprint

        Raises:
            DimensionMismatch: If the dimension differs from the index's
        """
        stored = dataclasses.replace(fingerprint, context_id=context_id)
        with self._lock:
            self._check_dimension(stored)
            seq = self._next_seq
            self._next_seq += 1
            self._entries[seq] = stored
            self._order.append(seq)
            self._by_signature.setdefault(stored.signature, []).append(seq)
            self._by_context.setdefault(context_id, []).append(seq)
        return stored

    def _candidates(self, fingerprint: Fingerprint, limit: int) -> list[tuple[int, Fingerprint]]:
        with self._lock:
            exact_seqs = self._by_signature.get(fingerprint.signature, [])[:limit]
            exact = [(seq, self._entries[seq]) for seq in exact_seqs]
            recent = [(seq, self._entries[seq]) for seq in reversed(self._order[-limit:])]
        return _merge_candidates(exact, recent, limit)

    def find_best_match(
        self,
        fingerprint: Fingerprint,
        candidate_limit: int,
        deadline: float | None = None,
    ) -> tuple[Fingerprint, float] | None:
        """Best scoring stored fingerprint among the candidates, or None."""
        _check_deadline(deadline)
        if candidate_limit < 1:
            return None
        return select_best(fingerprint, self._candidates(fingerprint, candidate_limit), deadline)

    def remove_context(self, context_id: str) -> int:
        """Drop every fingerprint recorded under a context.

        Returns:
            Number of fingerprints removed
        """
        with self._lock:
            seqs = self._by_context.pop(context_id, [])
            if not seqs:
                return 0
            dropped = set(seqs)
            for seq in seqs:
                fp = self._entries.pop(seq)
                bucket = self._by_signature.get(fp.signature, [])
                bucket[:] = [s for s in bucket if s not in dropped]
                if not bucket:
                    self._by_signature.pop(fp.signature, None)
            self._order = [s for s in self._order if s not in dropped]
        logger.debug(f"[MatchIndex] Removed {len(seqs)} fingerprint(s) of context {context_id}")
        return len(seqs)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        """Remove everything (a new index generation may change dimension)."""
        with self._lock:
            self._entries.clear()
            self._order.clear()
            self._by_signature.clear()
            self._by_context.clear()


class SqliteMatchIndex:
    """Match index persisted in the ``fingerprints`` table."""

    def __init__(self, database: Database, dimension: int | None = None):
        """Initialize index.

        Args:
            database: Connected Database with schema initialized
            dimension: Required feature dimension (None to accept any)
        """
        self._db = database
        self.dimension = dimension

    def insert(self, fingerprint: Fingerprint, context_id: str) -> Fingerprint:
        """Persist a fingerprint bound to a context."""
        dim = fingerprint.dimension
        if self.dimension is not None and dim is not None and dim != self.dimension:
            raise DimensionMismatch(self.dimension, dim)

        stored = dataclasses.replace(fingerprint, context_id=context_id)
        try:
            self._db.fingerprints.add(stored, context_id)
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Failed to insert fingerprint: {e}") from e
        return stored

    def find_best_match(
        self,
        fingerprint: Fingerprint,
        candidate_limit: int,
        deadline: float | None = None,
    ) -> tuple[Fingerprint, float] | None:
        """Best scoring stored fingerprint among the candidates, or None."""
        _check_deadline(deadline)
        if candidate_limit < 1:
            return None
        try:
            exact = self._db.fingerprints.by_signature(fingerprint.signature, candidate_limit)
            recent = self._db.fingerprints.recent(candidate_limit)
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Failed to query fingerprints: {e}") from e

        return select_best(fingerprint, _merge_candidates(exact, recent, candidate_limit), deadline)

    def remove_context(self, context_id: str) -> int:
        try:
            return self._db.fingerprints.delete_by_context(context_id)
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Failed to delete fingerprints: {e}") from e

    def count(self) -> int:
        try:
            return self._db.fingerprints.count()
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Failed to count fingerprints: {e}") from e
