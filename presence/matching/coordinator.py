"""Match/create decision flow for submitted fingerprints.

Each submission moves through
``Received -> Extracted -> Scored -> {Matched | Created | Rejected}``:

1. Build a fingerprint from the feature vector
2. Ask the match index for the best candidate (bounded scan, deadline)
3. Score >= ``match_threshold``: count one more listener on that context
4. Otherwise, quality >= ``create_threshold``: mint a context and index the
   fingerprint as its reference
5. Otherwise reject, touching nothing

Creation runs under a single-writer lock and re-queries the index once the
lock is held, so near-identical submissions racing each other mint exactly
one context. Matches never take that lock; listener increments are atomic in
the context store. A best match whose context has been deleted counts as no
match, and its stale fingerprints are dropped from the index.

With the SQLite backend the new context and its reference fingerprint are
written in one transaction.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Sequence
from contextlib import AbstractContextManager, nullcontext
from pathlib import Path
from typing import Any

from presence.core.config import MatchingConfig, PresenceConfig
from presence.core.database import Database
from presence.core.errors import DimensionMismatch, MatchTimeout
from presence.core.event_bus import EventBus, Events
from presence.core.models import (
    Context,
    Fingerprint,
    MatchEvent,
    MatchOutcome,
    MatchResult,
    default_context_name,
)
from presence.core.protocols import (
    ContextStoreProtocol,
    EventSinkProtocol,
    FeatureExtractorProtocol,
    MatchIndexProtocol,
)

from .extractor import BandEnergyExtractor
from .fingerprint import FingerprintBuilder
from .index import InMemoryMatchIndex, SqliteMatchIndex
from .sinks import EventBusSink, HttpEventSink
from .store import InMemoryContextStore, SqliteContextStore

logger = logging.getLogger(__name__)


class MatchingCoordinator:
    """Decide match/create/reject for submitted feature vectors."""

    def __init__(
        self,
        index: MatchIndexProtocol,
        store: ContextStoreProtocol,
        config: MatchingConfig | None = None,
        sink: EventSinkProtocol | None = None,
        builder: FingerprintBuilder | None = None,
        extractor: FeatureExtractorProtocol | None = None,
        source: str = "fingerprint-service",
    ):
        """Initialize coordinator.

        Args:
            index: Match index holding reference fingerprints
            store: Context store
            config: Thresholds and limits (defaults if None)
            sink: Destination for match/create events (none if None)
            builder: Fingerprint builder (built from config if None)
            extractor: Feature extractor used by ``submit_audio``
            source: Source name stamped on outgoing events
        """
        self.config = config or MatchingConfig()
        self.index = index
        self.store = store
        self.sink = sink
        self.builder = builder or FingerprintBuilder(
            self.config.feature_dimension, self.config.quantization_levels
        )
        if extractor is not None and extractor.dimension != self.builder.dimension:
            raise ValueError(
                f"Extractor dimension {extractor.dimension} != "
                f"feature dimension {self.builder.dimension}"
            )
        self.extractor = extractor
        self.source = source

        self._create_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = {
            "submissions": 0,
            "matched": 0,
            "created": 0,
            "rejected": 0,
            "left": 0,
            "errors": 0,
            "events_failed": 0,
        }

    # ========== Public API ==========

    def submit(
        self,
        features: Sequence[float],
        quality_hint: float | None = None,
        device_id: str | None = None,
        location: dict[str, Any] | None = None,
    ) -> MatchResult:
        """Match a feature vector against known contexts.

        Args:
            features: ``feature_dimension`` values in [0, 1]
            quality_hint: Caller-supplied quality overriding the computed one
            device_id: Submitting device, forwarded in events
            location: Optional location, forwarded in events

        Returns:
            MatchResult (REJECTED is a valid "no match" answer)

        Raises:
            InvalidFeatureVector: Bad input, nothing was changed
            DimensionMismatch: Index holds fingerprints of another dimension
            MatchTimeout: Deadline elapsed before any mutation
            IndexUnavailable, StoreUnavailable: Backend failure, nothing was changed
        """
        self._count("submissions")
        deadline = time.monotonic() + self.config.match_timeout_ms / 1000.0

        try:
            fingerprint = self.builder.build(features, quality_hint)
            logger.debug(
                f"[Coordinator] Extracted {fingerprint.signature[:12]} "
                f"(quality={fingerprint.quality:.3f})"
            )
            result, event = self._decide(fingerprint, deadline, device_id, location)
        except Exception:
            self._count("errors")
            raise

        self._count(result.outcome.value)
        if event is not None:
            self._publish(event)
        return result

    def submit_audio(self, audio_path: str | Path, **kwargs: Any) -> MatchResult:
        """Extract features from an audio file and submit them.

        Args:
            audio_path: Path to audio file
            **kwargs: Passed to ``submit``
        """
        if self.extractor is None:
            raise RuntimeError("No feature extractor configured")
        features = self.extractor.extract(audio_path)
        return self.submit(features, **kwargs)

    def leave(self, context_id: str) -> Context | None:
        """Record a listener leaving a context.

        The listener count never drops below zero.

        Args:
            context_id: Context the listener left

        Returns:
            Updated context, or None if it doesn't exist
        """
        try:
            context = self.store.increment_listeners(context_id, -1)
        except KeyError:
            logger.warning(f"[Coordinator] Leave for unknown context: {context_id}")
            return None

        self._count("left")
        logger.info(
            f"[Coordinator] Listener left context {context.id} "
            f"(listeners={context.listener_count})"
        )
        return context

    def get_context(self, context_id: str) -> Context | None:
        return self.store.get(context_id)

    def recent_contexts(self, limit: int = 20) -> list[Context]:
        """Most recently created contexts, newest first."""
        return self.store.recent(limit)

    def stats(self) -> dict[str, int]:
        """Submission counters plus current store/index sizes."""
        with self._stats_lock:
            stats = dict(self._stats)
        stats["contexts"] = self.store.count()
        stats["fingerprints"] = self.index.count()
        return stats

    # ========== Decision Flow ==========

    def _decide(
        self,
        fingerprint: Fingerprint,
        deadline: float,
        device_id: str | None,
        location: dict[str, Any] | None,
    ) -> tuple[MatchResult, MatchEvent | None]:
        best = self._query(fingerprint, deadline)
        if best is not None and best[1] >= self.config.match_threshold:
            decided = self._record_match(fingerprint, *best, device_id, location)
            if decided is not None:
                return decided

        if fingerprint.quality < self.config.create_threshold:
            logger.debug(
                f"[Coordinator] Rejected {fingerprint.signature[:12]}: "
                f"best score {best[1] if best else 0.0:.1f}, quality {fingerprint.quality:.3f}"
            )
            return MatchResult(MatchOutcome.REJECTED, quality=fingerprint.quality), None

        remaining = deadline - time.monotonic()
        if remaining <= 0 or not self._create_lock.acquire(timeout=remaining):
            raise MatchTimeout("Timed out waiting for the create path")
        try:
            # Another writer may have created this cluster since the first query
            best = self._query(fingerprint, deadline)
            if best is not None and best[1] >= self.config.match_threshold:
                decided = self._record_match(fingerprint, *best, device_id, location)
                if decided is not None:
                    return decided
            return self._create(fingerprint, device_id, location)
        finally:
            self._create_lock.release()

    def _query(self, fingerprint: Fingerprint, deadline: float) -> tuple[Fingerprint, float] | None:
        try:
            return self.index.find_best_match(
                fingerprint, self.config.candidate_limit, deadline=deadline
            )
        except DimensionMismatch as e:
            logger.error(f"[Coordinator] {e}")
            raise

    def _record_match(
        self,
        fingerprint: Fingerprint,
        reference: Fingerprint,
        score: float,
        device_id: str | None,
        location: dict[str, Any] | None,
    ) -> tuple[MatchResult, MatchEvent] | None:
        """Count a listener on the matched context.

        Returns None when the context no longer exists. Its stale reference
        fingerprints are dropped from the index so the sample is decided as
        unmatched.
        """
        context_id = reference.context_id
        if context_id is None:
            return None
        try:
            context = self.store.increment_listeners(context_id)
        except KeyError:
            removed = self.index.remove_context(context_id)
            logger.warning(
                f"[Coordinator] Context not found for matched fingerprint: {context_id} "
                f"(dropped {removed} stale fingerprint(s))"
            )
            return None

        logger.info(
            f"[Coordinator] Matched context {context.id} "
            f"(score={score:.1f}, listeners={context.listener_count})"
        )
        result = MatchResult(
            MatchOutcome.MATCHED,
            context_id=context.id,
            confidence=score,
            quality=fingerprint.quality,
        )
        event = MatchEvent(
            type=Events.FINGERPRINT_MATCHED,
            context_id=context.id,
            confidence=score,
            device_id=device_id,
            location=location,
            source=self.source,
        )
        return result, event

    def _create(
        self,
        fingerprint: Fingerprint,
        device_id: str | None,
        location: dict[str, Any] | None,
    ) -> tuple[MatchResult, MatchEvent]:
        with self._write_scope():
            context = self.store.create(
                Context(id=uuid.uuid4().hex, name=default_context_name(), listener_count=1)
            )
            try:
                self.index.insert(fingerprint, context.id)
            except Exception:
                logger.error(f"[Coordinator] Index insert failed, undoing context {context.id}")
                try:
                    self.store.delete(context.id)
                except Exception as undo_error:
                    logger.error(
                        f"[Coordinator] Could not undo context {context.id}: {undo_error}"
                    )
                raise

        logger.info(f"[Coordinator] Created new context {context.id} for unmatched fingerprint")
        result = MatchResult(
            MatchOutcome.CREATED,
            context_id=context.id,
            quality=fingerprint.quality,
        )
        event = MatchEvent(
            type=Events.CONTEXT_CREATED,
            context_id=context.id,
            device_id=device_id,
            location=location,
            source=self.source,
        )
        return result, event

    # ========== Helpers ==========

    def _write_scope(self) -> AbstractContextManager[Any]:
        """Transaction of the store when it offers one (SQLite), else a no-op."""
        transaction = getattr(self.store, "transaction", None)
        return transaction() if transaction is not None else nullcontext()

    def _publish(self, event: MatchEvent) -> None:
        if self.sink is None:
            return
        try:
            self.sink.publish(event)
        except Exception as e:
            self._count("events_failed")
            logger.warning(f"[Coordinator] Failed to publish event {event.type}: {e}")

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1


def build_coordinator(
    config: PresenceConfig,
    bus: EventBus | None = None,
    database: Database | None = None,
) -> MatchingCoordinator:
    """Wire a coordinator from application configuration.

    Args:
        config: Application configuration
        bus: Event bus to publish on when HTTP events are disabled
        database: Connected database for the sqlite backend (opened from
                  ``storage.db_path`` if None)

    Returns:
        Ready-to-use MatchingCoordinator
    """
    matching = config.matching

    index: MatchIndexProtocol
    store: ContextStoreProtocol
    if config.storage.backend == "sqlite":
        if database is None:
            database = Database(config.storage.db_path.expanduser())
            database.connect()
        database.initialize_schema()
        index = SqliteMatchIndex(database, matching.feature_dimension)
        store = SqliteContextStore(database)
    else:
        index = InMemoryMatchIndex(matching.feature_dimension)
        store = InMemoryContextStore()

    sink: EventSinkProtocol | None = None
    if config.events.enabled:
        sink = HttpEventSink(config.events.endpoint, config.events.timeout_seconds)
    elif bus is not None:
        sink = EventBusSink(bus)

    extractor = BandEnergyExtractor(
        dimension=matching.feature_dimension,
        sample_rate=config.extractor.sample_rate,
        hop_length=config.extractor.hop_length,
        max_duration_sec=config.extractor.max_duration_sec,
    )

    logger.info(
        f"[Coordinator] Using {config.storage.backend} backend "
        f"(D={matching.feature_dimension}, threshold={matching.match_threshold})"
    )
    return MatchingCoordinator(
        index,
        store,
        config=matching,
        sink=sink,
        extractor=extractor,
        source=config.events.source,
    )
