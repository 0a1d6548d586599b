"""Tests for presence.matching.coordinator."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from presence.core.config import MatchingConfig
from presence.core.errors import (
    IndexUnavailable,
    InvalidFeatureVector,
    MatchTimeout,
    StoreUnavailable,
)
from presence.core.event_bus import EventBus, Events
from presence.core.models import MatchOutcome
from presence.matching.coordinator import MatchingCoordinator, build_coordinator
from presence.matching.index import InMemoryMatchIndex, SqliteMatchIndex
from presence.matching.sinks import EventBusSink
from presence.matching.store import InMemoryContextStore, SqliteContextStore


@pytest.fixture(params=["memory", "sqlite"])
def coordinator(request, memory_coordinator, sqlite_coordinator) -> MatchingCoordinator:
    return memory_coordinator if request.param == "memory" else sqlite_coordinator


class TestDecisionFlow:
    """Match / create / reject decisions."""

    def test_example_scenario(self, coordinator, flat) -> None:
        """Created, then matched at score 85, then rejected."""
        created = coordinator.submit(flat(0.9))
        assert created.outcome is MatchOutcome.CREATED
        assert created.is_new and not created.matched
        ctx = coordinator.get_context(created.context_id)
        assert ctx.listener_count == 1

        matched = coordinator.submit(flat(0.75))
        assert matched.outcome is MatchOutcome.MATCHED
        assert matched.context_id == created.context_id
        assert matched.confidence == pytest.approx(85.0)
        assert coordinator.get_context(created.context_id).listener_count == 2

        rejected = coordinator.submit(flat(0.0), quality_hint=0.4)
        assert rejected.outcome is MatchOutcome.REJECTED
        assert rejected.context_id is None
        assert not rejected.matched and not rejected.is_new
        assert coordinator.get_context(created.context_id).listener_count == 2
        assert coordinator.index.count() == 1
        assert coordinator.store.count() == 1

    def test_match_does_not_index_fingerprint(self, coordinator, flat) -> None:
        coordinator.submit(flat(0.9))
        for _ in range(5):
            coordinator.submit(flat(0.85))
        assert coordinator.index.count() == 1

    def test_threshold_is_inclusive(self, coordinator, flat) -> None:
        first = coordinator.submit(flat(0.5), quality_hint=0.9)

        at_threshold = coordinator.submit(flat(0.75), quality_hint=0.1)
        assert at_threshold.matched
        assert at_threshold.confidence == 75.0
        assert at_threshold.context_id == first.context_id

        below = coordinator.submit(flat(0.76), quality_hint=0.1)
        assert below.outcome is MatchOutcome.REJECTED

    def test_create_threshold_is_inclusive(self, coordinator, flat) -> None:
        assert coordinator.submit(flat(0.1), quality_hint=0.7).is_new
        assert coordinator.submit(flat(0.9), quality_hint=0.69).outcome is MatchOutcome.REJECTED

    def test_low_quality_can_still_match(self, coordinator, flat) -> None:
        created = coordinator.submit(flat(0.9))
        result = coordinator.submit(flat(0.9), quality_hint=0.05)
        assert result.matched
        assert result.context_id == created.context_id

    def test_rejection_is_idempotent(self, coordinator, flat) -> None:
        coordinator.submit(flat(0.9))
        before = coordinator.recent_contexts()

        for _ in range(10):
            assert coordinator.submit(flat(0.1), quality_hint=0.3).outcome is MatchOutcome.REJECTED

        after = coordinator.recent_contexts()
        assert [(c.id, c.listener_count, c.updated_at) for c in after] == [
            (c.id, c.listener_count, c.updated_at) for c in before
        ]
        assert coordinator.index.count() == 1

    def test_listener_count_accuracy(self, coordinator, flat) -> None:
        ctx_id = coordinator.submit(flat(0.9)).context_id
        for _ in range(7):
            coordinator.submit(flat(0.88))
        assert coordinator.get_context(ctx_id).listener_count == 1 + 7

    def test_unrelated_samples_create_separate_contexts(self, coordinator, flat) -> None:
        a = coordinator.submit(flat(0.9))
        b = coordinator.submit(flat(0.1), quality_hint=0.9)
        assert a.context_id != b.context_id
        assert coordinator.store.count() == 2

    def test_invalid_features_change_nothing(self, coordinator, flat) -> None:
        with pytest.raises(InvalidFeatureVector):
            coordinator.submit(flat(0.5, dimension=8))
        assert coordinator.store.count() == 0
        assert coordinator.index.count() == 0

    def test_stats(self, coordinator, flat) -> None:
        coordinator.submit(flat(0.9))
        coordinator.submit(flat(0.9))
        coordinator.submit(flat(0.0), quality_hint=0.2)
        with pytest.raises(InvalidFeatureVector):
            coordinator.submit([2.0])

        stats = coordinator.stats()
        assert stats["submissions"] == 4
        assert stats["created"] == 1
        assert stats["matched"] == 1
        assert stats["rejected"] == 1
        assert stats["errors"] == 1
        assert stats["contexts"] == 1
        assert stats["fingerprints"] == 1


class TestConcurrency:
    """Concurrent submissions of the same acoustic event."""

    def test_concurrent_near_identical_submissions_create_one_context(self, coordinator, flat) -> None:
        n = 16
        vectors = [flat(0.8 + (i % 4) * 0.01) for i in range(n)]
        barrier = threading.Barrier(n)

        def submit(features):
            barrier.wait()
            return coordinator.submit(features)

        with ThreadPoolExecutor(max_workers=n) as pool:
            results = list(pool.map(submit, vectors))

        created = [r for r in results if r.is_new]
        matched = [r for r in results if r.matched]
        assert len(created) == 1
        assert len(matched) == n - 1
        assert {r.context_id for r in results} == {created[0].context_id}
        assert coordinator.store.count() == 1
        assert coordinator.get_context(created[0].context_id).listener_count == n

    def test_create_lock_wait_respects_deadline(self, flat) -> None:
        coordinator = MatchingCoordinator(
            InMemoryMatchIndex(16),
            InMemoryContextStore(),
            config=MatchingConfig(feature_dimension=16, match_timeout_ms=50),
        )
        coordinator._create_lock.acquire()
        try:
            with pytest.raises(MatchTimeout):
                coordinator.submit(flat(0.9))
        finally:
            coordinator._create_lock.release()
        assert coordinator.store.count() == 0

    def test_slow_scan_times_out_without_mutation(self, flat) -> None:
        index = InMemoryMatchIndex(16)
        real_find = index.find_best_match

        def slow_find(fp, candidate_limit, deadline=None):
            time.sleep(0.05)
            return real_find(fp, candidate_limit, deadline=deadline)

        index.find_best_match = slow_find  # type: ignore[method-assign]
        store = InMemoryContextStore()
        coordinator = MatchingCoordinator(
            index, store, config=MatchingConfig(feature_dimension=16, match_timeout_ms=10)
        )

        with pytest.raises(MatchTimeout):
            coordinator.submit(flat(0.9))
        assert store.count() == 0
        assert index.count() == 0


class TestFailures:
    """Backend failures abort the submission with no partial writes."""

    def test_index_insert_failure_undoes_context(self, flat) -> None:
        index = MagicMock()
        index.find_best_match.return_value = None
        index.insert.side_effect = IndexUnavailable("down")
        store = InMemoryContextStore()
        coordinator = MatchingCoordinator(index, store, config=MatchingConfig(feature_dimension=16))

        with pytest.raises(IndexUnavailable):
            coordinator.submit(flat(0.9))
        assert store.count() == 0

    def test_index_query_failure_propagates(self, flat) -> None:
        index = MagicMock()
        index.find_best_match.side_effect = IndexUnavailable("down")
        store = MagicMock()
        coordinator = MatchingCoordinator(index, store, config=MatchingConfig(feature_dimension=16))

        with pytest.raises(IndexUnavailable) as exc_info:
            coordinator.submit(flat(0.9))
        assert exc_info.value.retryable
        store.create.assert_not_called()
        store.increment_listeners.assert_not_called()

    def test_store_failure_on_create_inserts_nothing(self, flat) -> None:
        index = InMemoryMatchIndex(16)
        store = MagicMock()
        store.create.side_effect = StoreUnavailable("down")
        coordinator = MatchingCoordinator(index, store, config=MatchingConfig(feature_dimension=16))

        with pytest.raises(StoreUnavailable):
            coordinator.submit(flat(0.9))
        assert index.count() == 0

    def test_expired_context_is_not_a_match(self, memory_coordinator, flat) -> None:
        """A sound whose context was expired externally mints a fresh context."""
        old_id = memory_coordinator.submit(flat(0.9)).context_id
        memory_coordinator.store.delete(old_id)

        results = [memory_coordinator.submit(flat(0.9)) for _ in range(3)]

        assert results[0].outcome is MatchOutcome.CREATED
        assert results[0].context_id != old_id
        assert [r.outcome for r in results[1:]] == [MatchOutcome.MATCHED] * 2
        assert {r.context_id for r in results} == {results[0].context_id}
        assert memory_coordinator.store.count() == 1
        assert memory_coordinator.index.count() == 1

    def test_expired_context_low_quality_rejected(self, memory_coordinator, flat) -> None:
        ctx_id = memory_coordinator.submit(flat(0.9)).context_id
        memory_coordinator.store.delete(ctx_id)

        result = memory_coordinator.submit(flat(0.9), quality_hint=0.2)

        assert result.outcome is MatchOutcome.REJECTED
        # Stale reference fingerprints are dropped along the way
        assert memory_coordinator.index.count() == 0

    def test_failed_undo_keeps_original_error(self, flat) -> None:
        index = MagicMock()
        index.find_best_match.return_value = None
        index.insert.side_effect = IndexUnavailable("down")
        store = InMemoryContextStore()
        store.delete = MagicMock(side_effect=StoreUnavailable("also down"))  # type: ignore[method-assign]
        coordinator = MatchingCoordinator(index, store, config=MatchingConfig(feature_dimension=16))

        with pytest.raises(IndexUnavailable):
            coordinator.submit(flat(0.9))
        store.delete.assert_called_once()

    def test_sqlite_create_rolls_back_as_a_whole(self, database, flat) -> None:
        """Context and reference fingerprint are committed together or not at all."""
        index = MagicMock()
        index.find_best_match.return_value = None
        index.insert.side_effect = IndexUnavailable("down")
        store = SqliteContextStore(database)
        store.delete = MagicMock(side_effect=StoreUnavailable("also down"))  # type: ignore[method-assign]
        coordinator = MatchingCoordinator(index, store, config=MatchingConfig(feature_dimension=16))

        with pytest.raises(IndexUnavailable):
            coordinator.submit(flat(0.9))
        assert database.contexts.count() == 0
        assert database.fingerprints.count() == 0

    def test_sqlite_create_commits_context_and_fingerprint(self, sqlite_coordinator, database, flat) -> None:
        result = sqlite_coordinator.submit(flat(0.9))

        assert database.contexts.get(result.context_id) is not None
        (_, stored), = database.fingerprints.recent(1)
        assert stored.context_id == result.context_id


class TestLeave:
    """Listeners leaving a context."""

    def test_leave_decrements_and_floors_at_zero(self, coordinator, flat) -> None:
        ctx_id = coordinator.submit(flat(0.9)).context_id
        coordinator.submit(flat(0.9))
        before = coordinator.get_context(ctx_id)

        assert coordinator.leave(ctx_id).listener_count == 1
        assert coordinator.leave(ctx_id).listener_count == 0
        after = coordinator.leave(ctx_id)

        assert after.listener_count == 0
        assert after.updated_at >= before.updated_at
        assert coordinator.get_context(ctx_id).listener_count == 0
        assert coordinator.stats()["left"] == 3

    def test_leave_unknown_context(self, coordinator) -> None:
        assert coordinator.leave("missing") is None
        assert coordinator.stats()["left"] == 0

    def test_concurrent_leaves_never_go_negative(self, coordinator, flat) -> None:
        ctx_id = coordinator.submit(flat(0.9)).context_id
        for _ in range(4):
            coordinator.submit(flat(0.9))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(coordinator.leave, [ctx_id] * 12))

        assert coordinator.get_context(ctx_id).listener_count == 0



class TestEvents:
    """Outbound notifications."""

    def test_events_published_on_create_and_match(self, test_config, flat) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(Events.CONTEXT_CREATED, lambda event: received.append(event))
        bus.subscribe(Events.FINGERPRINT_MATCHED, lambda event: received.append(event))
        coordinator = MatchingCoordinator(
            InMemoryMatchIndex(16),
            InMemoryContextStore(),
            config=test_config.matching,
            sink=EventBusSink(bus),
        )

        created = coordinator.submit(flat(0.9), device_id="phone-1")
        coordinator.submit(flat(0.8), location={"latitude": 1.0, "longitude": 2.0})
        coordinator.submit(flat(0.0), quality_hint=0.1)

        assert [e.type for e in received] == ["context.created", "fingerprint.matched"]
        assert received[0].context_id == created.context_id
        assert received[0].device_id == "phone-1"
        assert received[1].confidence == pytest.approx(90.0)
        assert received[1].location == {"latitude": 1.0, "longitude": 2.0}

    def test_sink_failure_keeps_decision(self, test_config, flat) -> None:
        sink = MagicMock()
        sink.publish.side_effect = ConnectionError("unreachable")
        coordinator = MatchingCoordinator(
            InMemoryMatchIndex(16),
            InMemoryContextStore(),
            config=test_config.matching,
            sink=sink,
        )

        result = coordinator.submit(flat(0.9))

        assert result.is_new
        assert coordinator.store.count() == 1
        assert coordinator.stats()["events_failed"] == 1


class TestSubmitAudio:
    def test_delegates_to_extractor(self, test_config, flat) -> None:
        extractor = MagicMock()
        extractor.dimension = 16
        extractor.extract.return_value = flat(0.9)
        coordinator = MatchingCoordinator(
            InMemoryMatchIndex(16),
            InMemoryContextStore(),
            config=test_config.matching,
            extractor=extractor,
        )

        result = coordinator.submit_audio("sample.wav", device_id="d1")

        extractor.extract.assert_called_once_with("sample.wav")
        assert result.is_new

    def test_requires_extractor(self, memory_coordinator) -> None:
        with pytest.raises(RuntimeError):
            memory_coordinator.submit_audio("sample.wav")

    def test_extractor_dimension_must_agree(self, test_config) -> None:
        extractor = MagicMock()
        extractor.dimension = 8
        with pytest.raises(ValueError):
            MatchingCoordinator(
                InMemoryMatchIndex(16),
                InMemoryContextStore(),
                config=test_config.matching,
                extractor=extractor,
            )


class TestBuildCoordinator:
    def test_memory_backend(self, test_config) -> None:
        coordinator = build_coordinator(test_config)
        assert isinstance(coordinator.index, InMemoryMatchIndex)
        assert coordinator.sink is None

    def test_sqlite_backend_with_bus(self, test_config, flat) -> None:
        test_config.storage.backend = "sqlite"
        bus = EventBus()

        coordinator = build_coordinator(test_config, bus=bus)

        assert isinstance(coordinator.index, SqliteMatchIndex)
        assert isinstance(coordinator.sink, EventBusSink)
        assert coordinator.submit(flat(0.9)).is_new
        assert test_config.storage.db_path.exists()
