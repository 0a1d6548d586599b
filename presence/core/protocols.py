"""Protocol definitions for the matching collaborators.

Using Protocol (structural subtyping) lets any storage engine or event
transport plug into the coordinator without inheriting from our classes.
"""

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from presence.core.models import Context, Fingerprint, MatchEvent

# ============================================================================
# Storage Protocols
# ============================================================================


@runtime_checkable
class MatchIndexProtocol(Protocol):
    """Searchable collection of reference fingerprints."""

    def insert(self, fingerprint: Fingerprint, context_id: str) -> Fingerprint: ...
    def find_best_match(
        self,
        fingerprint: Fingerprint,
        candidate_limit: int,
        deadline: float | None = None,
    ) -> tuple[Fingerprint, float] | None: ...
    def remove_context(self, context_id: str) -> int: ...
    def count(self) -> int: ...


@runtime_checkable
class ContextStoreProtocol(Protocol):
    """Owner of Context records."""

    def create(self, context: Context) -> Context: ...
    def get(self, context_id: str) -> Context | None: ...
    def increment_listeners(self, context_id: str, delta: int = 1) -> Context: ...
    def delete(self, context_id: str) -> bool: ...
    def recent(self, limit: int = 20) -> list[Context]: ...
    def count(self) -> int: ...


# ============================================================================
# Event Sink Protocol
# ============================================================================


@runtime_checkable
class EventSinkProtocol(Protocol):
    """Destination for best-effort match notifications."""

    def publish(self, event: MatchEvent) -> None: ...


# ============================================================================
# Feature Extractor Protocol
# ============================================================================


@runtime_checkable
class FeatureExtractorProtocol(Protocol):
    """Turns raw audio into a fixed-length feature vector in [0, 1]."""

    @property
    def dimension(self) -> int: ...

    def extract(self, audio_path: str | Path) -> Sequence[float]: ...
