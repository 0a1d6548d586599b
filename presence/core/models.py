"""Data model for fingerprints, contexts and match results."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Fingerprint:
    """Compact derived representation of an audio sample.

    Attributes:
        signature: 64-char hex digest of the quantized feature vector
        features: Normalized feature vector (None for signature-only records)
        quality: Sample reliability estimate in [0, 1]
        context_id: Context this fingerprint was recorded under (lookup only)
        created_at: Creation timestamp (UTC)
    """

    signature: str
    features: tuple[float, ...] | None
    quality: float
    context_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def dimension(self) -> int | None:
        """Length of the feature vector, or None if features are unavailable."""
        return len(self.features) if self.features is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for crossing process boundaries."""
        return {
            "signature": self.signature,
            "features": list(self.features) if self.features is not None else None,
            "quality": self.quality,
            "context_id": self.context_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Fingerprint:
        """Rebuild a fingerprint serialized with ``to_dict``."""
        features = data.get("features")
        created_at = data.get("created_at")
        return cls(
            signature=data["signature"],
            features=tuple(float(v) for v in features) if features is not None else None,
            quality=float(data["quality"]),
            context_id=data.get("context_id"),
            created_at=datetime.fromisoformat(created_at) if created_at else utcnow(),
        )


class ContextType(Enum):
    """Kind of real-world audio source a context stands for."""

    BROADCAST = "broadcast"
    CONCERT = "concert"
    PODCAST = "podcast"
    SPORTS_EVENT = "sports_event"
    MOVIE = "movie"
    LIVE_EVENT = "live_event"
    UNKNOWN = "unknown"


def default_context_name() -> str:
    """Name given to contexts minted from an unmatched fingerprint."""
    return f"Detected Context {int(time.time() * 1000)}"


@dataclass(slots=True)
class Context:
    """A real-world audio source that several listeners may match to."""

    id: str
    name: str
    type: ContextType = ContextType.UNKNOWN
    listener_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "listener_count": self.listener_count,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class MatchOutcome(Enum):
    """Terminal state of a submission."""

    MATCHED = "matched"
    CREATED = "created"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class MatchResult:
    """Outcome of ``MatchingCoordinator.submit``.

    A REJECTED result is a valid "no match" answer, not an error.
    """

    outcome: MatchOutcome
    context_id: str | None = None
    confidence: float = 0.0
    quality: float = 0.0

    @property
    def matched(self) -> bool:
        return self.outcome is MatchOutcome.MATCHED

    @property
    def is_new(self) -> bool:
        return self.outcome is MatchOutcome.CREATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "matched": self.matched,
            "context_id": self.context_id,
            "confidence": self.confidence,
            "is_new": self.is_new,
            "quality": self.quality,
        }


@dataclass(frozen=True, slots=True)
class MatchEvent:
    """Payload sent to the external event sink."""

    type: str
    context_id: str
    timestamp: datetime = field(default_factory=utcnow)
    confidence: float | None = None
    device_id: str | None = None
    location: dict[str, Any] | None = None
    source: str = "fingerprint-service"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"context_id": self.context_id}
        if self.confidence is not None:
            payload["confidence"] = self.confidence
        if self.device_id is not None:
            payload["device_id"] = self.device_id
        if self.location is not None:
            payload["location"] = self.location
        return {
            "type": self.type,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "payload": payload,
        }
