"""Error types raised by the matching core.

Every error carries a ``retryable`` flag so callers can tell a transient
backend failure from a request that will never succeed.
"""

from __future__ import annotations


class PresenceError(Exception):
    """Base class for all matching core errors."""

    retryable: bool = False


class InvalidFeatureVector(PresenceError, ValueError):
    """Feature vector has the wrong dimension or non-finite/out-of-range values."""


class DimensionMismatch(PresenceError):
    """Two fingerprints (or a fingerprint and an index) disagree on dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class MatchTimeout(PresenceError):
    """The configured deadline elapsed before a decision was reached."""

    retryable = True


class IndexUnavailable(PresenceError):
    """The match index backend could not be reached."""

    retryable = True


class StoreUnavailable(PresenceError):
    """The context store backend could not be reached."""

    retryable = True
