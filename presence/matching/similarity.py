"""Similarity scoring between fingerprints.

Scores are bounded to [0, 100]:
- Feature vectors available: normalized inverse euclidean distance. Values
  live in the unit hypercube, so sqrt(D) is the largest possible distance.
- Otherwise: character-wise agreement of the signatures.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

import numpy as np

from presence.core.errors import DimensionMismatch
from presence.core.models import Fingerprint

SCORE_PRECISION = 6


def feature_similarity(a: tuple[float, ...], b: tuple[float, ...]) -> float:
    """Score two feature vectors of equal length.

    Raises:
        DimensionMismatch: If the lengths differ
    """
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))
    if not a:
        return 100.0

    distance = float(np.linalg.norm(np.asarray(a) - np.asarray(b)))
    score = 100.0 * (1.0 - distance / math.sqrt(len(a)))
    return round(min(100.0, max(0.0, score)), SCORE_PRECISION)


def signature_similarity(sig_a: str, sig_b: str) -> float:
    """Share of positions where two signatures agree, over the shorter one."""
    if not sig_a or not sig_b:
        return 0.0

    length = min(len(sig_a), len(sig_b))
    agree = sum(1 for i in range(length) if sig_a[i] == sig_b[i])
    return round(100.0 * agree / length, SCORE_PRECISION)


def similarity(a: Fingerprint, b: Fingerprint) -> float:
    """Symmetric similarity score in [0, 100]."""
    if a.features is not None and b.features is not None:
        return feature_similarity(a.features, b.features)
    return signature_similarity(a.signature, b.signature)


def is_match(a: Fingerprint, b: Fingerprint, threshold: float = 75.0) -> bool:
    """True if the score reaches the threshold (inclusive)."""
    return similarity(a, b) >= threshold


def rank_matches(
    fingerprint: Fingerprint,
    candidates: Iterable[Fingerprint],
    threshold: float = 75.0,
) -> list[tuple[Fingerprint, float]]:
    """All candidates scoring at or above the threshold, best first."""
    scored = [(candidate, similarity(fingerprint, candidate)) for candidate in candidates]
    matches = [(candidate, score) for candidate, score in scored if score >= threshold]
    matches.sort(key=lambda m: m[1], reverse=True)
    return matches
