"""Fingerprint construction from normalized feature vectors.

The signature is a SHA-256 digest of the feature vector after quantizing each
value into an integer band, so floating point noise below the band width does
not change it while dissimilar vectors still hash apart.
"""

from __future__ import annotations

import hashlib
import math
from collections.abc import Sequence

import numpy as np

from presence.core.errors import InvalidFeatureVector
from presence.core.models import Fingerprint

SIGNATURE_LENGTH = 64  # hex chars of a SHA-256 digest


def compute_quality(features: np.ndarray) -> float:
    """Estimate sample reliability from average energy and spread.

    Monotonic in both the mean and the standard deviation of the vector,
    clamped to [0, 1]. A flat vector scores its own level.
    """
    return float(np.clip(features.mean() + features.std(), 0.0, 1.0))


class FingerprintBuilder:
    """Build Fingerprint records from feature vectors of a fixed dimension."""

    def __init__(self, dimension: int, quantization_levels: int = 16):
        """Initialize builder.

        Args:
            dimension: Required feature vector length (D)
            quantization_levels: Number of integer bands per feature used
                                 for the signature (2-256)
        """
        if dimension < 1:
            raise ValueError("dimension must be positive")
        if not 2 <= quantization_levels <= 256:
            raise ValueError("quantization_levels must be in [2, 256]")
        self.dimension = dimension
        self.quantization_levels = quantization_levels

    def validate(self, features: Sequence[float]) -> np.ndarray:
        """Check a raw feature vector and return it as a float array.

        Raises:
            InvalidFeatureVector: Wrong length, non-numeric, non-finite or
                                  out of [0, 1]
        """
        try:
            arr = np.asarray(features, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidFeatureVector(f"Feature vector is not numeric: {e}") from e

        if arr.ndim != 1 or arr.shape[0] != self.dimension:
            raise InvalidFeatureVector(
                f"Expected {self.dimension} features, got shape {arr.shape}"
            )
        if not np.all(np.isfinite(arr)):
            raise InvalidFeatureVector("Feature vector contains non-finite values")
        if np.any((arr < 0.0) | (arr > 1.0)):
            raise InvalidFeatureVector("Feature values must lie in [0, 1]")
        return arr

    def signature(self, features: np.ndarray) -> str:
        """Quantize and hash a validated feature vector."""
        levels = self.quantization_levels
        bands = np.minimum((features * levels).astype(np.int64), levels - 1)
        return hashlib.sha256(bands.astype(np.uint8).tobytes()).hexdigest()

    def build(self, features: Sequence[float], quality_hint: float | None = None) -> Fingerprint:
        """Build a fingerprint.

        Args:
            features: D values in [0, 1]
            quality_hint: Caller-supplied quality overriding the computed one

        Returns:
            Fingerprint (not yet bound to a context)

        Raises:
            InvalidFeatureVector: If the vector or the hint is invalid
        """
        arr = self.validate(features)

        if quality_hint is not None:
            if not math.isfinite(quality_hint):
                raise InvalidFeatureVector("Quality hint must be finite")
            quality = min(1.0, max(0.0, float(quality_hint)))
        else:
            quality = compute_quality(arr)

        return Fingerprint(
            signature=self.signature(arr),
            features=tuple(float(v) for v in arr),
            quality=quality,
        )
