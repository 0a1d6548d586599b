"""Tests for presence.matching.extractor."""

from __future__ import annotations

import numpy as np
import pytest

from presence.core.errors import InvalidFeatureVector
from presence.matching.extractor import BandEnergyExtractor, band_energy_features
from presence.matching.fingerprint import FingerprintBuilder


def _sine_audio(duration_sec: float = 1.0, sr: int = 22050) -> np.ndarray:
    """Generate a 440 Hz sine wave as a float32 array."""
    t = np.linspace(0, duration_sec, int(sr * duration_sec))
    return (np.sin(2 * np.pi * 440 * t) * 0.5).astype(np.float32)


class TestBandEnergyFeatures:
    """Unit tests for band_energy_features()."""

    def test_loudest_band_is_one(self) -> None:
        mel = np.array([[1.0, 1.0], [0.01, 0.01], [0.0, 0.0]])
        features = band_energy_features(mel)

        assert features[0] == pytest.approx(1.0)
        assert features[1] == pytest.approx(0.75)  # -20 dB of an 80 dB range
        assert features[2] == pytest.approx(0.0)

    def test_bands_below_range_floor_to_zero(self) -> None:
        mel = np.array([[1.0], [0.01], [0.5]])
        features = band_energy_features(mel, top_db=10.0)

        assert features[0] == pytest.approx(1.0)
        assert features[1] == pytest.approx(0.0)
        assert features[2] == pytest.approx(1.0 - 10 * np.log10(2) / 10)

    def test_silence_is_all_zero(self) -> None:
        assert band_energy_features(np.zeros((4, 10))) == [0.0] * 4

    def test_rejects_empty_spectrogram(self) -> None:
        with pytest.raises(InvalidFeatureVector):
            band_energy_features(np.zeros((4, 0)))


class TestBandEnergyExtractor:
    def test_sine_wave_gives_valid_vector(self) -> None:
        extractor = BandEnergyExtractor(dimension=16)

        features = extractor.extract_from_array(_sine_audio())

        assert len(features) == 16
        assert all(0.0 <= v <= 1.0 for v in features)
        assert max(features) == pytest.approx(1.0)
        # Output is accepted by the fingerprint builder as-is
        FingerprintBuilder(dimension=16).build(features)

    def test_same_audio_same_features(self) -> None:
        extractor = BandEnergyExtractor(dimension=16)
        audio = _sine_audio()
        assert extractor.extract_from_array(audio) == extractor.extract_from_array(audio)
