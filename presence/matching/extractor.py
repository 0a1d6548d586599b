"""Default feature extractor: mel band energies.

Loads a short clip, computes a mel spectrogram with one band per feature,
averages each band over time (in dB) and min-max normalizes the result into
[0, 1].
"""

from __future__ import annotations

from pathlib import Path

import numpy as np

from presence.core.errors import InvalidFeatureVector

# Floor used when converting power to dB, relative to the loudest band
TOP_DB = 80.0


def band_energy_features(mel_power: np.ndarray, top_db: float = TOP_DB) -> list[float]:
    """Reduce a (bands x frames) mel power spectrogram to normalized band energies.

    Args:
        mel_power: Non-negative power spectrogram
        top_db: Dynamic range kept below the loudest band

    Returns:
        One value in [0, 1] per band. A silent clip yields all zeros.
    """
    if mel_power.ndim != 2 or mel_power.shape[1] == 0:
        raise InvalidFeatureVector(f"Expected a 2-D spectrogram, got shape {mel_power.shape}")

    import librosa

    band_power = mel_power.mean(axis=1)
    if float(band_power.max()) <= 0.0:
        return [0.0] * mel_power.shape[0]

    db = librosa.power_to_db(band_power, ref=np.max, top_db=top_db)
    normalized = (db + top_db) / top_db
    return [float(v) for v in np.clip(normalized, 0.0, 1.0)]


class BandEnergyExtractor:
    """Extract a D-band energy profile from an audio file with librosa."""

    def __init__(
        self,
        dimension: int = 32,
        sample_rate: int = 22050,
        hop_length: int = 512,
        max_duration_sec: float = 15.0,
    ):
        """Initialize extractor.

        Args:
            dimension: Number of mel bands (feature vector length)
            sample_rate: Audio sample rate (will resample if different)
            hop_length: STFT hop length in samples
            max_duration_sec: Only the first N seconds are analyzed
        """
        self._dimension = dimension
        self.sample_rate = sample_rate
        self.hop_length = hop_length
        self.max_duration_sec = max_duration_sec

    @property
    def dimension(self) -> int:
        return self._dimension

    def extract(self, audio_path: str | Path) -> list[float]:
        """Extract features from an audio file.

        Args:
            audio_path: Path to audio file

        Returns:
            ``dimension`` values in [0, 1]

        Raises:
            InvalidFeatureVector: If the file holds no audio
        """
        import librosa

        y, _ = librosa.load(
            str(audio_path),
            sr=self.sample_rate,
            mono=True,
            duration=self.max_duration_sec,
        )
        if len(y) == 0:
            raise InvalidFeatureVector(f"No audio samples in {audio_path}")

        return self.extract_from_array(y)

    def extract_from_array(self, y: np.ndarray) -> list[float]:
        """Extract features from a mono signal at ``sample_rate``."""
        import librosa

        mel = librosa.feature.melspectrogram(
            y=y,
            sr=self.sample_rate,
            hop_length=self.hop_length,
            n_mels=self._dimension,
        )
        return band_energy_features(mel)
