"""Decoded audio metadata shared read-only between the provider and the waveform engine."""

from dataclasses import dataclass

import numpy as np


class DecodeError(Exception):
    """Source audio could not be opened or decoded."""


@dataclass(frozen=True)
class AudioMetadata:
    """Immutable decoded audio.

    channel_data has shape (channels, num_samples), float32, values in [-1, 1].
    The array is flagged read-only so views computing bars concurrently
    cannot mutate it.
    """

    sample_rate: int
    number_of_channels: int
    duration_s: float
    channel_data: np.ndarray

    @classmethod
    def from_channels(cls, channels, sample_rate: int) -> "AudioMetadata":
        """Build metadata from a list of per-channel sample sequences."""
        if sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate}")
        rows = [np.asarray(ch, dtype=np.float32) for ch in channels]
        if rows:
            lengths = {row.shape[0] for row in rows}
            if len(lengths) != 1:
                raise ValueError(f"channels differ in length: {sorted(lengths)}")
            data = np.stack(rows)
        else:
            data = np.empty((0, 0), dtype=np.float32)
        data.setflags(write=False)
        return cls(
            sample_rate=sample_rate,
            number_of_channels=data.shape[0],
            duration_s=data.shape[1] / sample_rate,
            channel_data=data,
        )

    @property
    def num_samples(self) -> int:
        return self.channel_data.shape[1] if self.channel_data.ndim == 2 else 0

    @property
    def peak(self) -> float:
        """Largest absolute sample across all channels."""
        if self.channel_data.size == 0:
            return 0.0
        return float(np.nanmax(np.abs(self.channel_data)))
