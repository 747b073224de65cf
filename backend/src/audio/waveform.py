"""Waveform bar computation for a clip window of decoded audio."""

import math
from dataclasses import dataclass

import numpy as np

from audio.metadata import AudioMetadata
from timeline.frame_range import FrameRange


@dataclass(frozen=True)
class Bar:
    """One horizontal slot of the waveform display."""

    index: int
    amplitude: float


def sample_window(
    metadata: AudioMetadata, frame_range: FrameRange, fps: float
) -> tuple[int, int]:
    """Map a frame range onto [start_sample, end_sample) of the decoded audio.

    Both ends are clamped to [0, num_samples]. An open-ended range runs to
    the last decoded sample. A non-finite or non-positive fps gives an empty
    window.
    """
    if not math.isfinite(fps) or fps <= 0:
        return 0, 0
    total = metadata.num_samples
    rate = metadata.sample_rate
    start = round(frame_range.start_from / fps * rate)
    if frame_range.duration_in_frames is None:
        end = total
    else:
        end = round((frame_range.start_from + frame_range.duration_in_frames) / fps * rate)
    start = max(0, min(start, total))
    end = max(0, min(end, total))
    return start, end


def compute_bars(
    metadata: AudioMetadata,
    frame_range: FrameRange,
    fps: float,
    visualization_width: int,
) -> list[Bar]:
    """Reduce the visible window of a clip to one peak amplitude per pixel slot.

    Channels are averaged per sample first, then the window is split into
    visualization_width contiguous buckets with boundaries at
    floor(i * n / width). Each bar is the peak absolute value of its bucket.
    A bucket that holds no samples (window narrower than the bar count)
    takes the sample at its left boundary, i.e. the first sample of the next
    non-empty bucket.

    Returns:
        Exactly visualization_width bars, or [] for zero channels, zero
        width, an unusable fps or an empty window.
    """
    if metadata.number_of_channels == 0 or visualization_width < 1:
        return []
    if not math.isfinite(fps) or fps <= 0:
        return []

    start, end = sample_window(metadata, frame_range, fps)
    n = end - start
    if n <= 0:
        return []

    window = metadata.channel_data[:, start:end].astype(np.float64)
    mixed = np.abs(np.nan_to_num(window.mean(axis=0), nan=0.0))

    # Integer floor division keeps boundaries exact for any width/n ratio
    edges = np.arange(visualization_width, dtype=np.int64) * n // visualization_width

    # reduceat over [edges[i], edges[i+1]); equal edges yield mixed[edges[i]]
    peaks = np.maximum.reduceat(mixed, edges)
    peaks = np.clip(peaks, 0.0, 1.0)

    return [Bar(index=i, amplitude=float(a)) for i, a in enumerate(peaks)]
