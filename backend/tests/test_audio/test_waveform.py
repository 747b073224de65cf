"""Tests for waveform bar computation."""

import math

import numpy as np
import pytest

from audio.metadata import AudioMetadata
from audio.waveform import Bar, compute_bars, sample_window
from timeline.frame_range import FrameRange


def _meta(channels, sample_rate=4):
    return AudioMetadata.from_channels(channels, sample_rate)


@pytest.mark.smoke
def test_two_channel_mix_scenario():
    """Channels are averaged before peak detection: [1,0,0,-1] → [1, 1]."""
    metadata = _meta([[1, -1, 1, -1], [1, 1, -1, -1]])
    bars = compute_bars(metadata, FrameRange(0, 4), fps=4, visualization_width=2)
    assert bars == [Bar(index=0, amplitude=1.0), Bar(index=1, amplitude=1.0)]


@pytest.mark.smoke
def test_zero_channels_returns_empty():
    metadata = AudioMetadata.from_channels([], 44100)
    assert metadata.number_of_channels == 0
    assert compute_bars(metadata, FrameRange(0, 30), fps=30, visualization_width=100) == []


def test_zero_width_returns_empty():
    metadata = _meta([[0.5] * 8])
    assert compute_bars(metadata, FrameRange(0, 8), fps=4, visualization_width=0) == []


def test_window_past_end_returns_empty():
    metadata = _meta([[0.5] * 8])
    assert compute_bars(metadata, FrameRange(100, 10), fps=4, visualization_width=5) == []


@pytest.mark.parametrize("fps", [math.nan, math.inf, -math.inf, 0, -30])
def test_unusable_fps_returns_empty(fps):
    metadata = _meta([[0.5] * 8])
    assert compute_bars(metadata, FrameRange(0, 4), fps=fps, visualization_width=2) == []
    assert sample_window(metadata, FrameRange(0, 4), fps=fps) == (0, 0)


def test_zero_samples_returns_empty():
    metadata = AudioMetadata.from_channels([[], []], 48000)
    assert compute_bars(metadata, FrameRange(0, None), fps=30, visualization_width=10) == []


@pytest.mark.parametrize("width", [1, 3, 7, 64, 333, 1000])
def test_bar_count_matches_width(width):
    rng = np.random.default_rng(7)
    metadata = AudioMetadata.from_channels(rng.uniform(-1, 1, (2, 10_000)), 1000)
    bars = compute_bars(metadata, FrameRange(0, None), fps=30, visualization_width=width)
    assert len(bars) == width
    assert [b.index for b in bars] == list(range(width))


def test_amplitudes_bounded():
    rng = np.random.default_rng(1)
    metadata = AudioMetadata.from_channels(rng.uniform(-1, 1, (2, 48_000)), 48_000)
    bars = compute_bars(metadata, FrameRange(0, 30), fps=30, visualization_width=200)
    assert all(0.0 <= b.amplitude <= 1.0 for b in bars)


def test_identical_inputs_identical_output():
    rng = np.random.default_rng(3)
    metadata = AudioMetadata.from_channels(rng.uniform(-1, 1, (2, 44_100)), 44_100)
    frame_range = FrameRange(5, 17)
    first = compute_bars(metadata, frame_range, fps=29.97, visualization_width=123)
    second = compute_bars(metadata, frame_range, fps=29.97, visualization_width=123)
    assert first == second


def test_peak_preserved_in_its_bucket():
    samples = np.full(1000, 0.1, dtype=np.float32)
    samples[637] = -0.8
    metadata = AudioMetadata.from_channels([samples], 1000)
    bars = compute_bars(metadata, FrameRange(0, 10), fps=10, visualization_width=7)
    # bucket boundaries are floor(i * 1000 / 7): 637 falls in bucket 4 (571..714)
    assert bars[4].amplitude == pytest.approx(0.8)
    assert max(b.amplitude for b in bars) == pytest.approx(0.8)
    assert all(b.amplitude == pytest.approx(0.1) for i, b in enumerate(bars) if i != 4)


def test_non_integer_ratio_partitions_window():
    """Every sample lands in exactly one bucket; a spike anywhere shows up once."""
    n = 101
    for spike in range(n):
        samples = np.zeros(n, dtype=np.float32)
        samples[spike] = 1.0
        metadata = AudioMetadata.from_channels([samples], n)
        bars = compute_bars(metadata, FrameRange(0, 1), fps=1, visualization_width=10)
        assert sum(1 for b in bars if b.amplitude == 1.0) == 1


def test_narrow_window_falls_back_to_neighbour_sample():
    """Fewer samples than bars: empty buckets reuse the next sample, no gaps."""
    metadata = _meta([[0.2, 0.4, 0.6, 0.8]])
    bars = compute_bars(metadata, FrameRange(0, 4), fps=4, visualization_width=8)
    assert len(bars) == 8
    assert [b.amplitude for b in bars] == pytest.approx(
        [0.2, 0.2, 0.4, 0.4, 0.6, 0.6, 0.8, 0.8]
    )


def test_window_uses_only_clip_range():
    # 1s at 10Hz: first half loud, second half quiet
    samples = [0.9] * 5 + [0.1] * 5
    metadata = AudioMetadata.from_channels([samples], 10)
    bars = compute_bars(metadata, FrameRange(5, 5), fps=10, visualization_width=5)
    assert all(b.amplitude == pytest.approx(0.1) for b in bars)


def test_open_ended_range_clips_to_media():
    metadata = AudioMetadata.from_channels([[0.3] * 10], 10)
    assert sample_window(metadata, FrameRange(2, None), fps=10) == (2, 10)
    assert sample_window(metadata, FrameRange(2, 1000), fps=10) == (2, 10)


def test_growing_duration_never_shrinks_window():
    metadata = AudioMetadata.from_channels([np.zeros(48_000)], 48_000)
    previous = (0, 0)
    for duration in range(1, 40):
        start, end = sample_window(metadata, FrameRange(3, duration), fps=30)
        assert start == previous[0] or previous == (0, 0)
        assert end >= previous[1]
        previous = (start, end)


def test_mixing_happens_before_abs():
    """Opposite-phase channels cancel out instead of doubling up."""
    metadata = _meta([[0.5, 0.5, 0.5, 0.5], [-0.5, -0.5, -0.5, -0.5]])
    bars = compute_bars(metadata, FrameRange(0, 4), fps=4, visualization_width=2)
    assert [b.amplitude for b in bars] == [0.0, 0.0]


def test_nan_samples_read_as_silence():
    metadata = _meta([[np.nan, 0.5, np.nan, np.nan]])
    bars = compute_bars(metadata, FrameRange(0, 4), fps=4, visualization_width=2)
    assert [b.amplitude for b in bars] == pytest.approx([0.5, 0.0])
