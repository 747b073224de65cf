"""Audio decoding via PyAV: extracts planar PCM float32 from audio/video containers."""

import logging

import av
import numpy as np

from audio.metadata import AudioMetadata, DecodeError

logger = logging.getLogger(__name__)


def _to_planar_float32(frame: av.AudioFrame, channels: int) -> np.ndarray:
    """Convert one decoded frame to a (channels, samples) float32 array."""
    arr = frame.to_ndarray()

    # PyAV returns (channels, samples) for planar formats, (1, samples*channels) for packed
    if frame.format.is_planar:
        arr = arr.reshape(channels, -1)
    else:
        arr = arr.reshape(-1, channels).T

    if arr.dtype != np.float32:
        if np.issubdtype(arr.dtype, np.integer):
            info = np.iinfo(arr.dtype)
            arr = arr.astype(np.float32) / max(abs(info.min), abs(info.max))
        else:
            arr = arr.astype(np.float32)
    return arr


def decode_audio(path: str) -> AudioMetadata:
    """Decode the first audio stream of a media file.

    Args:
        path: Path to any container PyAV can open (wav, mp3, mp4, mov, ...).

    Returns:
        AudioMetadata with one row of samples per channel.

    Raises:
        DecodeError: The file cannot be opened, has no audio stream, or the
            codec fails while decoding.
    """
    try:
        container = av.open(path)
    except av.error.FFmpegError as e:
        raise DecodeError(f"Failed to open media: {type(e).__name__}") from e

    try:
        if not container.streams.audio:
            raise DecodeError("No audio stream found")

        stream = container.streams.audio[0]
        sample_rate = stream.rate
        channels = stream.channels
        if not sample_rate:
            raise DecodeError("Audio stream reports no sample rate")

        chunks: list[np.ndarray] = []
        try:
            for frame in container.decode(audio=0):
                chunks.append(_to_planar_float32(frame, channels))
        except av.error.FFmpegError as e:
            raise DecodeError(f"Audio decode failed: {type(e).__name__}") from e
    finally:
        container.close()

    if chunks:
        samples = np.concatenate(chunks, axis=1)
    else:
        samples = np.empty((channels, 0), dtype=np.float32)

    logger.debug(
        "Decoded %d samples x %d channels at %d Hz", samples.shape[1], channels, sample_rate
    )
    return AudioMetadata.from_channels(list(samples), sample_rate)
