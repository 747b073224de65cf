"""Waveform state for one audio clip on the timeline."""

import logging
import threading
from concurrent.futures import CancelledError, Future
from enum import Enum
from typing import Callable

import sentry_sdk

from audio.metadata import AudioMetadata
from audio.provider import AudioMetadataCache
from audio.waveform import Bar, compute_bars
from timeline.envelope import TIMELINE_LAYER_HEIGHT, EnvelopePoint, compute_envelope
from timeline.frame_range import FrameRange, max_media_duration, resolve_range

logger = logging.getLogger(__name__)


class WaveformState(Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


_INPUTS = ("src", "fps", "start_from", "duration", "visualization_width", "volume", "height")


class ClipWaveform:
    """Tracks metadata loading for a clip and derives its bars and envelope.

    Transitions happen only when the metadata cache resolves a fetch:
    LOADING -> READY on success, LOADING -> FAILED on a decode error.
    Each fetch is tagged with the source and a generation counter; a result
    that arrives after the source changed (or after close()) is dropped.
    """

    def __init__(
        self,
        cache: AudioMetadataCache,
        src: str,
        fps: float,
        visualization_width: int,
        start_from: float = 0,
        duration: float | None = None,
        volume: str | float = 1.0,
        height: float = TIMELINE_LAYER_HEIGHT,
        on_max_media_duration: Callable[[int], None] | None = None,
        on_change: Callable[["ClipWaveform"], None] | None = None,
    ) -> None:
        self._cache = cache
        self._lock = threading.RLock()
        self._on_max_media_duration = on_max_media_duration
        self._on_change = on_change

        self.src = src
        self.fps = fps
        self.visualization_width = visualization_width
        self.start_from = start_from
        self.duration = duration
        self.volume = volume
        self.height = height

        self._state = WaveformState.LOADING
        self._metadata: AudioMetadata | None = None
        self._error: str | None = None
        self._max_media_duration: int | None = None
        self._generation = 0
        self._closed = False
        self._bars_key: tuple | None = None
        self._bars: list[Bar] = []

        self._request_metadata()

    @property
    def state(self) -> WaveformState:
        return self._state

    @property
    def metadata(self) -> AudioMetadata | None:
        return self._metadata

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def max_media_duration(self) -> int | None:
        return self._max_media_duration

    @property
    def frame_range(self) -> FrameRange:
        return resolve_range(self.start_from, self.duration, self._max_media_duration)

    def update(self, **changes) -> None:
        """Replace clip inputs. A new src restarts metadata loading."""
        unknown = set(changes) - set(_INPUTS)
        if unknown:
            raise TypeError(f"Unknown clip inputs: {sorted(unknown)}")

        with self._lock:
            src_changed = "src" in changes and changes["src"] != self.src
            fps_changed = "fps" in changes and changes["fps"] != self.fps
            for name, value in changes.items():
                setattr(self, name, value)

            if src_changed:
                self._request_metadata()
            elif fps_changed and self._metadata is not None:
                self._publish_max_media_duration(self._metadata)
        self._notify()

    def bars(self) -> list[Bar]:
        """Current bars; empty until metadata is ready.

        The list is reused until one of its inputs changes.
        """
        with self._lock:
            if self._state is not WaveformState.READY or self._metadata is None:
                return []
            frame_range = self.frame_range
            key = (id(self._metadata), frame_range, self.fps, self.visualization_width)
            if key != self._bars_key:
                self._bars = compute_bars(
                    self._metadata, frame_range, self.fps, self.visualization_width
                )
                self._bars_key = key
            return self._bars

    def envelope(self) -> list[EnvelopePoint] | None:
        return compute_envelope(self.volume, self.visualization_width, self.height)

    def snapshot(self) -> dict:
        """JSON-serializable view of the clip's waveform."""
        envelope = self.envelope()
        with self._lock:
            frame_range = self.frame_range
            return {
                "src": self.src,
                "state": self._state.value,
                "error": self._error,
                "max_media_duration": self._max_media_duration,
                **frame_range.to_dict(),
                "bars": [bar.amplitude for bar in self.bars()],
                "envelope": None
                if envelope is None
                else [point.to_list() for point in envelope],
            }

    def close(self) -> None:
        """Detach from the cache; pending fetches are ignored when they land."""
        with self._lock:
            self._closed = True
            self._generation += 1

    def _request_metadata(self) -> None:
        with self._lock:
            self._generation += 1
            token = (self.src, self._generation)
            self._state = WaveformState.LOADING
            self._metadata = None
            self._error = None
            self._max_media_duration = None
            self._bars_key = None
            self._bars = []
            src = self.src

        future = self._cache.get(src)
        future.add_done_callback(lambda f: self._on_metadata(token, f))

    def _on_metadata(self, token: tuple[str, int], future: Future) -> None:
        with self._lock:
            if self._closed or token != (self.src, self._generation):
                logger.debug("Discarding stale metadata for %s", token[0])
                return
            cancelled = False
            try:
                metadata = future.result()
            except CancelledError:
                cancelled = True
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.error("Could not load waveform for %s: %s", self.src, e)
                self._state = WaveformState.FAILED
                self._error = str(e) or type(e).__name__
            else:
                self._metadata = metadata
                self._state = WaveformState.READY
                self._publish_max_media_duration(metadata)

        if cancelled:
            # Entry was invalidated before its decode ran; fetch it again
            if not self._cache.closed:
                logger.debug("Re-requesting invalidated metadata for %s", token[0])
                self._request_metadata()
            return
        self._notify()

    def _publish_max_media_duration(self, metadata: AudioMetadata) -> None:
        self._max_media_duration = max_media_duration(metadata.duration_s, self.fps)
        if self._on_max_media_duration is not None:
            self._on_max_media_duration(self._max_media_duration)

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self)
