"""Session-wide cache of decoded audio metadata, keyed by source identifier."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from audio.decoder import decode_audio
from audio.metadata import AudioMetadata

logger = logging.getLogger(__name__)


class AudioMetadataCache:
    """Decodes each source once and hands out a shared Future per source.

    Concurrent requests for the same source are coalesced onto the in-flight
    decode. Results (including failures) stay cached until the source is
    invalidated; there is no other eviction.
    """

    def __init__(
        self,
        decoder: Callable[[str], AudioMetadata] = decode_audio,
        max_workers: int = 2,
    ) -> None:
        self._decoder = decoder
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="audio-decode"
        )
        self._entries: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, source: str) -> bool:
        with self._lock:
            return source in self._entries

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, source: str) -> Future:
        """Future resolving to AudioMetadata, or failing with DecodeError."""
        with self._lock:
            if self._closed:
                raise RuntimeError("AudioMetadataCache is closed")
            future = self._entries.get(source)
            if future is None:
                logger.info("Decoding audio metadata", extra={"source": source})
                future = self._executor.submit(self._decoder, source)
                self._entries[source] = future
            return future

    def peek(self, source: str) -> AudioMetadata | None:
        """Decoded metadata if available now, without starting a decode."""
        with self._lock:
            future = self._entries.get(source)
        if future is None or not future.done() or future.cancelled():
            return None
        if future.exception() is not None:
            return None
        return future.result()

    def invalidate(self, source: str) -> bool:
        """Forget a source so the next get() decodes it again."""
        with self._lock:
            future = self._entries.pop(source, None)
        if future is None:
            return False
        future.cancel()
        return True

    def clear(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for future in entries:
            future.cancel()

    def close(self) -> None:
        """Drop all entries and stop the decode pool."""
        with self._lock:
            self._closed = True
        self.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)
