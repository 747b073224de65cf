import json
import logging
import time
import uuid
from concurrent.futures import CancelledError
from concurrent.futures import TimeoutError as FutureTimeoutError

import sentry_sdk
import zmq

from audio.metadata import DecodeError
from audio.provider import AudioMetadataCache
from audio.waveform import compute_bars
from security import (
    validate_fps,
    validate_height,
    validate_source,
    validate_visualization_width,
    validate_volume,
)
from timeline.clip_view import WaveformState
from timeline.envelope import TIMELINE_LAYER_HEIGHT, compute_envelope
from timeline.frame_range import max_media_duration, resolve_range

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0
MAX_TIMEOUT_S = 120.0


def _timeout(message: dict) -> float:
    """Seconds to wait for a decode; 0 means report loading immediately."""
    try:
        timeout_s = float(message.get("timeout_s", DEFAULT_TIMEOUT_S))
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_S
    if timeout_s != timeout_s:  # NaN
        return DEFAULT_TIMEOUT_S
    return max(0.0, min(timeout_s, MAX_TIMEOUT_S))


class ZMQServer:
    def __init__(self, metadata_cache: AudioMetadataCache | None = None):
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(zmq.MAXMSGSIZE, 1_048_576)  # 1 MB limit
        self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        # Dedicated ping socket, never blocked by long decodes
        self.ping_socket = self.context.socket(zmq.REP)
        self.ping_socket.setsockopt(zmq.MAXMSGSIZE, 4096)  # 4 KB limit (pings only)
        self.ping_port = self.ping_socket.bind_to_random_port("tcp://127.0.0.1")
        # Auth token prevents unauthorized ZMQ access from other local processes
        self.token = str(uuid.uuid4())
        self.start_time = time.time()
        self.running = False
        self.last_waveform_ms = 0.0
        # Decoded metadata, one entry per source for the whole session
        self.metadata_cache = metadata_cache or AudioMetadataCache()

    def reset_state(self):
        """Clear accumulated state without closing sockets/context.

        Used by session-scoped test fixtures to reset between tests
        while keeping the server running.
        """
        self.metadata_cache.clear()
        self.last_waveform_ms = 0.0

    def _validate_token(self, message: dict) -> str | None:
        """Validate auth token. Returns error message or None if valid."""
        msg_token = message.get("_token")
        if msg_token != self.token:
            return "invalid or missing auth token"
        return None

    def _make_ping_response(self, msg_id: str | None) -> dict:
        return {
            "id": msg_id,
            "status": "alive",
            "uptime_s": round(time.time() - self.start_time, 1),
            "last_waveform_ms": self.last_waveform_ms,
            "cached_sources": len(self.metadata_cache),
        }

    def handle_message(self, message: dict) -> dict:
        cmd = message.get("cmd")
        msg_id = message.get("id")

        # Auth token required on all commands
        token_err = self._validate_token(message)
        if token_err:
            return {"id": msg_id, "ok": False, "error": token_err}

        if cmd == "ping":
            return self._make_ping_response(msg_id)
        elif cmd == "shutdown":
            self.running = False
            return {"id": msg_id, "ok": True}
        elif cmd == "audio_metadata":
            return self._handle_audio_metadata(message, msg_id)
        elif cmd == "resolve_range":
            return self._handle_resolve_range(message, msg_id)
        elif cmd == "waveform":
            return self._handle_waveform(message, msg_id)
        elif cmd == "envelope":
            return self._handle_envelope(message, msg_id)
        elif cmd == "cache_invalidate":
            return self._handle_cache_invalidate(message, msg_id)
        else:
            return {"id": msg_id, "ok": False, "error": f"unknown: {cmd}"}

    def _handle_audio_metadata(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}

        # SEC-1: Validate path
        errors = validate_source(path)
        fps = message.get("fps")
        if fps is not None:
            errors += validate_fps(fps)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        try:
            future = self.metadata_cache.get(path)
            try:
                metadata = future.result(timeout=_timeout(message))
            except (FutureTimeoutError, CancelledError):
                return {"id": msg_id, "ok": True, "state": WaveformState.LOADING.value}
            except DecodeError as e:
                logger.error("Could not load audio metadata for %s: %s", path, e)
                return {"id": msg_id, "ok": False, "error": str(e)}

            response = {
                "id": msg_id,
                "ok": True,
                "state": WaveformState.READY.value,
                "sample_rate": metadata.sample_rate,
                "channels": metadata.number_of_channels,
                "duration_s": round(metadata.duration_s, 6),
                "num_samples": metadata.num_samples,
                "peak": metadata.peak,
            }
            if fps is not None:
                response["max_media_duration"] = max_media_duration(
                    metadata.duration_s, fps
                )
            return response
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Audio metadata handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_resolve_range(self, message: dict, msg_id: str | None) -> dict:
        frame_range = resolve_range(
            message.get("start_from", 0),
            message.get("duration"),
            message.get("total_frames"),
        )
        return {"id": msg_id, "ok": True, **frame_range.to_dict()}

    def _handle_waveform(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        fps = message.get("fps")
        width = message.get("visualization_width")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}
        if fps is None:
            return {"id": msg_id, "ok": False, "error": "missing fps"}
        if width is None:
            return {"id": msg_id, "ok": False, "error": "missing visualization_width"}

        # SEC-1 / SEC-2
        errors = validate_source(path) + validate_fps(fps) + validate_visualization_width(width)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        start_from = message.get("start_from", 0)
        duration = message.get("duration")
        frame_range = resolve_range(start_from, duration)
        response = {
            "id": msg_id,
            "ok": True,
            "bars": [],
            "max_media_duration": None,
            **frame_range.to_dict(),
        }

        try:
            future = self.metadata_cache.get(path)
            try:
                metadata = future.result(timeout=_timeout(message))
            except (FutureTimeoutError, CancelledError):
                response["state"] = WaveformState.LOADING.value
                return response
            except DecodeError as e:
                # Decode failures leave the waveform empty, they never fail the request
                logger.error("Could not load waveform for %s: %s", path, e)
                response["state"] = WaveformState.FAILED.value
                response["error"] = str(e)
                return response

            t0 = time.time()
            total_frames = max_media_duration(metadata.duration_s, fps)
            frame_range = resolve_range(start_from, duration, total_frames)
            bars = compute_bars(metadata, frame_range, fps, width)
            self.last_waveform_ms = round((time.time() - t0) * 1000, 2)

            response.update(frame_range.to_dict())
            response["state"] = WaveformState.READY.value
            response["max_media_duration"] = total_frames
            response["bars"] = [bar.amplitude for bar in bars]
            return response
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Waveform handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_envelope(self, message: dict, msg_id: str | None) -> dict:
        if "volume" not in message:
            return {"id": msg_id, "ok": False, "error": "missing volume"}
        width = message.get("visualization_width")
        if width is None:
            return {"id": msg_id, "ok": False, "error": "missing visualization_width"}

        volume = message["volume"]
        height = message.get("height", TIMELINE_LAYER_HEIGHT)
        errors = (
            validate_volume(volume)
            + validate_visualization_width(width)
            + validate_height(height)
        )
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        try:
            points = compute_envelope(volume, width, float(height))
            return {
                "id": msg_id,
                "ok": True,
                "points": None if points is None else [p.to_list() for p in points],
            }
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Envelope handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_cache_invalidate(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}
        return {
            "id": msg_id,
            "ok": True,
            "invalidated": self.metadata_cache.invalidate(path),
        }

    def run(self):
        self.running = True
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.ping_socket, zmq.POLLIN)
        while self.running:
            events = dict(poller.poll(timeout=500))

            # Handle ping socket first (lightweight, never blocked)
            if self.ping_socket in events:
                try:
                    raw = self.ping_socket.recv()
                    message = json.loads(raw)
                    msg_id = message.get("id")
                    token_err = self._validate_token(message)
                    if token_err:
                        self.ping_socket.send_json(
                            {"id": msg_id, "ok": False, "error": token_err}
                        )
                    else:
                        self.ping_socket.send_json(self._make_ping_response(msg_id))
                except (json.JSONDecodeError, AttributeError):
                    self.ping_socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                except zmq.ZMQError:
                    logger.error("ZMQ error on ping socket")
                    break  # socket state is unrecoverable

            # Handle main command socket
            if self.socket in events:
                try:
                    raw = self.socket.recv()
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    # MUST send reply before next recv (REP protocol)
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue
                except zmq.ZMQError:
                    logger.error("ZMQ error on main socket")
                    break

                if not isinstance(message, dict):
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue

                try:
                    response = self.handle_message(message)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled handler error: %s", type(e).__name__)
                    response = {"ok": False, "error": "Internal processing error"}

                self.socket.send_json(response)
        self.close()

    def close(self):
        self.metadata_cache.close()
        self.ping_socket.close()
        self.socket.close()
        self.context.term()
