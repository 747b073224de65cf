import shutil
import threading
import time
import uuid
from pathlib import Path

import av
import numpy as np
import pytest
import zmq

from zmq_server import ZMQServer

FIXTURE_DIR = Path.home() / ".cache" / "clipwave" / "test-fixtures"


def write_wav(path: str, channels: np.ndarray, sample_rate: int) -> str:
    """Encode planar float samples (channels, samples) as 16-bit PCM WAV."""
    layout = "mono" if channels.shape[0] == 1 else "stereo"
    container = av.open(path, mode="w")
    stream = container.add_stream("pcm_s16le", rate=sample_rate)
    stream.layout = layout

    pcm = np.clip(channels, -1.0, 1.0)
    frame_size = 1024
    for i in range(0, pcm.shape[1], frame_size):
        chunk = np.ascontiguousarray(pcm[:, i : i + frame_size], dtype=np.float32)
        af = av.AudioFrame.from_ndarray(chunk, format="fltp", layout=layout)
        af.sample_rate = sample_rate
        for pkt in stream.encode(af):
            container.mux(pkt)
    for pkt in stream.encode():
        container.mux(pkt)
    container.close()
    return path


def _fixture_path(prefix: str, ext: str) -> str:
    FIXTURE_DIR.mkdir(parents=True, exist_ok=True)
    return str(FIXTURE_DIR / f"{prefix}_{uuid.uuid4().hex[:8]}{ext}")


def _wait_for_server(srv: ZMQServer, timeout: float = 2.0) -> bool:
    """Ping the server until it responds or timeout expires."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 500)
    sock.connect(f"tcp://127.0.0.1:{srv.port}")
    deadline = time.monotonic() + timeout
    alive = False
    while time.monotonic() < deadline:
        try:
            sock.send_json({"cmd": "ping", "id": "health", "_token": srv.token})
            resp = sock.recv_json()
            if resp.get("status") == "alive":
                alive = True
                break
        except zmq.Again:
            time.sleep(0.05)
    sock.close()
    ctx.term()
    return alive


@pytest.fixture(scope="session")
def _zmq_server_session():
    """Start ONE ZMQ server per xdist worker (session-scoped)."""
    srv = ZMQServer()
    thread = threading.Thread(target=srv.run, daemon=True)
    thread.start()
    if not _wait_for_server(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    # Wait for poller timeout cycle to complete
    time.sleep(0.6)


@pytest.fixture
def zmq_server(_zmq_server_session):
    """Function-scoped wrapper: resets state between tests, shares session server."""
    _zmq_server_session.reset_state()
    _zmq_server_session.running = True
    yield _zmq_server_session


class AuthenticatedZmqClient:
    """Wraps a ZMQ REQ socket and auto-injects the auth token."""

    def __init__(self, sock: zmq.Socket, token: str):
        self._sock = sock
        self._token = token

    def send_json(self, msg: dict) -> None:
        msg["_token"] = self._token
        self._sock.send_json(msg)

    def recv_json(self) -> dict:
        return self._sock.recv_json()

    def request(self, msg: dict) -> dict:
        msg.setdefault("id", str(uuid.uuid4()))
        self.send_json(msg)
        return self.recv_json()

    def close(self) -> None:
        self._sock.close()


@pytest.fixture
def zmq_client(zmq_server):
    """REQ socket connected to the test server (auto-injects auth token)."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    client = AuthenticatedZmqClient(sock, zmq_server.token)
    yield client
    sock.close()
    ctx.term()


@pytest.fixture
def zmq_ping_client(zmq_server):
    """REQ socket connected to the test server's ping port."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.ping_port}")
    client = AuthenticatedZmqClient(sock, zmq_server.token)
    yield client
    sock.close()
    ctx.term()


@pytest.fixture(scope="session")
def stereo_wav_path():
    """2s stereo WAV at 44.1kHz under ~/ (required by validate_source).

    Left channel: 440Hz sine at 0.5. Right channel: silence, except a
    single 0.9 spike at exactly 1.5s.
    """
    sample_rate = 44100
    total = sample_rate * 2
    t = np.arange(total, dtype=np.float32) / sample_rate
    left = (np.sin(2 * np.pi * 440 * t) * 0.5).astype(np.float32)
    right = np.zeros(total, dtype=np.float32)
    right[int(1.5 * sample_rate)] = 0.9
    path = write_wav(_fixture_path("test_stereo", ".wav"), np.stack([left, right]), sample_rate)
    yield path
    Path(path).unlink(missing_ok=True)


@pytest.fixture(scope="session")
def mono_wav_path():
    """1s mono WAV at 8kHz: constant 0.25 for the first half, silence after."""
    sample_rate = 8000
    samples = np.zeros((1, sample_rate), dtype=np.float32)
    samples[0, : sample_rate // 2] = 0.25
    path = write_wav(_fixture_path("test_mono", ".wav"), samples, sample_rate)
    yield path
    Path(path).unlink(missing_ok=True)


@pytest.fixture(scope="session")
def video_only_path():
    """Synthetic MP4 with a video stream and no audio."""
    path = _fixture_path("test_vo", ".mp4")
    container = av.open(path, mode="w")
    v_stream = container.add_stream("libx264", rate=30)
    v_stream.width = 320
    v_stream.height = 240
    v_stream.pix_fmt = "yuv420p"
    for _ in range(30):
        frame = np.zeros((240, 320, 3), dtype=np.uint8)
        frame[:, :, 1] = 128
        vf = av.VideoFrame.from_ndarray(frame, format="rgb24")
        for pkt in v_stream.encode(vf):
            container.mux(pkt)
    for pkt in v_stream.encode():
        container.mux(pkt)
    container.close()
    yield path
    Path(path).unlink(missing_ok=True)


@pytest.fixture
def home_tmp_path():
    """tmp_path equivalent under ~/ for tests that go through validate_source."""
    base = Path.home() / ".cache" / "clipwave" / "test-tmp"
    base.mkdir(parents=True, exist_ok=True)
    d = base / f"test_{uuid.uuid4().hex[:8]}"
    d.mkdir()
    yield d
    shutil.rmtree(d, ignore_errors=True)
