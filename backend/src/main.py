"""Sidecar entry point: telemetry, resource limits, decode pool, ZMQ server."""

import logging
import os
import platform
from pathlib import Path

import sentry_sdk

from _version import __version__
from audio.provider import AudioMetadataCache
from diagnostics import APP_HOME, init_diagnostics
from security import strip_pii
from zmq_server import ZMQServer

logger = logging.getLogger(__name__)

# Decoded PCM for a long source is large; cap the whole process (POSIX only)
MAX_MEMORY_BYTES = 4 * 1024 * 1024 * 1024  # 4 GB

# Each worker holds one fully decoded source in memory while it runs
DEFAULT_DECODE_WORKERS = 2
MAX_DECODE_WORKERS = 8


def telemetry_dsn(consent_path: str | None = None) -> str:
    """Sentry DSN if the user opted in, else "" (Sentry stays disabled)."""
    consent = Path(consent_path or os.path.expanduser(f"{APP_HOME}/telemetry_consent"))
    try:
        opted_in = consent.read_text().strip() == "yes"
    except OSError:
        return ""
    return os.environ.get("SENTRY_DSN", "") if opted_in else ""


def init_sentry():
    sentry_sdk.init(
        dsn=telemetry_dsn(),
        release=f"clipwave@{__version__}",
        environment=os.environ.get("SENTRY_ENV", "development"),
        traces_sample_rate=0.1,
        before_send=strip_pii,
        max_breadcrumbs=50,
    )


def decode_workers() -> int:
    """Decode pool size from CLIPWAVE_DECODE_WORKERS, clamped to [1, MAX_DECODE_WORKERS]."""
    raw = os.environ.get("CLIPWAVE_DECODE_WORKERS", "")
    if not raw:
        return DEFAULT_DECODE_WORKERS
    try:
        workers = int(raw)
    except ValueError:
        logger.warning(
            "Ignoring CLIPWAVE_DECODE_WORKERS=%r, using %d", raw, DEFAULT_DECODE_WORKERS
        )
        return DEFAULT_DECODE_WORKERS
    return max(1, min(workers, MAX_DECODE_WORKERS))


def _apply_resource_limits() -> bool:
    """Cap the address space. Returns False where the limit cannot be set."""
    if platform.system() == "Windows":
        return False
    try:
        import resource

        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        resource.setrlimit(resource.RLIMIT_AS, (MAX_MEMORY_BYTES, hard))
    except (ImportError, ValueError, OSError):
        logger.warning("Could not set memory limit of %d bytes", MAX_MEMORY_BYTES)
        return False
    return True


def main():
    init_diagnostics()
    init_sentry()
    limited = _apply_resource_limits()

    workers = decode_workers()
    server = ZMQServer(metadata_cache=AudioMetadataCache(max_workers=workers))
    logger.info(
        "clipwave %s starting: decode_workers=%d memory_limit=%s",
        __version__,
        workers,
        MAX_MEMORY_BYTES if limited else "none",
    )

    # The editor reads these three lines from stdout to connect
    print(f"ZMQ_PORT={server.port}", flush=True)
    print(f"ZMQ_PING_PORT={server.ping_port}", flush=True)
    print(f"ZMQ_TOKEN={server.token}", flush=True)
    server.run()


if __name__ == "__main__":
    main()
