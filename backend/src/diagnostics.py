"""Sidecar diagnostics under ~/.clipwave.

- logs/sidecar.log: JSON lines, rotated by size
- logs/sidecar_fault.log: faulthandler output for crashes inside PyAV/numpy
- crash_reports/: one scrubbed JSON dump per unhandled exception
"""

import datetime
import faulthandler
import json
import logging
import logging.handlers
import os
import sys
import traceback
from pathlib import Path

from _version import __version__
from security import strip_pii

logger = logging.getLogger(__name__)

APP_HOME = "~/.clipwave"

MAX_CRASH_REPORTS = 5
LOG_MAX_BYTES = 10_000_000
LOG_BACKUPS = 7


def app_path(*parts: str) -> str:
    return os.path.join(os.path.expanduser(APP_HOME), *parts)


def _validate_log_dir(env_dir: str) -> str:
    """APP_LOG_DIR if it resolves inside ~/.clipwave, else the default log dir."""
    default = app_path("logs")
    if not env_dir:
        return default
    resolved = os.path.realpath(env_dir)
    allowed = os.path.realpath(app_path())
    if resolved != allowed and not resolved.startswith(allowed + os.sep):
        logger.warning("APP_LOG_DIR outside %s, using %s", APP_HOME, default)
        return default
    return resolved


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    A record logged with extra={"source": ...} carries the media source it
    concerns, so decode problems can be grepped per file.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.datetime.fromtimestamp(
                record.created, tz=datetime.timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        source = getattr(record, "source", None)
        if source is not None:
            entry["source"] = source
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry)


def _cleanup_old_crash_reports(crash_dir: str):
    """Keep only the newest MAX_CRASH_REPORTS crash files."""
    try:
        reports = sorted(
            Path(crash_dir).glob("crash_*.json"),
            key=lambda f: f.stat().st_mtime,
            reverse=True,
        )
        for stale in reports[MAX_CRASH_REPORTS:]:
            stale.unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not prune crash reports in %s", crash_dir)


def setup_structured_logging(log_dir: str | None = None) -> str:
    """Attach the rotating JSON handler to the root logger. Returns the log dir."""
    resolved_dir = _validate_log_dir(log_dir or os.environ.get("APP_LOG_DIR", ""))
    os.makedirs(resolved_dir, mode=0o700, exist_ok=True)
    log_path = os.path.join(resolved_dir, "sidecar.log")

    root = logging.getLogger()
    level = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    root.setLevel(getattr(logging, level, logging.INFO))

    for existing in root.handlers:
        if getattr(existing, "baseFilename", None) == os.path.abspath(log_path):
            return resolved_dir

    handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS
    )
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    return resolved_dir


def setup_faulthandler(log_dir: str):
    """Dump all thread stacks on a fatal signal.

    Writes to its own file: rotation of sidecar.log would close the
    descriptor faulthandler holds.
    """
    fault_path = os.path.join(log_dir, "sidecar_fault.log")
    try:
        fault_file = open(fault_path, "a", buffering=1)  # noqa: SIM115
        os.chmod(fault_path, 0o600)
        faulthandler.enable(file=fault_file, all_threads=True)
    except OSError as e:
        logger.warning("Could not enable faulthandler: %s", e)


def _write_crash_report(crash_dir: str, exc_type, exc_value, exc_tb) -> str:
    """Write one PII-scrubbed crash dump. Returns its path."""
    os.makedirs(crash_dir, mode=0o700, exist_ok=True)

    timestamp = datetime.datetime.now(tz=datetime.timezone.utc).strftime(
        "%Y%m%dT%H%M%S%fZ"
    )
    crash_path = os.path.join(crash_dir, f"crash_{timestamp}.json")

    report = {
        "timestamp": timestamp,
        "version": __version__,
        "exception_type": exc_type.__name__ if exc_type else "Unknown",
        "exception_message": str(exc_value),
        "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
        "python_version": sys.version,
        "platform": sys.platform,
    }
    # strip_pii scrubs Sentry events; the report rides in "extra"
    report = strip_pii({"extra": report}, {})["extra"]

    old_umask = os.umask(0o077)
    try:
        with open(crash_path, "w") as f:
            json.dump(report, f, indent=2)
    finally:
        os.umask(old_umask)

    _cleanup_old_crash_reports(crash_dir)
    return crash_path


def setup_excepthook(crash_dir: str | None = None):
    """Install a sys.excepthook that writes a crash dump, then chains to the default."""
    crash_dir = crash_dir or app_path("crash_reports")

    def _crash_excepthook(exc_type, exc_value, exc_tb):
        try:
            _write_crash_report(crash_dir, exc_type, exc_value, exc_tb)
        except Exception:
            logger.error("Could not write crash report", exc_info=True)
        sys.__excepthook__(exc_type, exc_value, exc_tb)

    sys.excepthook = _crash_excepthook


def init_diagnostics() -> str:
    """Set up logging, faulthandler and the crash hook. Returns the log dir."""
    log_dir = setup_structured_logging()
    setup_faulthandler(log_dir)
    setup_excepthook()
    logger.info("Diagnostics initialized in %s", log_dir)
    return log_dir
