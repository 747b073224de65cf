"""Security validation gates for the clipwave sidecar."""

import json
import math
import os
import re
from pathlib import Path

# SEC-1: Source validation
MAX_SOURCE_SIZE = 500 * 1024 * 1024  # 500 MB
ALLOWED_EXTENSIONS = {
    ".wav",
    ".mp3",
    ".aac",
    ".m4a",
    ".flac",
    ".ogg",
    ".opus",
    ".mp4",
    ".mov",
    ".mkv",
    ".webm",
}

# SEC-2: Render caps
MAX_VISUALIZATION_WIDTH = 16384
MIN_FPS = 1.0
MAX_FPS = 240.0
MAX_LAYER_HEIGHT = 4096

# SEC-3: Envelope keyframe cap
MAX_KEYFRAMES = 10_000


def validate_source(path: str) -> list[str]:
    """Validate an audio source path. Returns list of errors (empty = valid).

    Checks (SEC-1):
    - Resolved path under user home
    - File exists
    - Not a symlink
    - Extension in whitelist
    - File size <= 500 MB
    - Filename is safe (no path traversal)
    """
    errors: list[str] = []
    p = Path(path)

    # Path traversal check: resolved path must be under user home
    resolved = str(p.resolve())
    if not resolved.startswith(str(Path.home())):
        errors.append("Path must be within user home directory")
        return errors

    if not p.exists():
        errors.append(f"File not found: {path}")
        return errors

    if p.is_symlink():
        errors.append("Symlinks are not allowed")
        return errors

    ext = p.suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        errors.append(
            f"Extension '{ext}' not allowed. Allowed: {sorted(ALLOWED_EXTENSIONS)}"
        )

    size = p.stat().st_size
    if size > MAX_SOURCE_SIZE:
        size_mb = size / (1024 * 1024)
        errors.append(
            f"File too large: {size_mb:.1f} MB (max {MAX_SOURCE_SIZE // (1024 * 1024)} MB)"
        )

    name = p.name
    if ".." in name or "/" in name or "\\" in name or "\x00" in name:
        errors.append(f"Unsafe filename: {name}")

    return errors


def validate_visualization_width(width) -> list[str]:
    """Validate a bar count against SEC-2. Returns list of errors."""
    errors: list[str] = []
    if isinstance(width, bool) or not isinstance(width, int):
        errors.append("visualization_width must be an integer")
    elif width < 1 or width > MAX_VISUALIZATION_WIDTH:
        errors.append(
            f"visualization_width {width} outside [1, {MAX_VISUALIZATION_WIDTH}] (SEC-2)"
        )
    return errors


def validate_fps(fps) -> list[str]:
    """Validate a timeline frame rate against SEC-2. Returns list of errors."""
    errors: list[str] = []
    if isinstance(fps, bool) or not isinstance(fps, (int, float)) or not math.isfinite(fps):
        errors.append("fps must be a finite number")
    elif fps < MIN_FPS or fps > MAX_FPS:
        errors.append(f"fps {fps} outside [{MIN_FPS}, {MAX_FPS}] (SEC-2)")
    return errors


def validate_height(height) -> list[str]:
    """Validate an envelope layer height in pixels against SEC-2."""
    errors: list[str] = []
    if isinstance(height, bool) or not isinstance(height, (int, float)):
        errors.append("height must be a finite number")
    elif not math.isfinite(height):
        errors.append("height must be a finite number")
    elif height < 1 or height > MAX_LAYER_HEIGHT:
        errors.append(f"height {height} outside [1, {MAX_LAYER_HEIGHT}] (SEC-2)")
    return errors


def validate_volume(volume) -> list[str]:
    """Validate a volume value against SEC-3. Returns list of errors."""
    errors: list[str] = []
    if isinstance(volume, str):
        count = volume.count(",") + 1
        if count > MAX_KEYFRAMES:
            errors.append(f"Volume has {count} keyframes, maximum {MAX_KEYFRAMES} (SEC-3)")
    elif isinstance(volume, bool) or not isinstance(volume, (int, float)):
        errors.append("volume must be a number or a comma-separated string")
    return errors


# --- PII stripping for Sentry and crash dumps ---

_HOME = os.path.expanduser("~")
_USERNAME = os.path.basename(_HOME)
_PATH_PATTERN = re.compile(r"/Users/[^/\s]+|/home/[^/\s]+|C:\\Users\\[^\\\s]+")
_SENSITIVE_KEYS = {"_token", "token", "auth", "key", "secret", "password", "dsn"}


def _scrub_dict(d: dict):
    """Redact values for keys that look sensitive."""
    for key in list(d.keys()):
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            d[key] = "<REDACTED>"


def strip_pii(event: dict, hint: dict) -> dict:
    """Sentry before_send hook. Strips file paths and auth tokens.

    Also usable for crash dump sanitization.
    """
    event_str = json.dumps(event)
    event_str = event_str.replace(_HOME, "<HOME>")
    if _USERNAME:
        event_str = event_str.replace(_USERNAME, "<USER>")
    event_str = _PATH_PATTERN.sub("<REDACTED_PATH>", event_str)
    event = json.loads(event_str)

    _scrub_dict(event.get("extra", {}))
    for ctx in event.get("contexts", {}).values():
        if isinstance(ctx, dict):
            _scrub_dict(ctx)
    return event
