"""Static volume envelope overlay for timeline audio clips."""

import math
from dataclasses import dataclass

# Height of one timeline layer in pixels (bar area + envelope overlay)
TIMELINE_LAYER_HEIGHT = 75

# Pixels reserved below the lowest envelope point
ENVELOPE_BOTTOM_MARGIN = 2


@dataclass(frozen=True)
class ConstantVolume:
    """Volume given as a single number; it may change per frame, so nothing is drawn."""

    value: float


@dataclass(frozen=True)
class KeyframeVolume:
    """Gain envelope sampled at evenly spaced points across the clip."""

    values: tuple[float, ...]


Volume = ConstantVolume | KeyframeVolume


@dataclass(frozen=True)
class EnvelopePoint:
    x: float
    y: float

    def to_list(self) -> list[float]:
        return [self.x, self.y]


def _parse_keyframe(text: str) -> float:
    try:
        return float(text.strip())
    except ValueError:
        return math.nan


def parse_volume(volume) -> Volume:
    """Resolve a raw volume value from the editor into a Volume variant.

    Numbers become ConstantVolume. Strings are comma-separated keyframes;
    entries that do not parse become NaN and are skipped when drawing.
    Anything else is treated as full constant volume.
    """
    if isinstance(volume, (ConstantVolume, KeyframeVolume)):
        return volume
    if isinstance(volume, str):
        return KeyframeVolume(tuple(_parse_keyframe(part) for part in volume.split(",")))
    if isinstance(volume, (list, tuple)):
        values = []
        for v in volume:
            if isinstance(v, (int, float)) and not isinstance(v, bool):
                values.append(float(v))
            else:
                values.append(math.nan)
        return KeyframeVolume(tuple(values))
    if isinstance(volume, (int, float)) and not isinstance(volume, bool):
        return ConstantVolume(float(volume))
    return ConstantVolume(1.0)


def compute_envelope(
    volume,
    visualization_width: float,
    height: float = TIMELINE_LAYER_HEIGHT,
) -> list[EnvelopePoint] | None:
    """Polyline of the volume envelope, or None for a constant (dynamic) volume.

    Keyframe i of N sits at x = i / (N - 1) * width and
    y = (1 - gain) * (height - 2), so full gain touches the top edge.
    A single keyframe yields one point at x = 0. Gains are clamped to [0, 1].
    """
    parsed = parse_volume(volume)
    if isinstance(parsed, ConstantVolume):
        return None

    usable_height = height - ENVELOPE_BOTTOM_MARGIN
    count = len(parsed.values)
    points: list[EnvelopePoint] = []
    for index, gain in enumerate(parsed.values):
        if math.isnan(gain):
            continue
        gain = min(1.0, max(0.0, gain))
        x = 0.0 if count == 1 else index / (count - 1) * visualization_width
        points.append(EnvelopePoint(x=x, y=(1 - gain) * usable_height))
    return points
