"""Frame range resolution for trimmed audio clips on the timeline."""

import math
import numbers
from dataclasses import dataclass


@dataclass(frozen=True)
class FrameRange:
    """Concrete slice of the source media in timeline frames.

    duration_in_frames of None means "until the end of the media"; the
    waveform engine clips it to the decoded length.
    """

    start_from: int
    duration_in_frames: int | None

    def end_frame(self, total_frames: int | None = None) -> int | None:
        """Exclusive end frame, clipped to total_frames when it is known."""
        if self.duration_in_frames is None:
            return total_frames
        end = self.start_from + self.duration_in_frames
        if total_frames is not None:
            end = min(end, total_frames)
        return end

    def to_dict(self) -> dict:
        return {
            "start_from": self.start_from,
            "duration_in_frames": self.duration_in_frames,
        }


def _is_finite_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    return math.isfinite(value)


def resolve_range(
    start_from: float | None = 0,
    duration_in_frames: float | None = None,
    total_frames: int | None = None,
) -> FrameRange:
    """Resolve editor-level trim values into a FrameRange. Never raises.

    - start_from < 0 counts back from the end of the media. Until
      total_frames is known it resolves to 0 and must be resolved again
      once the media length arrives.
    - duration_in_frames of None, inf or NaN is open-ended.
    - Finite durations are floored and clamped to at least one frame.

    Resolving an already resolved range returns it unchanged.
    """
    if _is_finite_number(total_frames):
        total_frames = max(0, math.floor(total_frames))
    else:
        total_frames = None

    if _is_finite_number(start_from):
        start = math.floor(start_from)
    else:
        start = 0
    if start < 0:
        start = max(0, total_frames + start) if total_frames is not None else 0

    if _is_finite_number(duration_in_frames):
        duration = max(1, math.floor(duration_in_frames))
    else:
        duration = None

    return FrameRange(start_from=start, duration_in_frames=duration)


def max_media_duration(duration_s: float, fps: float) -> int:
    """Length of the media in whole timeline frames."""
    if not _is_finite_number(duration_s) or not _is_finite_number(fps) or fps <= 0:
        return 0
    return max(0, math.floor(duration_s * fps))
