"""Target generation."""

from .interpolator import InterpolationSegment, TargetInterpolator, segment_duration

__all__ = ["InterpolationSegment", "TargetInterpolator", "segment_duration"]
