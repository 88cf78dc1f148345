"""
Type definitions shared across dlsik.

Poses are immutable snapshots: every producer (kinematics service,
interpolator, marker feedback) hands out a fresh instance, so readers on
other threads can never observe a partially updated value.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Sequence


class WaypointId(IntEnum):
    """Round-trip waypoint ids."""

    A = 1
    B = 2

    def other(self) -> WaypointId:
        return WaypointId.B if self is WaypointId.A else WaypointId.A


@dataclass(slots=True, frozen=True)
class Pose:
    """Position (m) and unit quaternion orientation stored as (x, y, z, w)."""

    position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    orientation: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)

    @classmethod
    def from_sequences(
        cls, position: Sequence[float], orientation: Sequence[float]
    ) -> Pose:
        """Build from any sequences (lists, ndarrays). Does not normalize."""
        if len(position) != 3:
            raise ValueError(f"position needs 3 values, got {len(position)}")
        if len(orientation) != 4:
            raise ValueError(f"orientation needs 4 values, got {len(orientation)}")
        px, py, pz = (float(v) for v in position)
        qx, qy, qz, qw = (float(v) for v in orientation)
        return cls((px, py, pz), (qx, qy, qz, qw))

    @classmethod
    def identity(cls) -> Pose:
        return cls()

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in self.position + self.orientation)

    def normalized(self) -> Pose:
        """Return a copy with a unit quaternion.

        Raises:
            ValueError: If the quaternion is zero or not finite
        """
        norm = math.sqrt(sum(v * v for v in self.orientation))
        if not math.isfinite(norm) or norm < 1e-12:
            raise ValueError(f"Invalid orientation quaternion {self.orientation}")
        qx, qy, qz, qw = (v / norm for v in self.orientation)
        return Pose(self.position, (qx, qy, qz, qw))

    def format(self, precision: int = 2) -> str:
        """Human-readable 'XYZ(...) XYZW(...)' string for logs."""
        p = ", ".join(f"{v:.{precision}f}" for v in self.position)
        q = ", ".join(f"{v:.{precision}f}" for v in self.orientation)
        return f"XYZ({p}) XYZW({q})"
