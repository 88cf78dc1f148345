"""
Round-trip target generation.

The interpolator produces a local target that moves continuously from the
current pose toward one waypoint, then turns around toward the other one once
it arrives. Position is interpolated linearly, orientation by slerp, and the
segment duration is picked so that neither the linear nor the angular speed
limit is exceeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation, Slerp

from dlsik.config import CLOSE_TOLERANCE
from dlsik.protocol.types import Pose, WaypointId
from dlsik.server.waypoints import WaypointStore
from dlsik.utils.se3_utils import angular_distance

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class InterpolationSegment:
    """One leg of the round trip."""

    from_pose: Pose
    to_pose: Pose
    start_time: float
    expected_duration: float
    destination: WaypointId


def segment_duration(
    from_pose: Pose, to_pose: Pose, max_linear_vel: float, max_angular_vel: float
) -> float:
    """Time needed for a segment so that neither speed limit is exceeded.

    Args:
        from_pose: Segment start
        to_pose: Segment end
        max_linear_vel: Linear speed limit (m/s)
        max_angular_vel: Angular speed limit (rad/s)

    Returns:
        max(distance / max_linear_vel, shortest rotation angle / max_angular_vel)
    """
    dist = float(
        np.linalg.norm(np.subtract(to_pose.position, from_pose.position))
    )
    angle = angular_distance(from_pose.orientation, to_pose.orientation)
    return max(dist / max_linear_vel, angle / max_angular_vel)


class TargetInterpolator:
    """Moving local target oscillating between two waypoints.

    The first segment always heads to waypoint A. Each time the local target
    is close to the segment destination, a new segment toward the other
    waypoint starts from the current pose.
    """

    def __init__(
        self,
        initial_pose: Pose,
        waypoints: WaypointStore,
        max_linear_vel: float,
        max_angular_vel: float,
        now: float,
        tolerance: float = CLOSE_TOLERANCE,
        wait_timeout: float | None = None,
    ):
        """
        Args:
            initial_pose: Starting local target (usually the current end-effector pose)
            waypoints: Shared waypoint store (read only)
            max_linear_vel: Linear speed limit (m/s)
            max_angular_vel: Angular speed limit (rad/s)
            now: Current time (s, monotonic)
            tolerance: Per-component arrival tolerance
            wait_timeout: How long to wait for the waypoints to be initialized

        Raises:
            ValueError: If a speed limit is not positive
            RuntimeError: If the waypoints are not initialized in time
        """
        if max_linear_vel <= 0.0 or max_angular_vel <= 0.0:
            raise ValueError("Interpolation speed limits must be positive")
        self._waypoints = waypoints
        self._max_linear_vel = float(max_linear_vel)
        self._max_angular_vel = float(max_angular_vel)
        self._tolerance = float(tolerance)
        self._pose = initial_pose.normalized()
        self.completed_segments = 0

        if not waypoints.is_initialized():
            logger.info("Waiting for waypoint markers initialization...")
            if not waypoints.wait_initialized(wait_timeout):
                raise RuntimeError("Waypoint markers were not initialized")

        self._reset(WaypointId.A, now)

    @property
    def current_pose(self) -> Pose:
        return self._pose

    @property
    def segment(self) -> InterpolationSegment:
        return self._segment

    @property
    def destination(self) -> WaypointId:
        return self._segment.destination

    def is_close(self) -> bool:
        """True if every position and quaternion component is within tolerance.

        q and -q describe the same orientation, so the quaternion matches if
        either sign is within tolerance.
        """
        tol = self._tolerance
        to = self._segment.to_pose
        p = np.subtract(self._pose.position, to.position)
        if np.any(np.abs(p) >= tol):
            return False
        q = np.asarray(self._pose.orientation)
        q_to = np.asarray(to.orientation)
        return bool(
            np.all(np.abs(q - q_to) < tol) or np.all(np.abs(q + q_to) < tol)
        )

    def advance(self, now: float) -> bool:
        """Move the local target to its position at time ``now``.

        Returns:
            True if a new segment was started on this call
        """
        started = False
        if self.is_close():
            self.completed_segments += 1
            self._reset(self._segment.destination.other(), now)
            started = True

        seg = self._segment
        if seg.expected_duration > 0.0:
            t = (now - seg.start_time) / seg.expected_duration
            t = min(1.0, max(0.0, t))
        else:
            t = 1.0

        if t >= 1.0:
            self._pose = seg.to_pose
            return started

        p0 = np.asarray(seg.from_pose.position)
        p1 = np.asarray(seg.to_pose.position)
        position = (p1 - p0) * t + p0
        orientation = self._slerp([t]).as_quat()[0]
        self._pose = Pose.from_sequences(position, orientation)
        return started

    def _reset(self, destination: WaypointId, now: float) -> None:
        to_pose = self._waypoints.get(destination).normalized()
        from_pose = self._pose
        duration = segment_duration(
            from_pose, to_pose, self._max_linear_vel, self._max_angular_vel
        )
        self._segment = InterpolationSegment(
            from_pose=from_pose,
            to_pose=to_pose,
            start_time=now,
            expected_duration=duration,
            destination=destination,
        )
        self._slerp = Slerp(
            [0.0, 1.0], Rotation.from_quat([from_pose.orientation, to_pose.orientation])
        )
        logger.debug(
            "Local target heading to waypoint %s over %.2fs: %s",
            destination.name,
            duration,
            to_pose.format(),
        )
