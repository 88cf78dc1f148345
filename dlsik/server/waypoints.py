"""Thread-safe storage for the two round-trip waypoints."""

from __future__ import annotations

import logging
import threading

from dlsik.protocol.types import Pose, WaypointId

logger = logging.getLogger(__name__)


class WaypointStore:
    """
    Mutex-guarded pair of waypoint poses.

    Written by the marker-feedback thread, read by the control loop. Poses are
    immutable, so a read is a reference swap under the lock and a reader can
    never see a half-written pose.
    """

    __slots__ = ("_lock", "_poses", "_versions", "_initialized")

    def __init__(self, initial: Pose | None = None):
        self._lock = threading.Lock()
        self._poses: dict[WaypointId, Pose] = {}
        self._versions: dict[WaypointId, int] = {WaypointId.A: 0, WaypointId.B: 0}
        self._initialized = threading.Event()
        if initial is not None:
            self.initialize(initial, initial)

    def initialize(self, pose_a: Pose, pose_b: Pose) -> None:
        """Set both waypoints and release anyone blocked in wait_initialized()."""
        with self._lock:
            self._poses[WaypointId.A] = pose_a
            self._poses[WaypointId.B] = pose_b
        self._initialized.set()

    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    def wait_initialized(self, timeout: float | None = None) -> bool:
        """Block until both waypoints exist. Returns False on timeout."""
        return self._initialized.wait(timeout)

    def get(self, waypoint: WaypointId) -> Pose:
        """Snapshot of one waypoint.

        Raises:
            RuntimeError: If the store has not been initialized
        """
        with self._lock:
            try:
                return self._poses[waypoint]
            except KeyError:
                raise RuntimeError("Waypoints not initialized") from None

    def snapshot(self) -> tuple[Pose, Pose]:
        """Both waypoints read under a single lock acquisition."""
        with self._lock:
            if len(self._poses) < 2:
                raise RuntimeError("Waypoints not initialized")
            return self._poses[WaypointId.A], self._poses[WaypointId.B]

    def set(self, waypoint: WaypointId, pose: Pose) -> None:
        if not pose.is_finite():
            raise ValueError(f"Refusing non-finite pose for waypoint {waypoint.name}")
        with self._lock:
            self._poses[waypoint] = pose
            self._versions[waypoint] += 1

    def version(self, waypoint: WaypointId) -> int:
        """Number of updates applied to a waypoint since construction."""
        with self._lock:
            return self._versions[waypoint]
