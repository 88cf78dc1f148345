"""Unit tests for dlsik.motion.interpolator."""

import logging
import math

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from dlsik.motion.interpolator import TargetInterpolator, segment_duration
from dlsik.protocol.types import Pose, WaypointId
from dlsik.server.waypoints import WaypointStore
from dlsik.utils.se3_utils import angular_distance

pytestmark = pytest.mark.unit

START = Pose.identity()
POSE_A = Pose.from_sequences(
    [0.1, 0.0, 0.0], Rotation.from_euler("z", 30, degrees=True).as_quat()
)
POSE_B = Pose.from_sequences([0.0, 0.2, 0.1], [0.0, 0.0, 0.0, 1.0])


def _store(a: Pose = POSE_A, b: Pose = POSE_B) -> WaypointStore:
    store = WaypointStore()
    store.initialize(a, b)
    return store


class TestSegmentDuration:
    def test_linear_limited(self):
        """1 m at 0.02 m/s takes 50 s."""
        to = Pose.from_sequences([1.0, 0.0, 0.0], [0, 0, 0, 1])
        assert segment_duration(START, to, 0.02, math.radians(10)) == pytest.approx(50.0)

    def test_angular_limited(self):
        """90 deg at 10 deg/s takes 9 s."""
        to = Pose.from_sequences(
            [0.0, 0.0, 0.0], Rotation.from_euler("y", 90, degrees=True).as_quat()
        )
        assert segment_duration(START, to, 0.02, math.radians(10)) == pytest.approx(9.0)

    def test_larger_limit_wins(self):
        to = Pose.from_sequences(
            [0.1, 0.0, 0.0], Rotation.from_euler("y", 90, degrees=True).as_quat()
        )
        # 5 s linear vs 9 s angular
        assert segment_duration(START, to, 0.02, math.radians(10)) == pytest.approx(9.0)


class TestTargetInterpolator:
    def test_first_destination_is_a(self):
        interp = TargetInterpolator(START, _store(), 0.02, math.radians(10), now=0.0)
        assert interp.destination is WaypointId.A
        assert interp.segment.start_time == 0.0
        assert interp.segment.to_pose == POSE_A.normalized()

    def test_midpoint(self):
        interp = TargetInterpolator(START, _store(), 0.02, math.radians(10), now=0.0)
        duration = interp.segment.expected_duration
        assert interp.advance(duration / 2) is False
        pose = interp.current_pose
        assert np.allclose(pose.position, [0.05, 0.0, 0.0])
        expected = Rotation.from_euler("z", 15, degrees=True).as_quat()
        assert angular_distance(pose.orientation, expected) < 1e-9

    def test_end_of_segment_is_exact(self):
        interp = TargetInterpolator(START, _store(), 0.02, math.radians(10), now=0.0)
        interp.advance(1e6)
        assert interp.current_pose == POSE_A.normalized()

    def test_before_start_clamps_to_from(self):
        interp = TargetInterpolator(START, _store(), 0.02, math.radians(10), now=10.0)
        interp.advance(5.0)
        assert np.allclose(interp.current_pose.position, START.position)

    def test_same_pose_is_close_and_switches(self):
        """from == to: close immediately, next advance switches to B."""
        interp = TargetInterpolator(
            POSE_A, _store(), 0.02, math.radians(10), now=0.0
        )
        assert interp.segment.expected_duration == 0.0
        assert interp.is_close()
        assert interp.advance(0.0) is True
        assert interp.destination is WaypointId.B
        assert interp.completed_segments == 1

    def test_destinations_alternate(self):
        interp = TargetInterpolator(START, _store(), 0.02, math.radians(10), now=0.0)
        seen = [interp.destination]
        now = 0.0
        for _ in range(20):
            now += 1000.0
            if interp.advance(now):
                seen.append(interp.destination)
        assert len(seen) >= 5
        for i, dest in enumerate(seen):
            assert dest is (WaypointId.A if i % 2 == 0 else WaypointId.B)

    def test_negated_quaternion_counts_as_close(self):
        """q and -q are the same orientation; the target must not stall."""
        flipped = Pose(START.position, (0.0, 0.0, 0.0, -1.0))
        interp = TargetInterpolator(
            START, _store(a=flipped), 0.02, math.radians(10), now=0.0
        )
        assert interp.is_close()

    def test_new_segment_starts_from_current_pose(self):
        interp = TargetInterpolator(START, _store(), 0.02, math.radians(10), now=0.0)
        interp.advance(1e6)
        interp.advance(2e6)
        seg = interp.segment
        assert seg.destination is WaypointId.B
        assert seg.from_pose == POSE_A.normalized()
        assert seg.start_time == 2e6

    def test_reads_waypoint_when_segment_starts(self):
        store = _store()
        interp = TargetInterpolator(START, store, 0.02, math.radians(10), now=0.0)
        moved = Pose.from_sequences([0.0, -0.3, 0.0], [0, 0, 0, 1])
        store.set(WaypointId.B, moved)
        interp.advance(1e6)
        interp.advance(2e6)
        assert interp.segment.to_pose == moved

    def test_rejects_non_positive_speed(self):
        with pytest.raises(ValueError):
            TargetInterpolator(START, _store(), 0.0, 1.0, now=0.0)

    def test_uninitialized_store_times_out(self):
        with pytest.raises(RuntimeError):
            TargetInterpolator(
                START, WaypointStore(), 0.02, 1.0, now=0.0, wait_timeout=0.01
            )

    def test_parked_target_switches_without_info_logs(self, caplog):
        """Waypoints at the current pose switch every call; that stays below INFO."""
        interp = TargetInterpolator(
            START, _store(START, START), 0.02, math.radians(10), now=0.0
        )
        with caplog.at_level(logging.DEBUG, logger="dlsik.motion.interpolator"):
            for i in range(100):
                assert interp.advance(float(i)) is True
        assert interp.completed_segments == 100
        assert not [r for r in caplog.records if r.levelno >= logging.INFO]
        assert any(r.levelno == logging.DEBUG for r in caplog.records)
