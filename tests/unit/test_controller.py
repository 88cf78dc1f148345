"""Unit tests for dlsik.server.controller.IKController with fake kinematics."""

import math

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from dlsik.config import CLOSE_TOLERANCE
from dlsik.protocol.types import Pose, WaypointId
from dlsik.server.controller import ControlLoopFault, IKController, _clamp_integrate
from dlsik.server.waypoints import WaypointStore
from dlsik.utils.pinv import damped_pinv
from dlsik.utils.se3_utils import exp_map, pose_to_matrix

pytestmark = pytest.mark.unit

GOAL = Pose.from_sequences([0.05, -0.02, 0.01], [0.0, 0.0, 0.0, 1.0])
# Rotated and offset from the origin so body and spatial twists differ
EEF_OFFSET = Pose.from_sequences(
    [0.3, -0.1, 0.4], Rotation.from_euler("xyz", [20, -35, 60], degrees=True).as_quat()
)
GOAL_OFFSET = Pose.from_sequences(
    [0.25, 0.05, 0.45], Rotation.from_euler("xyz", [-10, 15, 80], degrees=True).as_quat()
)


def _controller(config, kinematics, clock, goal=GOAL, **kwargs):
    store = WaypointStore()
    store.initialize(goal, goal)
    return IKController(config, kinematics, waypoints=store, clock=clock, **kwargs)


class TestClamp:
    def test_componentwise_and_sign_preserving(self):
        limit = math.radians(1.0)
        q = np.zeros(4)
        dq = np.array([0.1, -0.1, 0.001, -0.001])
        _clamp_integrate(q, dq, limit)
        assert np.allclose(dq, [limit, -limit, 0.001, -0.001])
        assert np.allclose(q, dq)

    def test_identity_jacobian_no_damping(self):
        """J = I, lambda = 0: dq equals the twist before clamping."""
        twist = np.array([0.0, 0.0, 0.0, 0.1, 0.0, 0.0])
        dq = damped_pinv(np.eye(6), lam=0.0) @ twist
        assert np.allclose(dq, twist)
        q = np.zeros(6)
        _clamp_integrate(q, dq, math.radians(1.0))
        assert q[3] == pytest.approx(math.radians(1.0))
        assert np.count_nonzero(q) == 1


class TestErrorTwist:
    def test_pure_translation_twist(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        twist = ctl.error_twist(Pose.identity(), GOAL)
        assert np.allclose(twist, [0, 0, 0, 0.05, -0.02, 0.01])

    def test_zero_for_identical_poses(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        assert np.allclose(ctl.error_twist(GOAL, GOAL), 0.0)

    def test_spatial_twist_from_rotated_offset_pose(self, fast_config, fake_kinematics, clock):
        """exp(twist) applied on the left carries the end effector onto the target."""
        ctl = _controller(fast_config, fake_kinematics, clock)
        twist = ctl.error_twist(EEF_OFFSET, GOAL_OFFSET)
        moved = exp_map(twist) @ pose_to_matrix(EEF_OFFSET)
        assert np.allclose(moved, pose_to_matrix(GOAL_OFFSET), atol=1e-8)


class TestTick:
    def test_converges_to_waypoint(self, fast_config, fake_kinematics, clock, publisher):
        ctl = _controller(fast_config, fake_kinematics, clock, publisher=publisher)
        for _ in range(200):
            clock.advance(0.01)
            ctl.tick()
        eef = fake_kinematics.forward_kinematics(ctl.q)
        # The local target parks once it is within tolerance of the waypoint
        target = ctl.interpolator.current_pose
        assert np.allclose(eef.position, target.position, atol=1e-6)
        assert np.allclose(pose_to_matrix(eef), pose_to_matrix(target), atol=1e-6)
        assert np.all(np.abs(np.subtract(eef.position, GOAL.position)) < CLOSE_TOLERANCE)
        assert len(publisher.frames) == 200
        assert publisher.frames[-1]["joint_names"][0] == "joint_1"

    def test_single_tick_reaches_rotated_offset_target(
        self, fast_config, fake_kinematics, clock
    ):
        """Undamped, unclamped tick on J = I lands exactly on the target."""
        config = fast_config.replace(damping=0.0, max_joint_step_deg=1000.0)
        fake_kinematics.T = pose_to_matrix(EEF_OFFSET)
        ctl = _controller(config, fake_kinematics, clock, goal=GOAL_OFFSET)
        clock.advance(10.0)
        ctl.tick()
        assert ctl.interpolator.current_pose == GOAL_OFFSET.normalized()
        assert np.allclose(fake_kinematics.T, pose_to_matrix(GOAL_OFFSET), atol=1e-8)

    def test_step_is_clamped(self, fast_config, fake_kinematics, clock):
        far = Pose.from_sequences([1.0, 0.0, 0.0], [0, 0, 0, 1])
        ctl = _controller(fast_config, fake_kinematics, clock, goal=far)
        clock.advance(10.0)
        dq = ctl.tick()
        assert np.max(np.abs(dq)) <= fast_config.max_joint_step + 1e-12
        assert dq[3] == pytest.approx(fast_config.max_joint_step)
        assert np.allclose(fake_kinematics.reported[-1], ctl.q)

    def test_joint_state_accumulates(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        clock.advance(1.0)
        d1 = ctl.tick().copy()
        d2 = ctl.tick().copy()
        assert np.allclose(ctl.q, d1 + d2)

    def test_seeds_empty_store_with_initial_pose(self, fast_config, fake_kinematics, clock):
        ctl = IKController(fast_config, fake_kinematics, clock=clock)
        assert ctl.waypoints.get(WaypointId.A) == Pose.identity()
        assert ctl.waypoints.get(WaypointId.B) == Pose.identity()


class TestFaults:
    def test_nan_jacobian(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        fake_kinematics.jacobian_override = np.full((6, 6), np.nan)
        with pytest.raises(ControlLoopFault):
            ctl.tick()

    def test_wrong_jacobian_shape(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        fake_kinematics.jacobian_override = np.eye(5)
        with pytest.raises(ControlLoopFault):
            ctl.tick()

    def test_zero_quaternion_pose(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        fake_kinematics.pose_override = Pose((0.0, 0.0, 0.0), (0.0, 0.0, 0.0, 0.0))
        with pytest.raises(ControlLoopFault):
            ctl.tick()

    def test_run_stops_and_keeps_last_state(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        clock.advance(1.0)
        ctl.tick()
        q_before = ctl.q.copy()
        fake_kinematics.jacobian_override = np.full((6, 6), np.inf)
        assert ctl.run() is False
        assert isinstance(ctl.fault, ControlLoopFault)
        assert np.allclose(ctl.q, q_before)


class TestRun:
    def test_max_ticks(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        assert ctl.run(max_ticks=5) is True
        assert ctl.tick_count == 5
        assert ctl.fault is None

    def test_debug_pauses_between_ticks(self, fast_config, fake_kinematics, clock):
        pauses = []
        ctl = _controller(
            fast_config.replace(debug=True),
            fake_kinematics,
            clock,
            pause_fn=lambda: pauses.append(1),
        )
        ctl.run(max_ticks=3)
        assert len(pauses) == 2

    def test_thread_start_stop(self, fast_config, fake_kinematics, clock):
        ctl = _controller(fast_config, fake_kinematics, clock)
        ctl.start()
        ctl.stop()
        ctl.join(5.0)
        assert ctl.fault is None
        assert ctl.shutdown_event.is_set()
