"""Shared fixtures: fake collaborators for the control loop."""

import socket

import numpy as np
import pytest

from dlsik.config import RuntimeConfig
from dlsik.protocol.types import Pose
from dlsik.utils.se3_utils import exp_map, matrix_to_pose, pose_to_matrix


class FakeKinematics:
    """Free-floating body whose joints are a spatial twist.

    The Jacobian is the 6x6 identity: a joint delta dq moves the body by
    ``exp(dq) @ T``. Overrides let tests inject bad data.
    """

    def __init__(self, start: Pose | None = None):
        self.T = pose_to_matrix(start or Pose.identity())
        self._q = np.zeros(6)
        self.reported: list[np.ndarray] = []
        self.jacobian_override: np.ndarray | None = None
        self.pose_override: Pose | None = None

    @property
    def num_joints(self) -> int:
        return 6

    @property
    def joint_names(self) -> list[str]:
        return [f"joint_{i + 1}" for i in range(6)]

    def forward_kinematics(self, q):
        if self.pose_override is not None:
            return self.pose_override
        return matrix_to_pose(self.T)

    def jacobian(self, q):
        if self.jacobian_override is not None:
            return self.jacobian_override
        return np.eye(6)

    def set_joint_positions(self, q):
        q = np.asarray(q, dtype=np.float64)
        self.T = exp_map(q - self._q) @ self.T
        self._q = q.copy()
        self.reported.append(q.copy())


class RecordingPublisher:
    def __init__(self):
        self.frames = []

    def publish(self, eef, target, waypoints, joint_names, joint_positions, loop_hz=0.0):
        self.frames.append(
            {
                "eef": eef,
                "target": target,
                "waypoints": waypoints,
                "joint_names": list(joint_names),
                "joint_positions": np.array(joint_positions),
                "loop_hz": loop_hz,
            }
        )


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, dt: float) -> float:
        self.now += dt
        return self.now


@pytest.fixture
def fake_kinematics() -> FakeKinematics:
    return FakeKinematics()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_config() -> RuntimeConfig:
    """Fast targets and a high loop rate so tests finish quickly."""
    return RuntimeConfig(
        max_linear_vel=1.0,
        max_angular_vel_deg=1000.0,
        control_rate_hz=1000.0,
    ).validate()


@pytest.fixture
def free_udp_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
    finally:
        s.close()
