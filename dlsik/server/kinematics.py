"""Kinematics service: forward kinematics and spatial Jacobian of the robot model."""

from __future__ import annotations

import logging
import threading
from typing import Protocol, Sequence, runtime_checkable

import numpy as np
import roboticstoolbox as rtb
from numpy.typing import ArrayLike, NDArray

from dlsik.config import ConfigError
from dlsik.protocol.types import Pose
from dlsik.utils.se3_utils import hat, matrix_to_pose

logger = logging.getLogger(__name__)


@runtime_checkable
class KinematicsService(Protocol):
    """What the control loop needs from a robot model."""

    @property
    def num_joints(self) -> int: ...

    @property
    def joint_names(self) -> list[str]: ...

    def forward_kinematics(self, q: NDArray[np.float64]) -> Pose:
        """End-effector pose in the base frame."""
        ...

    def jacobian(self, q: NDArray[np.float64]) -> NDArray[np.float64]:
        """6xN spatial Jacobian, rows [omega; v]."""
        ...

    def set_joint_positions(self, q: NDArray[np.float64]) -> None:
        """Report the integrated joint state back to the robot."""
        ...


def available_models() -> list[str]:
    """Names of the DH models shipped with roboticstoolbox."""
    return sorted(
        name
        for name in dir(rtb.models.DH)
        if not name.startswith("_") and isinstance(getattr(rtb.models.DH, name), type)
    )


def spatial_from_geometric(
    J0: NDArray[np.float64], position: ArrayLike
) -> NDArray[np.float64]:
    """Geometric Jacobian -> spatial Jacobian.

    ``J0`` is the base-frame geometric Jacobian with rows [v; omega], where v is
    the velocity of the point ``position``. The spatial twist uses the velocity
    of the body point at the base origin, ``v_s = v + p x omega``, and is
    reordered to [omega; v].
    """
    Jv = J0[:3, :]
    Jw = J0[3:, :]
    return np.vstack([Jw, Jv + hat(position) @ Jw])


class ToolboxKinematics:
    """KinematicsService backed by a roboticstoolbox DH model.

    The spatial Jacobian does not depend on which body point is tracked, so
    the tool offset only affects the forward kinematics.
    """

    def __init__(
        self,
        model: str = "Puma560",
        tool_offset: Sequence[float] = (0.0, 0.0, 0.0),
    ):
        """
        Args:
            model: Class name under ``roboticstoolbox.models.DH``
            tool_offset: Tool point in the flange frame (m)

        Raises:
            ConfigError: If the model is unknown
        """
        factory = getattr(rtb.models.DH, model, None)
        if factory is None or not isinstance(factory, type):
            raise ConfigError(
                f"Unknown robot model {model!r}; available: {', '.join(available_models())}"
            )
        self.model_name = model
        self.robot = factory()
        self._n = int(self.robot.n)
        self._names = [f"joint_{i + 1}" for i in range(self._n)]
        self._tool = np.eye(4)
        self._tool[:3, 3] = np.asarray(tool_offset, dtype=np.float64).reshape(3)
        self._lock = threading.Lock()
        self._q = np.zeros(self._n)
        logger.info("Loaded robot model %s with %d joints", model, self._n)

    @property
    def num_joints(self) -> int:
        return self._n

    @property
    def joint_names(self) -> list[str]:
        return list(self._names)

    @property
    def joint_positions(self) -> NDArray[np.float64]:
        """Last state reported through set_joint_positions()."""
        with self._lock:
            return self._q.copy()

    def _check(self, q: ArrayLike) -> NDArray[np.float64]:
        qa = np.asarray(q, dtype=np.float64).reshape(-1)
        if qa.shape[0] != self._n:
            raise ValueError(f"Expected {self._n} joint values, got {qa.shape[0]}")
        return qa

    def flange_transform(self, q: ArrayLike) -> NDArray[np.float64]:
        return np.asarray(self.robot.fkine(self._check(q)).A, dtype=np.float64)

    def forward_kinematics(self, q: NDArray[np.float64]) -> Pose:
        return matrix_to_pose(self.flange_transform(q) @ self._tool)

    def jacobian(self, q: NDArray[np.float64]) -> NDArray[np.float64]:
        qa = self._check(q)
        J0 = np.asarray(self.robot.jacob0(qa), dtype=np.float64)
        p = self.flange_transform(qa)[:3, 3]
        return spatial_from_geometric(J0, p)

    def set_joint_positions(self, q: NDArray[np.float64]) -> None:
        qa = self._check(q)
        with self._lock:
            self._q = qa.copy()
        self.robot.q = qa
