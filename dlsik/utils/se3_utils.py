"""SE3/SO3 twist utilities.

Transforms are 4x4 homogeneous numpy arrays. Twists are 6-vectors ordered
[omega (3), v (3)] everywhere in dlsik: log/exp maps, the adjoint, Jacobian
rows and pose-error twists all use this order.

Composition and inversion go through sophuspy; the matrix logarithm is
written out so its three angle regimes can be tested on their own.
"""

import math

import numpy as np
import sophuspy as sp
from numpy.typing import ArrayLike, NDArray
from scipy.spatial.transform import Rotation

from dlsik.protocol.types import Pose

__all__ = [
    "IDENTITY_TRANSFORM",
    "hat",
    "vee",
    "pose_to_matrix",
    "matrix_to_pose",
    "relative_transform",
    "rotation_angle",
    "log_map",
    "exp_map",
    "adjoint",
    "angular_distance",
]

IDENTITY_TRANSFORM: NDArray[np.float64] = np.eye(4)
IDENTITY_TRANSFORM.setflags(write=False)

# Below this angle the rotation is treated as exactly zero
THETA_ZERO_TOL: float = 1e-9
# Within this distance of pi the axis is recovered from the symmetric part of R
THETA_PI_TOL: float = 1e-6
# Below this angle series expansions replace the closed-form coefficients
_SERIES_ANGLE: float = 1e-3


def hat(v: ArrayLike) -> NDArray[np.float64]:
    """3-vector -> 3x3 skew-symmetric (cross-product) matrix."""
    x, y, z = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def vee(S: ArrayLike) -> NDArray[np.float64]:
    """3x3 skew-symmetric matrix -> 3-vector."""
    S = np.asarray(S, dtype=np.float64)
    return np.array([S[2, 1], S[0, 2], S[1, 0]])


def _as_transform(T: ArrayLike) -> NDArray[np.float64]:
    arr = np.asarray(T, dtype=np.float64)
    if arr.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 transform, got shape {arr.shape}")
    return arr


def pose_to_matrix(pose: Pose) -> NDArray[np.float64]:
    """Pose -> 4x4 homogeneous transform."""
    T = np.eye(4)
    T[:3, :3] = Rotation.from_quat(pose.orientation).as_matrix()
    T[:3, 3] = pose.position
    return T


def matrix_to_pose(T: ArrayLike) -> Pose:
    """4x4 homogeneous transform -> Pose with an (x, y, z, w) unit quaternion."""
    Tm = _as_transform(T)
    q = Rotation.from_matrix(Tm[:3, :3]).as_quat()
    return Pose.from_sequences(Tm[:3, 3], q)


def _se3(T: NDArray[np.float64]) -> sp.SE3:
    return sp.SE3(T[:3, :3], T[:3, 3])


def relative_transform(target: ArrayLike, reference: ArrayLike) -> NDArray[np.float64]:
    """Return ``reference^-1 @ target``: the target expressed in the reference frame."""
    Tt = _as_transform(target)
    Tr = _as_transform(reference)
    return (_se3(Tr).inverse() * _se3(Tt)).matrix()


def rotation_angle(R: ArrayLike) -> float:
    """Rotation angle in [0, pi] from the trace of a rotation matrix."""
    Rm = np.asarray(R, dtype=np.float64)
    c = (np.trace(Rm) - 1.0) * 0.5
    return float(math.acos(min(1.0, max(-1.0, c))))


def _refined_angle(R: NDArray[np.float64]) -> float:
    # acos loses precision next to 0 and pi; atan2 of (sin, cos) does not
    s = 0.5 * float(np.linalg.norm(vee(R - R.T)))
    c = (float(np.trace(R)) - 1.0) * 0.5
    return math.atan2(s, c)


def _inv_left_jacobian(omega: NDArray[np.float64], theta: float) -> NDArray[np.float64]:
    """G^-1 for the exponential coordinates omega = theta * axis."""
    W = hat(omega)
    if theta < _SERIES_ANGLE:
        c2 = 1.0 / 12.0 + theta * theta / 720.0
    else:
        half = 0.5 * theta
        c2 = (1.0 - half * math.cos(half) / math.sin(half)) / (theta * theta)
    return np.eye(3) - 0.5 * W + c2 * (W @ W)


def _log_near_zero(R: NDArray[np.float64], p: NDArray[np.float64]) -> NDArray[np.float64]:
    """theta ~ 0: pure translation. The twist is (0, p)."""
    return np.concatenate([np.zeros(3), p])


def _log_near_pi(
    R: NDArray[np.float64], p: NDArray[np.float64], theta: float
) -> NDArray[np.float64]:
    """theta ~ pi: (R - R^T) vanishes, so the axis comes from the symmetric part.

    (R + R^T)/2 = cos(theta) I + (1 - cos(theta)) a a^T
    """
    c = math.cos(theta)
    aaT = (0.5 * (R + R.T) - c * np.eye(3)) / (1.0 - c)
    k = int(np.argmax(np.diag(aaT)))
    axis = aaT[:, k] / math.sqrt(max(aaT[k, k], 1e-300))
    axis /= np.linalg.norm(axis)
    # a and -a are the same rotation only at exactly pi
    w = vee(R - R.T)
    if float(np.dot(axis, w)) < 0.0:
        axis = -axis
    omega = axis * theta
    return np.concatenate([omega, _inv_left_jacobian(omega, theta) @ p])


def _log_generic(
    R: NDArray[np.float64], p: NDArray[np.float64], theta: float
) -> NDArray[np.float64]:
    """0 < theta < pi: axis from (R - R^T) / (2 sin(theta))."""
    axis = vee(R - R.T) / (2.0 * math.sin(theta))
    omega = axis * theta
    return np.concatenate([omega, _inv_left_jacobian(omega, theta) @ p])


def log_map(T: ArrayLike) -> NDArray[np.float64]:
    """Matrix logarithm of a rigid transform as a [omega, v] twist.

    ``exp_map(log_map(T))`` reproduces T. The linear part is ``G^-1(omega) p``,
    not the raw translation, so the twist describes a single screw motion.
    """
    Tm = _as_transform(T)
    R = Tm[:3, :3]
    p = Tm[:3, 3].copy()

    theta = rotation_angle(R)
    if theta < THETA_ZERO_TOL:
        return _log_near_zero(R, p)
    theta = _refined_angle(R)
    if math.pi - theta < THETA_PI_TOL:
        return _log_near_pi(R, p, theta)
    if theta < THETA_ZERO_TOL:
        return _log_near_zero(R, p)
    return _log_generic(R, p, theta)


def exp_map(xi: ArrayLike) -> NDArray[np.float64]:
    """Matrix exponential of a [omega, v] twist (unit time)."""
    x = np.asarray(xi, dtype=np.float64).reshape(6)
    omega, v = x[:3], x[3:]
    theta = float(np.linalg.norm(omega))
    W = hat(omega)
    W2 = W @ W
    if theta < _SERIES_ANGLE:
        t2 = theta * theta
        A = 1.0 - t2 / 6.0
        B = 0.5 - t2 / 24.0
        C = 1.0 / 6.0 - t2 / 120.0
    else:
        A = math.sin(theta) / theta
        B = (1.0 - math.cos(theta)) / (theta * theta)
        C = (theta - math.sin(theta)) / (theta**3)

    T = np.eye(4)
    T[:3, :3] = np.eye(3) + A * W + B * W2
    T[:3, 3] = (np.eye(3) + B * W + C * W2) @ v
    return T


def adjoint(T: ArrayLike) -> NDArray[np.float64]:
    """6x6 adjoint of T for [omega, v] twists: [[R, 0], [hat(p) R, R]]."""
    Tm = _as_transform(T)
    R = Tm[:3, :3]
    p = Tm[:3, 3]
    Ad = np.zeros((6, 6))
    Ad[:3, :3] = R
    Ad[3:, :3] = hat(p) @ R
    Ad[3:, 3:] = R
    return Ad


def angular_distance(q1: ArrayLike, q2: ArrayLike) -> float:
    """Shortest-path rotation angle (rad) between two (x, y, z, w) quaternions."""
    r_rel = Rotation.from_quat(q1).inv() * Rotation.from_quat(q2)
    return float(r_rel.magnitude())
