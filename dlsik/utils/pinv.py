"""
Damped pseudo-inverses of manipulator Jacobians.

Both formulations stay bounded when the Jacobian loses rank:

- NORMAL: damped least squares on the normal equations,
  ``(J^T J + lambda^2 I)^-1 J^T`` (tall) or ``J^T (J J^T + lambda^2 I)^-1`` (fat).
- SVD: per-singular-value damping; values above ``eps`` are inverted
  exactly, the rest use ``sigma / (sigma^2 + lambda^2)``.

Reference: S. Buss, "Introduction to Inverse Kinematics with Jacobian
Transpose, Pseudoinverse and Damped Least Squares methods", eq. (10)/(11).
"""

from enum import Enum

import numpy as np
from numpy.typing import ArrayLike, NDArray

__all__ = [
    "PinvMethod",
    "damped_pinv",
    "damped_pinv_normal",
    "damped_pinv_svd",
]


class PinvMethod(str, Enum):
    """Pseudo-inverse formulation, chosen once at startup."""

    NORMAL = "normal"
    SVD = "svd"


def _as_jacobian(J: ArrayLike) -> NDArray[np.float64]:
    arr = np.asarray(J, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError(f"Jacobian must be 2-D, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("Jacobian contains non-finite values")
    return arr


def _solve_regularized(A: NDArray[np.float64], B: NDArray[np.float64]) -> NDArray:
    """Return A^-1 B, falling back to the Moore-Penrose inverse when A is singular.

    A is symmetric positive semi-definite here; it is only singular when
    lambda == 0 and J is rank deficient.
    """
    try:
        X = np.linalg.solve(A, B)
    except np.linalg.LinAlgError:
        return np.linalg.pinv(A, hermitian=True) @ B
    if not np.all(np.isfinite(X)):
        return np.linalg.pinv(A, hermitian=True) @ B
    return X


def damped_pinv_normal(J: ArrayLike, lam: float) -> NDArray[np.float64]:
    """Damped pseudo-inverse via the normal equations.

    Args:
        J: (m, n) Jacobian
        lam: Damping factor lambda (>= 0)

    Returns:
        (n, m) damped pseudo-inverse
    """
    Jm = _as_jacobian(J)
    rows, cols = Jm.shape
    lam2 = float(lam) * float(lam)
    if rows >= cols:
        # Tall: left inverse
        lhs = Jm.T @ Jm + lam2 * np.eye(cols)
        return _solve_regularized(lhs, Jm.T)
    # Fat: right inverse. (J J^T + l^2 I) is symmetric, so
    # J^T (J J^T + l^2 I)^-1 == ((J J^T + l^2 I)^-1 J)^T
    rhs = Jm @ Jm.T + lam2 * np.eye(rows)
    return _solve_regularized(rhs, Jm).T


def damped_pinv_svd(J: ArrayLike, eps: float, lam: float) -> NDArray[np.float64]:
    """Damped pseudo-inverse via a thin SVD with per-singular-value damping.

    Args:
        J: (m, n) Jacobian
        eps: Singular values with ``|sigma| > eps`` are inverted exactly
        lam: Damping factor lambda applied to the remaining ones

    Returns:
        (n, m) damped pseudo-inverse
    """
    Jm = _as_jacobian(J)
    U, s, Vt = np.linalg.svd(Jm, full_matrices=False)

    inv_s = np.zeros_like(s)
    exact = np.abs(s) > eps
    inv_s[exact] = 1.0 / s[exact]

    damped = ~exact
    denom = s[damped] ** 2 + float(lam) * float(lam)
    # sigma == lambda == 0 has no defined reciprocal; treat the direction as dead
    inv_s[damped] = np.divide(
        s[damped], denom, out=np.zeros_like(denom), where=denom > 0.0
    )

    return Vt.T @ (inv_s[:, None] * U.T)


def damped_pinv(
    J: ArrayLike,
    method: PinvMethod = PinvMethod.NORMAL,
    eps: float = 1.0,
    lam: float = 0.01,
) -> NDArray[np.float64]:
    """Dispatch to the selected pseudo-inverse formulation."""
    if method is PinvMethod.SVD:
        return damped_pinv_svd(J, eps, lam)
    if method is PinvMethod.NORMAL:
        return damped_pinv_normal(J, lam)
    raise ValueError(f"Unknown pseudo-inverse method: {method!r}")
