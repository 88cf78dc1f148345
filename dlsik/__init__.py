"""
dlsik: damped least-squares inverse kinematics loop

A velocity-level IK controller that keeps a manipulator's end effector
shuttling between two user-movable waypoints while staying numerically
stable near kinematic singularities.

Key components:
- IKController: fixed-rate control loop
- damped_pinv / PinvMethod: singularity-robust pseudo-inverses
- TargetInterpolator: moving local target between two waypoints
- MarkerClient / StatusSubscriber: move markers and watch the loop
"""

from ._version import __version__
from .protocol.types import Pose, WaypointId
from .utils.pinv import PinvMethod, damped_pinv

__all__ = [
    "__version__",
    "Pose",
    "WaypointId",
    "PinvMethod",
    "damped_pinv",
]
