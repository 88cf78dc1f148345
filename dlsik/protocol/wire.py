"""
Wire protocol between the IK loop and visualization / marker tools.

All messages are msgpack arrays whose first element is an integer type code:

- STATUS:          [MsgType.STATUS, frame_id, timestamp, eef, target,
                    waypoint_a, waypoint_b, marker_names, marker_scale,
                    joint_names, joint_positions, loop_hz]
- MARKER_FEEDBACK: [MsgType.MARKER_FEEDBACK, marker_name, pose]

Poses are nested arrays ``[[x, y, z], [qx, qy, qz, qw]]``.
"""

import logging
import math
from enum import IntEnum, auto
from typing import Annotated

import msgspec
import numpy as np

from dlsik.protocol.types import Pose

logger = logging.getLogger(__name__)


def _enc_hook(obj: object) -> object:
    """Encode numpy arrays and scalars as native msgpack values."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.floating)):
        return obj.item()
    raise NotImplementedError(f"Cannot encode {type(obj)}")


_encoder = msgspec.msgpack.Encoder(enc_hook=_enc_hook)


class MsgType(IntEnum):
    STATUS = auto()
    MARKER_FEEDBACK = auto()


Vec3 = Annotated[list[float], msgspec.Meta(min_length=3, max_length=3)]
Quat = Annotated[list[float], msgspec.Meta(min_length=4, max_length=4)]


class PoseMsg(msgspec.Struct, array_like=True, frozen=True):
    """[[x, y, z], [qx, qy, qz, qw]]"""

    position: Vec3
    orientation: Quat

    def __post_init__(self) -> None:
        if not all(math.isfinite(v) for v in (*self.position, *self.orientation)):
            raise ValueError("Pose contains non-finite values")


class StatusMsg(
    msgspec.Struct, tag=int(MsgType.STATUS), array_like=True, frozen=True
):
    """Per-tick snapshot of the loop for visualization."""

    frame_id: str
    timestamp: float
    eef: PoseMsg
    target: PoseMsg
    waypoint_a: PoseMsg
    waypoint_b: PoseMsg
    marker_names: list[str]
    marker_scale: Annotated[float, msgspec.Meta(gt=0.0)]
    joint_names: list[str]
    joint_positions: list[float]
    loop_hz: float = 0.0

    def __post_init__(self) -> None:
        if len(self.joint_names) != len(self.joint_positions):
            raise ValueError("joint_names and joint_positions differ in length")


class MarkerFeedbackMsg(
    msgspec.Struct, tag=int(MsgType.MARKER_FEEDBACK), array_like=True, frozen=True
):
    """A marker was moved to a new pose."""

    marker_name: Annotated[str, msgspec.Meta(min_length=1)]
    pose: PoseMsg


Message = StatusMsg | MarkerFeedbackMsg

_message_decoder = msgspec.msgpack.Decoder(Message)
_status_decoder = msgspec.msgpack.Decoder(StatusMsg)
_feedback_decoder = msgspec.msgpack.Decoder(MarkerFeedbackMsg)


def encode(msg: Message) -> bytes:
    """Encode a message struct to msgpack bytes."""
    return _encoder.encode(msg)


def decode(data: bytes) -> Message:
    """Decode any wire message.

    Raises:
        msgspec.DecodeError: If data is not valid msgpack
        msgspec.ValidationError: If data does not match a message type
    """
    return _message_decoder.decode(data)


def decode_status(data: bytes) -> StatusMsg:
    return _status_decoder.decode(data)


def decode_marker_feedback(data: bytes) -> MarkerFeedbackMsg:
    return _feedback_decoder.decode(data)


def pose_to_msg(pose: Pose) -> PoseMsg:
    return PoseMsg(list(pose.position), list(pose.orientation))


def msg_to_pose(msg: PoseMsg) -> Pose:
    """PoseMsg -> Pose (not normalized)."""
    return Pose.from_sequences(msg.position, msg.orientation)


def pack_status(
    frame_id: str,
    timestamp: float,
    eef: Pose,
    target: Pose,
    waypoints: tuple[Pose, Pose],
    marker_names: tuple[str, str] | list[str],
    marker_scale: float,
    joint_names: list[str],
    joint_positions: np.ndarray | list[float],
    loop_hz: float = 0.0,
) -> bytes:
    """Build and encode a StatusMsg in one call."""
    return encode(
        StatusMsg(
            frame_id=frame_id,
            timestamp=float(timestamp),
            eef=pose_to_msg(eef),
            target=pose_to_msg(target),
            waypoint_a=pose_to_msg(waypoints[0]),
            waypoint_b=pose_to_msg(waypoints[1]),
            marker_names=list(marker_names),
            marker_scale=float(marker_scale),
            joint_names=list(joint_names),
            joint_positions=[float(v) for v in joint_positions],
            loop_hz=float(loop_hz),
        )
    )


def pack_marker_feedback(marker_name: str, pose: Pose) -> bytes:
    return encode(MarkerFeedbackMsg(marker_name, pose_to_msg(pose)))
