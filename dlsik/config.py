"""
Central configuration for dlsik tunables and shared constants.

Module constants are plain defaults. ``DLSIK_*`` environment variables are
parsed by :meth:`RuntimeConfig.from_env` and :meth:`EndpointConfig.from_env`
when the CLI starts, so a malformed value surfaces as :class:`ConfigError`
instead of failing at import. The CLI layers its own flags on top via
``replace``.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, fields, replace

from dlsik.utils.pinv import PinvMethod

TRACE: int = 5
logging.addLevelName(TRACE, "TRACE")
# Add Logger.trace if missing
if not hasattr(logging.Logger, "trace"):

    def _trace(self, msg, *args, **kwargs):
        if self.isEnabledFor(TRACE):
            self._log(TRACE, msg, args, **kwargs)

    logging.Logger.trace = _trace  # type: ignore[attr-defined]
    logging.TRACE = TRACE  # type: ignore[attr-defined]

TRACE_ENABLED = str(os.getenv("DLSIK_TRACE", "0")).lower() in ("1", "true", "yes", "on")

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when startup parameters are missing or out of range."""


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    s = raw.strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name}={raw!r} is not a boolean")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not a number") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not an integer") from None


# Default control rate (Hz); DLSIK_CONTROL_RATE_HZ is read by RuntimeConfig.from_env
CONTROL_RATE_HZ: float = 512.0

# Time before a deadline at which LoopTimer stops sleeping and spins (ms)
BUSY_THRESHOLD_MS: float = 2.0

# Interpolator arrival tolerance, applied to every position/quaternion component
CLOSE_TOLERANCE: float = 0.01

# Marker names understood by the feedback server (waypoint A, waypoint B)
MARKER_NAMES: tuple[str, str] = ("eef_target1", "eef_target2")

# Marker feedback endpoint (UDP, msgpack MarkerFeedbackMsg)
MARKER_HOST: str = "127.0.0.1"
MARKER_PORT: int = 50520

# Visualization status broadcast; loopback multicast by default
MCAST_GROUP: str = "239.255.0.102"
MCAST_PORT: int = 50521
MCAST_TTL: int = 1
MCAST_IF: str = "127.0.0.1"

# MULTICAST (default) or UNICAST; use UNICAST on hosts without multicast routing
STATUS_TRANSPORT: str = "MULTICAST"
STATUS_UNICAST_HOST: str = "127.0.0.1"

LOG_LEVEL_DEFAULT: str = "INFO"


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """Startup parameters of the IK loop. Read once, never mutated."""

    robot: str = "Puma560"
    frame_id: str = "base_link"
    marker_scale: float = 0.1
    epsilon: float = 1.0  # singular-value threshold
    damping: float = 0.01  # lambda
    pinv_method: PinvMethod = PinvMethod.NORMAL
    max_linear_vel: float = 0.02  # m/s
    max_angular_vel_deg: float = 10.0  # deg/s
    max_joint_step_deg: float = 1.0  # deg per tick
    control_rate_hz: float = CONTROL_RATE_HZ
    debug: bool = False

    @property
    def max_angular_vel(self) -> float:
        """Angular speed limit in rad/s."""
        return math.radians(self.max_angular_vel_deg)

    @property
    def max_joint_step(self) -> float:
        """Per-tick joint delta limit in radians."""
        return math.radians(self.max_joint_step_deg)

    @property
    def interval_s(self) -> float:
        return 1.0 / self.control_rate_hz

    @classmethod
    def from_env(cls) -> RuntimeConfig:
        """Build a config from ``DLSIK_*`` environment variables."""
        d = cls()
        cfg = cls(
            robot=os.getenv("DLSIK_ROBOT", d.robot).strip(),
            frame_id=os.getenv("DLSIK_FRAME_ID", d.frame_id).strip(),
            marker_scale=_env_float("DLSIK_MARKER_SCALE", d.marker_scale),
            epsilon=_env_float("DLSIK_EPSILON", d.epsilon),
            damping=_env_float("DLSIK_LAMBDA", d.damping),
            pinv_method=_parse_method(
                os.getenv("DLSIK_PINV_METHOD", d.pinv_method.value)
            ),
            max_linear_vel=_env_float("DLSIK_MAX_LINEAR_VEL", d.max_linear_vel),
            max_angular_vel_deg=_env_float(
                "DLSIK_MAX_ANGULAR_VEL_DEG", d.max_angular_vel_deg
            ),
            max_joint_step_deg=_env_float(
                "DLSIK_MAX_JOINT_STEP_DEG", d.max_joint_step_deg
            ),
            control_rate_hz=_env_float("DLSIK_CONTROL_RATE_HZ", d.control_rate_hz),
            debug=_env_bool("DLSIK_DEBUG", d.debug),
        )
        return cfg.validate()

    def replace(self, **overrides) -> RuntimeConfig:
        """Return a validated copy with non-None overrides applied."""
        names = {f.name for f in fields(self)}
        unknown = set(overrides) - names
        if unknown:
            raise ConfigError(f"Unknown config fields: {sorted(unknown)}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        if isinstance(changes.get("pinv_method"), str):
            changes["pinv_method"] = _parse_method(changes["pinv_method"])
        return replace(self, **changes).validate()

    def validate(self) -> RuntimeConfig:
        """Check ranges. Returns self so calls can be chained."""
        if not self.robot:
            raise ConfigError("robot model name must not be empty")
        if not self.frame_id:
            raise ConfigError("frame_id must not be empty")
        _require_finite(
            marker_scale=self.marker_scale,
            epsilon=self.epsilon,
            damping=self.damping,
            max_linear_vel=self.max_linear_vel,
            max_angular_vel_deg=self.max_angular_vel_deg,
            max_joint_step_deg=self.max_joint_step_deg,
            control_rate_hz=self.control_rate_hz,
        )
        if self.epsilon < 0.0:
            raise ConfigError(f"epsilon must be >= 0, got {self.epsilon}")
        if self.damping < 0.0:
            raise ConfigError(f"lambda must be >= 0, got {self.damping}")
        for name in (
            "marker_scale",
            "max_linear_vel",
            "max_angular_vel_deg",
            "max_joint_step_deg",
            "control_rate_hz",
        ):
            if getattr(self, name) <= 0.0:
                raise ConfigError(f"{name} must be > 0, got {getattr(self, name)}")
        if not isinstance(self.pinv_method, PinvMethod):
            raise ConfigError(f"Invalid pinv_method: {self.pinv_method!r}")
        return self


@dataclass(frozen=True, slots=True)
class EndpointConfig:
    """Network endpoints of the marker feedback server and status broadcast."""

    marker_host: str = MARKER_HOST
    marker_port: int = MARKER_PORT
    mcast_group: str = MCAST_GROUP
    mcast_port: int = MCAST_PORT
    mcast_ttl: int = MCAST_TTL
    mcast_if: str = MCAST_IF
    status_transport: str = STATUS_TRANSPORT
    status_unicast_host: str = STATUS_UNICAST_HOST

    @classmethod
    def from_env(cls) -> EndpointConfig:
        d = cls()
        return cls(
            marker_host=os.getenv("DLSIK_MARKER_HOST", d.marker_host).strip(),
            marker_port=_env_int("DLSIK_MARKER_PORT", d.marker_port),
            mcast_group=os.getenv("DLSIK_MCAST_GROUP", d.mcast_group).strip(),
            mcast_port=_env_int("DLSIK_MCAST_PORT", d.mcast_port),
            mcast_ttl=_env_int("DLSIK_MCAST_TTL", d.mcast_ttl),
            mcast_if=os.getenv("DLSIK_MCAST_IF", d.mcast_if).strip(),
            status_transport=os.getenv("DLSIK_STATUS_TRANSPORT", d.status_transport)
            .strip()
            .upper(),
            status_unicast_host=os.getenv(
                "DLSIK_STATUS_UNICAST_HOST", d.status_unicast_host
            ).strip(),
        ).validate()

    def replace(self, **overrides) -> EndpointConfig:
        """Return a validated copy with non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes).validate()

    def validate(self) -> EndpointConfig:
        for name in ("marker_host", "mcast_group", "mcast_if", "status_unicast_host"):
            if not getattr(self, name):
                raise ConfigError(f"{name} must not be empty")
        for name in ("marker_port", "mcast_port"):
            port = getattr(self, name)
            if not 0 < port < 65536:
                raise ConfigError(f"{name} must be in 1..65535, got {port}")
        if not 0 <= self.mcast_ttl <= 255:
            raise ConfigError(f"mcast_ttl must be in 0..255, got {self.mcast_ttl}")
        if self.status_transport not in ("MULTICAST", "UNICAST"):
            raise ConfigError(
                f"status transport must be MULTICAST or UNICAST, got {self.status_transport!r}"
            )
        return self


def _require_finite(**values: float) -> None:
    for name, value in values.items():
        if not math.isfinite(value):
            raise ConfigError(f"{name} must be finite, got {value}")


def _parse_method(raw: str) -> PinvMethod:
    try:
        return PinvMethod(raw.strip().lower())
    except ValueError:
        choices = ", ".join(m.value for m in PinvMethod)
        raise ConfigError(
            f"Unknown pseudo-inverse method {raw!r} (choose from {choices})"
        ) from None
