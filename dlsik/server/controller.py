"""
Fixed-rate IK control loop.

Each tick reads the end-effector pose and Jacobian for the current joints,
advances the moving target, turns the pose error into a spatial twist, maps
it through a damped pseudo-inverse, clamps the joint delta and integrates it.
"""

import logging
import sys
import threading
import time
from typing import Callable, Protocol

import numpy as np
import psutil  # type: ignore[import-untyped]
from numba import njit  # type: ignore[import-untyped]
from numpy.typing import NDArray

from dlsik.config import TRACE, RuntimeConfig
from dlsik.motion.interpolator import TargetInterpolator
from dlsik.protocol.types import Pose
from dlsik.server.async_logging import AsyncLogHandler
from dlsik.server.kinematics import KinematicsService
from dlsik.server.loop_timer import LoopTimer, PhaseTimer, format_hz_summary
from dlsik.server.waypoints import WaypointStore
from dlsik.utils.pinv import damped_pinv
from dlsik.utils.se3_utils import (
    IDENTITY_TRANSFORM,
    adjoint,
    log_map,
    pose_to_matrix,
    relative_transform,
)

logger = logging.getLogger("dlsik.server.controller")


class ControlLoopFault(RuntimeError):
    """Invalid data from a collaborator; the loop cannot continue."""


class StatusPublisher(Protocol):
    def publish(
        self,
        eef: Pose,
        target: Pose,
        waypoints: tuple[Pose, Pose],
        joint_names: list[str],
        joint_positions: np.ndarray,
        loop_hz: float = 0.0,
    ) -> None: ...


@njit(cache=True)
def _clamp_integrate(q: np.ndarray, dq: np.ndarray, limit: float) -> None:
    """Clamp dq to [-limit, limit] in place, then q += dq."""
    for i in range(q.shape[0]):
        d = dq[i]
        if d > limit:
            d = limit
        elif d < -limit:
            d = -limit
        dq[i] = d
        q[i] += d


def _wait_for_enter() -> None:
    try:
        input("Press ENTER to continue...")
    except EOFError:
        # stdin closed; keep stepping without blocking
        time.sleep(0.5)


class IKController:
    """Runs the damped least-squares IK loop against a kinematics service."""

    def __init__(
        self,
        config: RuntimeConfig,
        kinematics: KinematicsService,
        publisher: StatusPublisher | None = None,
        waypoints: WaypointStore | None = None,
        pause_fn: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        high_priority: bool = False,
    ):
        """
        Args:
            config: Validated runtime parameters
            kinematics: Robot model; the joint state starts at zero
            publisher: Receives a status frame after every tick
            waypoints: Shared waypoint store. Uninitialized stores are seeded
                with the starting end-effector pose.
            pause_fn: Called after each tick when ``config.debug`` is set
            clock: Monotonic time source for interpolation
            high_priority: Raise process priority and pin a core in run()

        Raises:
            ControlLoopFault: If the initial forward kinematics is invalid
        """
        self.config = config
        self.kinematics = kinematics
        self.publisher = publisher
        self._pause_fn = pause_fn or _wait_for_enter
        self._clock = clock
        self._high_priority = high_priority

        self.q: NDArray[np.float64] = np.zeros(kinematics.num_joints)
        self.last_dq: NDArray[np.float64] = np.zeros(kinematics.num_joints)
        self.last_twist: NDArray[np.float64] = np.zeros(6)
        self.tick_count = 0
        self.fault: ControlLoopFault | None = None
        self.shutdown_event = threading.Event()

        initial = self._read_pose(self.q)
        self.waypoints = waypoints if waypoints is not None else WaypointStore()
        if not self.waypoints.is_initialized():
            self.waypoints.initialize(initial, initial)
        logger.info("Initial end-effector pose: %s", initial.format())

        self.interpolator = TargetInterpolator(
            initial,
            self.waypoints,
            config.max_linear_vel,
            config.max_angular_vel,
            now=clock(),
        )

        self._timer = LoopTimer(config.interval_s)
        self._phase_timer = PhaseTimer(["kinematics", "target", "solve", "publish"])
        self._async_log = AsyncLogHandler()
        self._thread: threading.Thread | None = None

        logger.info(
            "IK controller: method=%s epsilon=%g lambda=%g rate=%.0fHz step<=%.2fdeg",
            config.pinv_method.value,
            config.epsilon,
            config.damping,
            config.control_rate_hz,
            config.max_joint_step_deg,
        )

    # ------------------------------------------------------------------
    # Collaborator reads
    # ------------------------------------------------------------------

    def _read_pose(self, q: NDArray[np.float64]) -> Pose:
        try:
            pose = self.kinematics.forward_kinematics(q)
            if not pose.is_finite():
                raise ValueError(f"non-finite pose {pose}")
            return pose.normalized()
        except ValueError as e:
            raise ControlLoopFault(f"Invalid end-effector pose: {e}") from e

    def _read_jacobian(self, q: NDArray[np.float64]) -> NDArray[np.float64]:
        try:
            J = np.asarray(self.kinematics.jacobian(q), dtype=np.float64)
        except ValueError as e:
            raise ControlLoopFault(f"Invalid Jacobian: {e}") from e
        if J.shape != (6, self.q.shape[0]):
            raise ControlLoopFault(
                f"Jacobian has shape {J.shape}, expected (6, {self.q.shape[0]})"
            )
        if not np.all(np.isfinite(J)):
            raise ControlLoopFault("Jacobian contains non-finite values")
        return J

    # ------------------------------------------------------------------
    # One control cycle
    # ------------------------------------------------------------------

    def error_twist(self, eef: Pose, target: Pose) -> NDArray[np.float64]:
        """Spatial [omega, v] twist moving ``eef`` onto ``target`` in unit time."""
        eef_T = pose_to_matrix(eef)
        target_T = pose_to_matrix(target)
        body = log_map(relative_transform(target_T, eef_T))
        return adjoint(relative_transform(eef_T, IDENTITY_TRANSFORM)) @ body

    def tick(self, now: float | None = None) -> NDArray[np.float64]:
        """Run one control cycle and return the applied (clamped) joint delta.

        Raises:
            ControlLoopFault: On malformed or non-finite intermediate values
        """
        if now is None:
            now = self._clock()
        cfg = self.config
        pt = self._phase_timer

        with pt.phase("kinematics"):
            eef = self._read_pose(self.q)
            J = self._read_jacobian(self.q)

        with pt.phase("target"):
            self.interpolator.advance(now)
            target = self.interpolator.current_pose

        with pt.phase("solve"):
            twist = self.error_twist(eef, target)
            if not np.all(np.isfinite(twist)):
                raise ControlLoopFault(f"Non-finite error twist {twist}")
            J_pinv = damped_pinv(J, cfg.pinv_method, cfg.epsilon, cfg.damping)
            dq = J_pinv @ twist
            if not np.all(np.isfinite(dq)):
                raise ControlLoopFault(f"Non-finite joint delta {dq}")
            if logger.isEnabledFor(TRACE):
                logger.log(
                    TRACE,
                    "residual |J dq - twist| = %.3e",
                    float(np.linalg.norm(J @ dq - twist)),
                )
            _clamp_integrate(self.q, dq, cfg.max_joint_step)

        self.last_dq = dq
        self.last_twist = twist
        self.tick_count += 1
        self.kinematics.set_joint_positions(self.q.copy())

        if self.publisher is not None:
            with pt.phase("publish"):
                m = self._timer.metrics
                hz = 1.0 / m.mean_period_s if m.mean_period_s > 0 else 0.0
                self.publisher.publish(
                    eef,
                    target,
                    self.waypoints.snapshot(),
                    self.kinematics.joint_names,
                    self.q,
                    hz,
                )
        return dq

    # ------------------------------------------------------------------
    # Loop driver
    # ------------------------------------------------------------------

    def run(self, max_ticks: int | None = None) -> bool:
        """Tick at the configured rate until stop(), a fault, or ``max_ticks``.

        Returns:
            True if the loop ended without a fault
        """
        if self._high_priority:
            self._set_high_priority()
        self._async_log.start()
        self._timer.start()
        logger.info("Starting IK control loop")
        try:
            while not self.shutdown_event.is_set():
                try:
                    self.tick()
                except ControlLoopFault as e:
                    self.fault = e
                    logger.error("Control loop fault, stopping: %s", e)
                    break
                self._log_periodic_status()
                if max_ticks is not None and self.tick_count >= max_ticks:
                    break
                if self.config.debug:
                    self._pause_fn()
                self._timer.wait_for_next_tick()
        finally:
            logger.info(
                "IK control loop stopped after %d ticks (%s)",
                self.tick_count,
                format_hz_summary(self._timer.metrics),
            )
            self._async_log.stop()
        return self.fault is None

    def start(self) -> None:
        """Run the loop on a dedicated thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("IK controller already running")
            return
        self.shutdown_event.clear()
        self._thread = threading.Thread(target=self.run, name="IKControlLoop", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Request shutdown; the loop exits at the next tick boundary."""
        self.shutdown_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _log_periodic_status(self) -> None:
        now = time.perf_counter()
        m = self._timer.metrics

        should_warn, pct = m.check_degraded(now, 0.25, 3.0)
        if should_warn:
            logger.warning(
                "loop overbudget by +%.0f%% (%s)", pct, format_hz_summary(m)
            )

        if not logger.isEnabledFor(logging.DEBUG) or not m.should_log(now, 1.0):
            return
        logger.debug(
            "loop: %s ov=%d target->%s",
            format_hz_summary(m),
            m.overrun_count,
            self.interpolator.destination.name,
        )
        logger.debug(
            "dq(deg)=%s q(deg)=%s",
            np.array2string(np.degrees(self.last_dq), precision=3),
            np.array2string(np.degrees(self.q), precision=2),
        )
        phases = self._phase_timer.summary()
        logger.debug(
            "phases p99: kin=%.2fms target=%.2fms solve=%.2fms publish=%.2fms",
            phases["kinematics"]["p99_ms"],
            phases["target"]["p99_ms"],
            phases["solve"]["p99_ms"],
            phases["publish"]["p99_ms"],
        )

    def _set_high_priority(self) -> None:
        """Highest non-privileged priority and a dedicated core, best effort."""
        p = psutil.Process()
        try:
            if sys.platform == "win32":
                p.nice(psutil.HIGH_PRIORITY_CLASS)
                logger.info("Set process priority to HIGH_PRIORITY_CLASS")
            else:
                p.nice(-10)
                logger.info("Set process nice value to -10")
        except psutil.AccessDenied:
            logger.debug("Cannot raise process priority without privileges")

        try:
            cpus = p.cpu_affinity()
            if cpus and len(cpus) > 1:
                p.cpu_affinity([cpus[-1]])
                logger.info("Pinned process to CPU core %d", cpus[-1])
        except (AttributeError, NotImplementedError):
            logger.debug("CPU affinity not supported on this platform")
        except psutil.AccessDenied:
            logger.debug("Cannot set CPU affinity without privileges")
