"""Command-line interface for the IK control loop."""

import argparse
import logging
import signal

import dlsik.config as cfg
from dlsik.config import TRACE, ConfigError, EndpointConfig, RuntimeConfig
from dlsik.server.controller import IKController
from dlsik.server.kinematics import ToolboxKinematics
from dlsik.server.marker_feedback import MarkerFeedbackServer
from dlsik.server.status_broadcast import VisualizationBroadcaster
from dlsik.server.waypoints import WaypointStore
from dlsik.utils.pinv import PinvMethod
from dlsik.utils.warmup import warmup_jit

logger = logging.getLogger("dlsik.server.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Damped least-squares IK loop driving round trips between two markers"
    )
    parser.add_argument("--robot", help="roboticstoolbox DH model name (default Puma560)")
    parser.add_argument("--frame-id", help="Frame id stamped on published poses")
    parser.add_argument("--marker-scale", type=float, help="Waypoint marker scale")
    parser.add_argument(
        "--epsilon", type=float, help="Singular values above this are inverted exactly"
    )
    parser.add_argument(
        "--lambda", dest="damping", type=float, help="Damping factor lambda"
    )
    parser.add_argument(
        "--method",
        dest="pinv_method",
        choices=[m.value for m in PinvMethod],
        help="Pseudo-inverse formulation",
    )
    parser.add_argument("--max-linear-vel", type=float, help="Target speed limit (m/s)")
    parser.add_argument(
        "--max-angular-vel", dest="max_angular_vel_deg", type=float,
        help="Target angular speed limit (deg/s)",
    )
    parser.add_argument(
        "--max-joint-step", dest="max_joint_step_deg", type=float,
        help="Per-tick joint delta limit (deg)",
    )
    parser.add_argument("--rate", dest="control_rate_hz", type=float, help="Loop rate (Hz)")
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Pause after every tick until ENTER is pressed",
    )
    parser.add_argument("--marker-host", help="Marker feedback bind host")
    parser.add_argument(
        "--marker-port", type=int, help="Marker feedback bind port"
    )
    parser.add_argument(
        "--no-status", action="store_true", help="Disable the visualization broadcast"
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity; -v=INFO, -vv=DEBUG, -vvv=TRACE",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Enable quiet logging (WARNING level)"
    )
    parser.add_argument(
        "--log-level",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set specific log level",
    )
    return parser


def resolve_log_level(args: argparse.Namespace) -> int:
    """--log-level, then -v/-q, then DLSIK_TRACE, then INFO."""
    if args.log_level:
        if args.log_level == "TRACE":
            cfg.TRACE_ENABLED = True
            return TRACE
        return getattr(logging, args.log_level)
    if args.verbose >= 3:
        cfg.TRACE_ENABLED = True
        return TRACE
    if args.verbose == 2:
        return logging.DEBUG
    if args.verbose == 1:
        return logging.INFO
    if args.quiet:
        return logging.WARNING
    if cfg.TRACE_ENABLED:
        return TRACE
    return getattr(logging, cfg.LOG_LEVEL_DEFAULT)


def load_config(args: argparse.Namespace) -> RuntimeConfig:
    """Environment defaults with CLI flags layered on top."""
    return RuntimeConfig.from_env().replace(
        robot=args.robot,
        frame_id=args.frame_id,
        marker_scale=args.marker_scale,
        epsilon=args.epsilon,
        damping=args.damping,
        pinv_method=args.pinv_method,
        max_linear_vel=args.max_linear_vel,
        max_angular_vel_deg=args.max_angular_vel_deg,
        max_joint_step_deg=args.max_joint_step_deg,
        control_rate_hz=args.control_rate_hz,
        debug=args.debug,
    )


def load_endpoints(args: argparse.Namespace) -> EndpointConfig:
    """Endpoint settings from the environment with CLI flags layered on top."""
    return EndpointConfig.from_env().replace(
        marker_host=args.marker_host, marker_port=args.marker_port
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point. Returns 0 on clean shutdown, 1 on a loop fault, 2 on bad config."""
    args = build_parser().parse_args(argv)
    log_level = resolve_log_level(args)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    third_party_level = log_level if log_level >= logging.INFO else logging.INFO
    logging.getLogger("numba").setLevel(third_party_level)
    logging.getLogger("matplotlib").setLevel(third_party_level)

    try:
        config = load_config(args)
        endpoints = load_endpoints(args)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    try:
        kinematics = ToolboxKinematics(config.robot)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    warmup_jit()

    waypoints = WaypointStore()
    broadcaster = None
    if not args.no_status:
        broadcaster = VisualizationBroadcaster(
            frame_id=config.frame_id,
            marker_scale=config.marker_scale,
            group=endpoints.mcast_group,
            port=endpoints.mcast_port,
            ttl=endpoints.mcast_ttl,
            iface_ip=endpoints.mcast_if,
            transport=endpoints.status_transport,
            unicast_host=endpoints.status_unicast_host,
        )
    feedback = MarkerFeedbackServer(
        waypoints, host=endpoints.marker_host, port=endpoints.marker_port
    )

    controller = IKController(
        config,
        kinematics,
        publisher=broadcaster,
        waypoints=waypoints,
        high_priority=True,
    )

    def handle_signal(signum, frame):
        logger.info("Received %s, shutting down...", signal.Signals(signum).name)
        controller.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        feedback.start()
    except OSError as e:
        logger.error("Cannot bind marker feedback socket: %s", e)
        if broadcaster:
            broadcaster.close()
        return 1

    try:
        ok = controller.run()
    finally:
        feedback.stop()
        if broadcaster:
            broadcaster.close()

    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
