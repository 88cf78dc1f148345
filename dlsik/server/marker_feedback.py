"""
Marker feedback receiver.

Runs a daemon thread that listens for msgpack MarkerFeedbackMsg datagrams
and writes accepted poses into the shared WaypointStore. Bad packets are
logged and dropped; they never reach the control loop.
"""

from __future__ import annotations

import logging
import socket
import threading
import time

import msgspec

from dlsik import config as cfg
from dlsik.protocol import wire
from dlsik.protocol.types import WaypointId
from dlsik.server.waypoints import WaypointStore

logger = logging.getLogger(__name__)


class MarkerFeedbackServer:
    """UDP server mapping marker names to waypoints."""

    def __init__(
        self,
        waypoints: WaypointStore,
        host: str = cfg.MARKER_HOST,
        port: int = cfg.MARKER_PORT,
        marker_names: tuple[str, str] = cfg.MARKER_NAMES,
        poll_timeout: float = 0.2,
        buffer_size: int = 4096,
    ):
        """
        Args:
            waypoints: Store updated on every accepted message
            host: Bind address
            port: Bind port (0 picks a free port; see ``address``)
            marker_names: Names for waypoint A and waypoint B
            poll_timeout: Receive timeout between shutdown checks (s)
            buffer_size: Largest datagram accepted
        """
        self._waypoints = waypoints
        self._targets = {
            marker_names[0]: WaypointId.A,
            marker_names[1]: WaypointId.B,
        }
        self._host = host
        self._port = port
        self._poll_timeout = poll_timeout
        self._buffer_size = buffer_size
        self._sock: socket.socket | None = None
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None
        self.accepted_count = 0
        self.rejected_count = 0

    @property
    def address(self) -> tuple[str, int]:
        """Bound (host, port). Only valid after start()."""
        if self._sock is None:
            raise RuntimeError("MarkerFeedbackServer is not running")
        return self._sock.getsockname()

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.settimeout(self._poll_timeout)
        # Short retry window for EADDRINUSE right after a restart
        attempts = 3
        for i in range(attempts):
            try:
                sock.bind((self._host, self._port))
                break
            except OSError:
                if i == attempts - 1:
                    sock.close()
                    raise
                time.sleep(0.1)
        return sock

    def start(self) -> None:
        """Bind the socket and start the receive thread.

        Raises:
            OSError: If the socket cannot be bound
        """
        if self._thread is not None:
            return
        self._sock = self._bind()
        self._shutdown.clear()
        self._thread = threading.Thread(
            target=self._serve, name="MarkerFeedback", daemon=True
        )
        self._thread.start()
        host, port = self.address
        logger.info("Marker feedback listening on %s:%d", host, port)

    def stop(self, timeout: float = 1.0) -> None:
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _serve(self) -> None:
        sock = self._sock
        assert sock is not None
        while not self._shutdown.is_set():
            try:
                data, addr = sock.recvfrom(self._buffer_size)
            except socket.timeout:
                continue
            except OSError as e:
                if not self._shutdown.is_set():
                    logger.error("Marker feedback socket error: %s", e)
                break
            self.handle_packet(data, addr)

    def handle_packet(self, data: bytes, addr: tuple[str, int] | None = None) -> bool:
        """Decode one datagram and apply it. Returns True if a waypoint changed."""
        try:
            msg = wire.decode_marker_feedback(data)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            self.rejected_count += 1
            logger.warning("Dropping malformed marker packet from %s: %s", addr, e)
            return False

        waypoint = self._targets.get(msg.marker_name)
        if waypoint is None:
            self.rejected_count += 1
            logger.warning("Ignoring feedback for unknown marker %r", msg.marker_name)
            return False

        try:
            pose = wire.msg_to_pose(msg.pose).normalized()
            self._waypoints.set(waypoint, pose)
        except ValueError as e:
            self.rejected_count += 1
            logger.warning("Rejecting pose for %s: %s", msg.marker_name, e)
            return False

        self.accepted_count += 1
        logger.info("Marker feedback: %s is now at %s", msg.marker_name, pose.format())
        return True
