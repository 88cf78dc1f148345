from __future__ import annotations

import logging
import socket
import sys
import time

import numpy as np

from dlsik import config as cfg
from dlsik.protocol import wire
from dlsik.protocol.types import Pose

logger = logging.getLogger(__name__)


class VisualizationBroadcaster:
    """
    Publishes msgpack STATUS frames over UDP. Called from the control loop.

    Sends are non-blocking and fire-and-forget; a dropped frame is simply
    replaced by the next tick's frame.

    Transport:
      - cfg.STATUS_TRANSPORT: "MULTICAST" (default) or "UNICAST"
      - multicast uses cfg.MCAST_GROUP / MCAST_PORT / MCAST_TTL / MCAST_IF
      - unicast sends to cfg.STATUS_UNICAST_HOST on the same port

    Multicast setup is verified with a loopback probe; if the probe fails on
    both the configured and the primary interface, or sends keep failing at
    runtime, the broadcaster falls back to unicast.
    """

    def __init__(
        self,
        frame_id: str = "base_link",
        marker_names: tuple[str, str] = cfg.MARKER_NAMES,
        marker_scale: float = 0.1,
        group: str = cfg.MCAST_GROUP,
        port: int = cfg.MCAST_PORT,
        ttl: int = cfg.MCAST_TTL,
        iface_ip: str = cfg.MCAST_IF,
        transport: str = cfg.STATUS_TRANSPORT,
        unicast_host: str = cfg.STATUS_UNICAST_HOST,
    ) -> None:
        self.frame_id = frame_id
        self.marker_names = marker_names
        self.marker_scale = marker_scale
        self.group = group
        self.port = port
        self.ttl = ttl
        self.iface_ip = iface_ip
        self.unicast_host = unicast_host

        self._use_unicast: bool = transport.upper() == "UNICAST"
        self._sock: socket.socket | None = None

        self.sent_count = 0
        self._send_failures = 0
        self._max_send_failures = 3
        self._last_fail_log_time = 0.0

        self._setup_socket()

    @property
    def destination(self) -> tuple[str, int]:
        if self._use_unicast:
            return (self.unicast_host, self.port)
        return (self.group, self.port)

    @property
    def is_unicast(self) -> bool:
        return self._use_unicast

    @staticmethod
    def _detect_primary_ip() -> str:
        tmp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            tmp.connect(("1.1.1.1", 80))
            return tmp.getsockname()[0]
        except OSError:
            return "127.0.0.1"
        finally:
            tmp.close()

    def _probe_multicast(self, sock: socket.socket, timeout: float = 0.1) -> bool:
        """Join the group on a throwaway receiver and check a probe comes back."""
        recv_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            recv_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    recv_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            recv_sock.bind(("", self.port))
            mreq = socket.inet_aton(self.group) + socket.inet_aton(self.iface_ip)
            recv_sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            recv_sock.settimeout(timeout)

            token = b"DLSIK_MCAST_PROBE"
            try:
                sock.sendto(token, (self.group, self.port))
                data, _ = recv_sock.recvfrom(2048)
            except OSError as e:
                logger.debug("Multicast probe failed: %s", e)
                return False
            return data == token
        except OSError as e:
            logger.debug("Multicast probe receiver setup failed: %s", e)
            return False
        finally:
            recv_sock.close()

    def _open_unicast(self, reason: str) -> None:
        if self._sock is not None:
            self._sock.close()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 1 << 20)
        sock.setblocking(False)
        self._sock = sock
        self._use_unicast = True
        self._send_failures = 0
        logger.info(
            "VisualizationBroadcaster (%s) -> dest=%s:%d",
            reason,
            self.unicast_host,
            self.port,
        )

    def _setup_socket(self) -> None:
        if self._use_unicast:
            self._open_unicast("UNICAST")
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
        # macOS needs loopback enabled for multicast on localhost
        if sys.platform == "darwin":
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)

        verified = False
        for iface in (self.iface_ip, self._detect_primary_ip()):
            try:
                sock.setsockopt(
                    socket.IPPROTO_IP, socket.IP_MULTICAST_IF, socket.inet_aton(iface)
                )
            except OSError as e:
                logger.warning("VisualizationBroadcaster: cannot use iface %s: %s", iface, e)
                continue
            if self._probe_multicast(sock):
                self.iface_ip = iface
                verified = True
                break
            logger.warning(
                "VisualizationBroadcaster: multicast check failed on iface %s", iface
            )

        if not verified:
            sock.close()
            self._open_unicast("UNICAST-FALLBACK")
            return

        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 1 << 20)
        sock.setblocking(False)
        self._sock = sock
        logger.info(
            "VisualizationBroadcaster (MULTICAST) -> group=%s port=%d iface=%s ttl=%d",
            self.group,
            self.port,
            self.iface_ip,
            self.ttl,
        )

    def publish(
        self,
        eef: Pose,
        target: Pose,
        waypoints: tuple[Pose, Pose],
        joint_names: list[str],
        joint_positions: np.ndarray,
        loop_hz: float = 0.0,
    ) -> None:
        """Send one status frame. Never raises on network errors."""
        payload = wire.pack_status(
            frame_id=self.frame_id,
            timestamp=time.time(),
            eef=eef,
            target=target,
            waypoints=waypoints,
            marker_names=self.marker_names,
            marker_scale=self.marker_scale,
            joint_names=joint_names,
            joint_positions=joint_positions,
            loop_hz=loop_hz,
        )
        if self._sock is None:
            self._open_unicast("UNICAST-FALLBACK")
        assert self._sock is not None
        try:
            self._sock.sendto(payload, self.destination)
        except OSError as e:
            self._handle_send_failure(e)
            return
        self._send_failures = 0
        self.sent_count += 1

    def _handle_send_failure(self, e: OSError) -> None:
        self._send_failures += 1
        now = time.monotonic()
        if now - self._last_fail_log_time >= 5.0:
            logger.warning("VisualizationBroadcaster send failed: %s", e)
            self._last_fail_log_time = now
        if not self._use_unicast and self._send_failures >= self._max_send_failures:
            logger.info(
                "VisualizationBroadcaster: %d consecutive send errors; switching to UNICAST",
                self._send_failures,
            )
            self._open_unicast("UNICAST-FALLBACK")

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
