"""Client helpers: move waypoint markers and watch the loop's status frames."""

from __future__ import annotations

import logging
import socket
import struct
from collections.abc import Iterator

import msgspec

from dlsik import config as cfg
from dlsik.protocol import wire
from dlsik.protocol.types import Pose

logger = logging.getLogger(__name__)


class MarkerClient:
    """Sends marker feedback datagrams to a running dlsik server."""

    def __init__(self, host: str = cfg.MARKER_HOST, port: int = cfg.MARKER_PORT):
        self.host = host
        self.port = port
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def set_target(self, marker_name: str, pose: Pose) -> None:
        """Move a marker (``eef_target1`` or ``eef_target2``) to ``pose``."""
        self._sock.sendto(
            wire.pack_marker_feedback(marker_name, pose), (self.host, self.port)
        )

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> MarkerClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def _create_multicast_socket(group: str, port: int, iface_ip: str) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        except OSError:
            pass
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 1 << 20)
    sock.bind(("", port))
    try:
        mreq = struct.pack("=4s4s", socket.inet_aton(group), socket.inet_aton(iface_ip))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
    except OSError:
        mreq_any = struct.pack("=4sl", socket.inet_aton(group), socket.INADDR_ANY)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq_any)
    return sock


def _create_unicast_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 1 << 20)
    sock.bind((host, port))
    return sock


class StatusSubscriber:
    """Blocking iterator over StatusMsg frames published by the server.

    Usage:
        with StatusSubscriber() as sub:
            for status in sub:
                print(status.eef.position)
    """

    def __init__(
        self,
        group: str = cfg.MCAST_GROUP,
        port: int = cfg.MCAST_PORT,
        iface_ip: str = cfg.MCAST_IF,
        transport: str = cfg.STATUS_TRANSPORT,
        unicast_host: str = cfg.STATUS_UNICAST_HOST,
        timeout: float | None = 2.0,
    ):
        if transport.upper() == "UNICAST":
            self._sock = _create_unicast_socket(unicast_host, port)
        else:
            # A socket bound to ("", port) also receives unicast datagrams
            self._sock = _create_multicast_socket(group, port, iface_ip)
        self._sock.settimeout(timeout)
        self.dropped = 0

    def receive(self) -> wire.StatusMsg:
        """Wait for the next valid status frame.

        Raises:
            TimeoutError: If nothing arrives within the configured timeout
        """
        while True:
            try:
                data, _ = self._sock.recvfrom(65536)
            except socket.timeout:
                raise TimeoutError("No status frame received") from None
            try:
                return wire.decode_status(data)
            except (msgspec.DecodeError, msgspec.ValidationError) as e:
                self.dropped += 1
                logger.debug("Dropping undecodable status frame: %s", e)

    def __iter__(self) -> Iterator[wire.StatusMsg]:
        while True:
            yield self.receive()

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> StatusSubscriber:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
