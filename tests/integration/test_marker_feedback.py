"""Marker feedback over loopback UDP."""

import socket
import time

import msgspec
import pytest

from dlsik.client import MarkerClient
from dlsik.protocol import wire
from dlsik.protocol.types import Pose, WaypointId
from dlsik.server.marker_feedback import MarkerFeedbackServer
from dlsik.server.waypoints import WaypointStore

START = Pose.identity()


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def server():
    store = WaypointStore(START)
    srv = MarkerFeedbackServer(store, host="127.0.0.1", port=0)
    srv.start()
    yield srv, store
    srv.stop()


@pytest.mark.integration
def test_marker_update_reaches_store(server):
    srv, store = server
    host, port = srv.address
    target = Pose.from_sequences([0.3, 0.1, 0.2], [0.0, 0.0, 0.0, 2.0])

    with MarkerClient(host, port) as client:
        client.set_target("eef_target2", target)
        assert _wait_for(lambda: store.version(WaypointId.B) == 1)

    pose = store.get(WaypointId.B)
    assert pose.position == (0.3, 0.1, 0.2)
    # Normalized on receipt
    assert pose.orientation == (0.0, 0.0, 0.0, 1.0)
    assert store.get(WaypointId.A) == START


@pytest.mark.integration
def test_bad_packets_are_ignored(server):
    srv, store = server
    host, port = srv.address
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.sendto(b"not msgpack \xc1", (host, port))
        sock.sendto(
            wire.pack_marker_feedback("unknown_marker", START), (host, port)
        )
        zero_quat = msgspec.msgpack.encode(
            [int(wire.MsgType.MARKER_FEEDBACK), "eef_target1", [[0, 0, 0], [0, 0, 0, 0]]]
        )
        sock.sendto(zero_quat, (host, port))
        assert _wait_for(lambda: srv.rejected_count == 3)
    finally:
        sock.close()

    assert srv.accepted_count == 0
    assert store.version(WaypointId.A) == 0
    assert store.version(WaypointId.B) == 0


@pytest.mark.integration
def test_stop_is_prompt():
    srv = MarkerFeedbackServer(WaypointStore(START), host="127.0.0.1", port=0)
    srv.start()
    t0 = time.monotonic()
    srv.stop()
    assert time.monotonic() - t0 < 1.0
