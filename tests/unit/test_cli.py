"""Unit tests for dlsik.server.cli argument handling."""

import logging
import os
import subprocess
import sys
from pathlib import Path

import pytest

from dlsik.config import TRACE
from dlsik.server import cli
from dlsik.utils.pinv import PinvMethod

pytestmark = pytest.mark.unit

REPO_ROOT = Path(__file__).resolve().parents[2]


@pytest.mark.parametrize(
    "argv,level",
    [
        ([], logging.INFO),
        (["-q"], logging.WARNING),
        (["-vv"], logging.DEBUG),
        (["-vvv"], TRACE),
        (["-q", "--log-level", "ERROR"], logging.ERROR),
    ],
)
def test_log_level_precedence(monkeypatch, argv, level):
    monkeypatch.setattr(cli.cfg, "TRACE_ENABLED", False)
    args = cli.build_parser().parse_args(argv)
    assert cli.resolve_log_level(args) == level


def test_flags_override_environment(monkeypatch):
    monkeypatch.setenv("DLSIK_LAMBDA", "0.3")
    monkeypatch.setenv("DLSIK_EPSILON", "0.5")
    args = cli.build_parser().parse_args(["--lambda", "0.02", "--method", "svd"])
    cfg = cli.load_config(args)
    assert cfg.damping == 0.02
    assert cfg.epsilon == 0.5
    assert cfg.pinv_method is PinvMethod.SVD
    assert cfg.debug is False


def test_invalid_config_exits_2():
    assert cli.main(["--lambda", "-1", "--no-status"]) == 2


def test_unknown_robot_exits_2():
    assert cli.main(["--robot", "NoSuchRobot", "--no-status"]) == 2


@pytest.mark.parametrize(
    "name,value",
    [("DLSIK_CONTROL_RATE_HZ", "abc"), ("DLSIK_MARKER_PORT", "abc")],
)
def test_malformed_environment_exits_2(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    assert cli.main(["--no-status"]) == 2


def test_marker_flags_override_environment(monkeypatch):
    monkeypatch.setenv("DLSIK_MARKER_PORT", "6000")
    args = cli.build_parser().parse_args(["--marker-host", "0.0.0.0"])
    endpoints = cli.load_endpoints(args)
    assert endpoints.marker_host == "0.0.0.0"
    assert endpoints.marker_port == 6000


def test_malformed_environment_does_not_break_import():
    """--help still works when an environment value cannot be parsed."""
    env = dict(os.environ, DLSIK_CONTROL_RATE_HZ="abc", DLSIK_MARKER_PORT="abc")
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(REPO_ROOT), env.get("PYTHONPATH")) if p
    )
    result = subprocess.run(
        [sys.executable, "-m", "dlsik.server.cli", "--help"],
        env=env,
        capture_output=True,
        text=True,
        timeout=120,
    )
    assert result.returncode == 0, result.stderr
    assert "Traceback" not in result.stderr
