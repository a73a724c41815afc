"""Tests for reconsweep.validator - ping and sockets are mocked."""

import subprocess

import pytest

from reconsweep.models import ScanTarget
from reconsweep.validator import TargetValidator, build_ping_command


class FakeConnector:
    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    def __call__(self, host, port, timeout):
        self.calls.append(port)
        exc = self.outcomes.get(port, TimeoutError("timed out"))
        if exc is not None:
            raise exc


@pytest.fixture
def ping_binary(mocker):
    mocker.patch("reconsweep.validator.shutil.which", return_value="/bin/ping")
    mocker.patch("reconsweep.validator.platform.system", return_value="Linux")


class TestBuildPingCommand:
    def test_linux(self, ping_binary):
        assert build_ping_command("10.0.0.5", 2.0) == ["/bin/ping", "-n", "-c", "1", "-W", "2", "10.0.0.5"]

    def test_fractional_timeout_rounded_up(self, ping_binary):
        assert build_ping_command("10.0.0.5", 0.5)[5] == "1"

    def test_windows(self, mocker):
        mocker.patch("reconsweep.validator.shutil.which", return_value="ping.exe")
        mocker.patch("reconsweep.validator.platform.system", return_value="Windows")
        assert build_ping_command("10.0.0.5", 2.0, count=2) == ["ping.exe", "-n", "2", "-w", "2000", "10.0.0.5"]

    def test_no_ping_binary(self, mocker):
        mocker.patch("reconsweep.validator.shutil.which", return_value=None)
        assert build_ping_command("10.0.0.5", 2.0) is None


class TestIsReachable:
    def test_ping_success(self, ping_binary, mocker):
        run = mocker.patch(
            "reconsweep.validator.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0),
        )
        connector = FakeConnector()
        validator = TargetValidator(connect=connector)
        assert validator.is_reachable(ScanTarget("10.0.0.5")) is True
        assert run.call_count == 1
        assert connector.calls == []

    def test_ping_failure_tcp_fallback(self, ping_binary, mocker):
        mocker.patch(
            "reconsweep.validator.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1),
        )
        connector = FakeConnector({443: None})
        validator = TargetValidator(connect=connector)
        assert validator.is_reachable(ScanTarget("10.0.0.5")) is True
        assert connector.calls == [80, 443]

    def test_fallback_tries_target_ports_first(self, ping_binary, mocker):
        mocker.patch(
            "reconsweep.validator.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1),
        )
        connector = FakeConnector({3389: None})
        target = ScanTarget("10.0.0.5", ports=(8080, 3389, 22, 21))
        assert TargetValidator(connect=connector).is_reachable(target) is True
        assert connector.calls == [8080, 3389]

    def test_refused_counts_as_alive(self, ping_binary, mocker):
        mocker.patch(
            "reconsweep.validator.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1),
        )
        connector = FakeConnector({80: ConnectionRefusedError("refused")})
        assert TargetValidator(connect=connector).is_reachable(ScanTarget("10.0.0.5")) is True

    def test_unreachable(self, ping_binary, mocker):
        mocker.patch(
            "reconsweep.validator.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1),
        )
        connector = FakeConnector()
        assert TargetValidator(connect=connector).is_reachable(ScanTarget("10.0.0.5")) is False
        assert connector.calls == [80, 443, 22]

    def test_fallback_disabled(self, ping_binary, mocker):
        mocker.patch(
            "reconsweep.validator.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1),
        )
        connector = FakeConnector({80: None})
        validator = TargetValidator(tcp_fallback=False, connect=connector)
        assert validator.is_reachable(ScanTarget("10.0.0.5")) is False
        assert connector.calls == []

    def test_ping_timeout_is_failure(self, ping_binary, mocker):
        mocker.patch(
            "reconsweep.validator.subprocess.run",
            side_effect=subprocess.TimeoutExpired("ping", 4),
        )
        validator = TargetValidator(tcp_fallback=False)
        assert validator.ping("10.0.0.5") is False

    def test_missing_ping_uses_tcp(self, mocker):
        mocker.patch("reconsweep.validator.shutil.which", return_value=None)
        run = mocker.patch("reconsweep.validator.subprocess.run")
        connector = FakeConnector({22: None})
        assert TargetValidator(connect=connector).is_reachable(ScanTarget("10.0.0.5")) is True
        run.assert_not_called()
