"""Tests for executor and companions modules."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from inwatchd.companions import CompanionRegistry
from inwatchd.config import CompanionDaemon, DaemonConfig
from inwatchd.exceptions import ForwardError
from inwatchd.executor import ShellActionExecutor
from inwatchd.masks import DELETE_SELF
from inwatchd.models import BOOTSTRAP_SOURCE, RunCommand


@pytest.fixture
def companion(tmp_path):
    return CompanionDaemon(
        name="dns",
        socket_path=tmp_path / "dns.sock",
        executable="/usr/sbin/dnsd --foreground",
        process_name="dnsd",
    )


@pytest.fixture
def proc_root(tmp_path):
    root = tmp_path / "proc"
    root.mkdir()
    return root


def fake_process(proc_root, pid, comm):
    entry = proc_root / str(pid)
    entry.mkdir()
    (entry / "comm").write_text(comm + "\n")


class TestRunCommand:
    """Tests for ShellActionExecutor.run_command."""

    def test_runs_through_shell(self, tmp_path):
        executor = ShellActionExecutor(DaemonConfig())
        marker = tmp_path / "ran"

        assert executor.run_command(f"echo hi > {marker}") == 0
        assert marker.read_text() == "hi\n"

    def test_returns_exit_status(self):
        executor = ShellActionExecutor(DaemonConfig())
        assert executor.run_command("exit 3") == 3

    def test_uses_configured_shell(self):
        executor = ShellActionExecutor(DaemonConfig(shell="/bin/bash"))
        completed = subprocess.CompletedProcess([], 0, stdout="", stderr="")

        with patch("inwatchd.executor.subprocess.run", return_value=completed) as run:
            executor.run_command("true")

        assert run.call_args[0][0] == ["/bin/bash", "-c", "true"]
        assert run.call_args[1]["stdin"] is subprocess.DEVNULL


def mock_client(*outcomes):
    """Patch httpx.Client so successive posts return or raise ``outcomes``."""
    client = MagicMock()
    client.__enter__.return_value = client
    client.post.side_effect = list(outcomes)
    return patch("inwatchd.executor.httpx.Client", return_value=client), client


class TestForward:
    """Tests for ShellActionExecutor.forward."""

    def test_posts_payload_to_socket(self, tmp_path):
        config = DaemonConfig(socket_dir=tmp_path)
        executor = ShellActionExecutor(config, CompanionRegistry([]))
        patcher, client = mock_client(httpx.Response(200, text="done"))

        with patcher, patch("inwatchd.executor.httpx.HTTPTransport") as transport:
            assert executor.forward("dns", "reload zone") == "done"

        transport.assert_called_once_with(uds=str(tmp_path / "dns.sock"))
        assert client.post.call_args[1]["content"] == b"reload zone"

    def test_error_status_raises(self, tmp_path):
        executor = ShellActionExecutor(DaemonConfig(socket_dir=tmp_path), CompanionRegistry([]))
        patcher, _ = mock_client(httpx.Response(500, text="broken"))

        with patcher, patch("inwatchd.executor.httpx.HTTPTransport"):
            with pytest.raises(ForwardError, match="500"):
                executor.forward("dns", "x")

    def test_unreachable_unknown_daemon_raises(self, tmp_path):
        executor = ShellActionExecutor(DaemonConfig(socket_dir=tmp_path), CompanionRegistry([]))

        with pytest.raises(ForwardError, match="cannot reach"):
            executor.forward("nobody", "x")

    def test_spawns_companion_once_when_privileged(self, companion, monkeypatch):
        config = DaemonConfig(companions=[companion], spawn_wait=0.1)
        companions = CompanionRegistry([companion])
        executor = ShellActionExecutor(config, companions)
        monkeypatch.setattr("inwatchd.executor.os.geteuid", lambda: 0)
        spawn = MagicMock(return_value=True)
        monkeypatch.setattr(companions, "spawn", spawn)
        monkeypatch.setattr(companions, "wait_for_socket", MagicMock(return_value=True))
        patcher, client = mock_client(
            httpx.ConnectError("refused"),
            httpx.Response(200, text="up"),
        )

        with patcher, patch("inwatchd.executor.httpx.HTTPTransport"):
            assert executor.forward("dns", "ping") == "up"

        spawn.assert_called_once_with(companion)
        assert client.post.call_count == 2

    def test_no_spawn_without_privilege(self, companion, monkeypatch):
        config = DaemonConfig(companions=[companion])
        companions = CompanionRegistry([companion])
        executor = ShellActionExecutor(config, companions)
        monkeypatch.setattr("inwatchd.executor.os.geteuid", lambda: 1000)
        spawn = MagicMock()
        monkeypatch.setattr(companions, "spawn", spawn)
        patcher, _ = mock_client(httpx.ConnectError("refused"))

        with patcher, patch("inwatchd.executor.httpx.HTTPTransport"):
            with pytest.raises(ForwardError):
                executor.forward("dns", "ping")

        spawn.assert_not_called()

    def test_retry_failure_raises(self, companion, monkeypatch):
        config = DaemonConfig(companions=[companion])
        companions = CompanionRegistry([companion])
        executor = ShellActionExecutor(config, companions)
        monkeypatch.setattr("inwatchd.executor.os.geteuid", lambda: 0)
        monkeypatch.setattr(companions, "spawn", MagicMock(return_value=True))
        monkeypatch.setattr(companions, "wait_for_socket", MagicMock(return_value=True))
        patcher, _ = mock_client(httpx.ConnectError("refused"), httpx.ConnectError("refused"))

        with patcher, patch("inwatchd.executor.httpx.HTTPTransport"):
            with pytest.raises(ForwardError):
                executor.forward("dns", "ping")


class TestCompanionRegistry:
    """Tests for CompanionRegistry."""

    def test_lookup(self, companion):
        companions = CompanionRegistry([companion])
        assert companions.get("dns") is companion
        assert companions.get("other") is None
        assert list(companions) == [companion]

    def test_is_running(self, companion, proc_root):
        fake_process(proc_root, 1, "init")
        companions = CompanionRegistry([companion], proc_root=proc_root)
        assert not companions.is_running(companion)

        fake_process(proc_root, 42, "dnsd")
        assert companions.is_running(companion)

    def test_process_name_truncated_like_comm(self, tmp_path, proc_root):
        long_name = CompanionDaemon("x", tmp_path / "x.sock", "/opt/a-very-long-daemon-name")
        fake_process(proc_root, 7, "a-very-long-dae")
        companions = CompanionRegistry([long_name], proc_root=proc_root)
        assert companions.is_running(long_name)

    def test_needs_spawn(self, companion, proc_root):
        companions = CompanionRegistry([companion], proc_root=proc_root)
        assert companions.needs_spawn(companion)

        companion.socket_path.touch()
        assert not companions.needs_spawn(companion)

    def test_probe_spawns_missing(self, companion, proc_root):
        companions = CompanionRegistry([companion], proc_root=proc_root)

        with patch("inwatchd.companions.subprocess.Popen") as popen:
            assert companions.probe() == ["dns"]

        assert popen.call_args[0][0] == ["/usr/sbin/dnsd", "--foreground"]
        assert popen.call_args[1]["start_new_session"] is True

    def test_probe_skips_running(self, companion, proc_root):
        fake_process(proc_root, 42, "dnsd")
        companions = CompanionRegistry([companion], proc_root=proc_root)

        with patch("inwatchd.companions.subprocess.Popen") as popen:
            assert companions.probe() == []

        popen.assert_not_called()

    def test_spawn_failure(self, companion):
        companions = CompanionRegistry([companion])
        with patch("inwatchd.companions.subprocess.Popen", side_effect=OSError("nope")):
            assert companions.spawn(companion) is False

    def test_wait_for_socket(self, companion):
        companions = CompanionRegistry([companion])
        assert not companions.wait_for_socket(companion, timeout=0.05)
        companion.socket_path.touch()
        assert companions.wait_for_socket(companion, timeout=0.05)

    def test_bootstrap_specs(self, companion):
        (spec,) = CompanionRegistry([companion]).bootstrap_specs()

        assert spec.path == str(companion.socket_path)
        assert spec.mask == DELETE_SELF
        assert spec.reaction == RunCommand("/usr/sbin/dnsd --foreground")
        assert spec.source == BOOTSTRAP_SOURCE
