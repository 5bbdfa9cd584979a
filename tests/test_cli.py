"""Tests for the command line interface."""

import argparse
import signal
from pathlib import Path
from unittest.mock import MagicMock, Mock

import pytest

from inwatchd import cli
from inwatchd.cli import RunLock, SignalIntents, build_config, main
from inwatchd.daemon import ExitReason
from inwatchd.exceptions import ForwardError, LockHeldError


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch, tmp_path):
    """Keep main() from reconfiguring logging or picking up a stray .env."""
    monkeypatch.setattr(cli, "configure_logging", Mock())
    monkeypatch.chdir(tmp_path)
    for name in ("INWATCHD_CONFIG", "INWATCHD_PID_FILE", "INWATCHD_LOG_FILE", "INWATCHD_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def saved_signals():
    numbers = [signal.SIGHUP, signal.SIGUSR1, signal.SIGUSR2, signal.SIGINT, signal.SIGTERM]
    saved = {signum: signal.getsignal(signum) for signum in numbers}
    yield
    for signum, handler in saved.items():
        signal.signal(signum, handler)


class TestRunLock:
    """Tests for the pid file lock."""

    def test_acquire_writes_pid(self, tmp_path):
        pid_file = tmp_path / "run" / "inwatchd.pid"

        with RunLock(pid_file) as lock:
            assert lock.held
            assert pid_file.read_text().strip().isdigit()

        assert not lock.held

    def test_second_instance_refused(self, tmp_path):
        pid_file = tmp_path / "inwatchd.pid"

        with RunLock(pid_file):
            with pytest.raises(LockHeldError):
                RunLock(pid_file).acquire()

        # Free again once released
        with RunLock(pid_file):
            pass

    def test_release_without_acquire(self, tmp_path):
        RunLock(tmp_path / "inwatchd.pid").release()


class TestBuildConfig:
    """Environment and flag precedence."""

    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("INWATCHD_CONFIG", "/etc/from-env.conf")
        monkeypatch.setenv("INWATCHD_LOG_LEVEL", "warning")
        args = argparse.Namespace(config="/etc/from-flag.conf", verbose=False)

        config = build_config(args)

        assert config.config_path == Path("/etc/from-flag.conf")
        assert config.log_level == "WARNING"

    def test_verbose_forces_debug(self):
        args = argparse.Namespace(log_level="error", verbose=True)
        assert build_config(args).log_level == "DEBUG"

    def test_companions(self):
        args = argparse.Namespace(companion=["dns:/run/dns.sock:/usr/sbin/dnsd"], verbose=False)

        (companion,) = build_config(args).companions

        assert companion.name == "dns"
        assert companion.socket_path == Path("/run/dns.sock")

    def test_bad_companion_is_usage_error(self):
        with pytest.raises(SystemExit):
            main(["run", "--companion", "only-a-name"])


class TestCheck:
    """Tests for ``inwatchd check``."""

    def test_valid_config(self, tmp_path, capsys):
        conf = tmp_path / "inwatchd.conf"
        conf.write_text("# watched lists\n/data/list.txt IN_MODIFY myscript.sh\n")

        assert main(["check", "--config", str(conf)]) == 0

        out = capsys.readouterr().out
        assert f"{conf}:2: /data/list.txt IN_MODIFY myscript.sh" in out

    def test_bad_line_reported(self, tmp_path, capsys):
        conf = tmp_path / "inwatchd.conf"
        conf.write_text("/data/a IN_MODIFY ok\n/data/b IN_NOPE bad\n")

        assert main(["check", "--config", str(conf)]) == 1

        assert f"{conf}:2: skipped:" in capsys.readouterr().out

    def test_unreadable_config(self, tmp_path):
        assert main(["check", "--config", str(tmp_path / "absent.conf")]) == 1


class TestForward:
    """Tests for ``inwatchd forward``."""

    def test_prints_response(self, monkeypatch, capsys):
        executor = MagicMock()
        executor.forward.return_value = "reloaded"
        monkeypatch.setattr(cli, "ShellActionExecutor", Mock(return_value=executor))

        assert main(["forward", "dns", "reload zone"]) == 0

        executor.forward.assert_called_once_with("dns", "reload zone")
        assert capsys.readouterr().out == "reloaded\n"

    def test_failure_exit_status(self, monkeypatch):
        executor = MagicMock()
        executor.forward.side_effect = ForwardError("cannot reach dns")
        monkeypatch.setattr(cli, "ShellActionExecutor", Mock(return_value=executor))

        assert main(["forward", "dns", "x"]) == 1


class TestRun:
    """Tests for ``inwatchd run``."""

    def test_refuses_when_lock_held(self, tmp_path, monkeypatch):
        pid_file = tmp_path / "inwatchd.pid"
        daemon_class = Mock()
        monkeypatch.setattr(cli, "WatchDaemon", daemon_class)

        with RunLock(pid_file):
            assert main(["run", "--pid-file", str(pid_file)]) == 1

        daemon_class.assert_not_called()

    def test_stopped_exits_cleanly(self, tmp_path, monkeypatch):
        daemon = MagicMock()
        daemon.run.return_value = ExitReason.STOPPED
        monkeypatch.setattr(cli, "WatchDaemon", Mock(return_value=daemon))
        monkeypatch.setattr(cli, "SignalIntents", Mock())
        popen = Mock()
        monkeypatch.setattr(cli.subprocess, "Popen", popen)

        assert main(["run", "--pid-file", str(tmp_path / "inwatchd.pid")]) == 0

        daemon.close.assert_called_once_with()
        popen.assert_not_called()

    def test_restart_respawns(self, tmp_path, monkeypatch):
        daemon = MagicMock()
        daemon.run.return_value = ExitReason.RESTART
        monkeypatch.setattr(cli, "WatchDaemon", Mock(return_value=daemon))
        monkeypatch.setattr(cli, "SignalIntents", Mock())
        popen = Mock()
        monkeypatch.setattr(cli.subprocess, "Popen", popen)
        argv = ["run", "--pid-file", str(tmp_path / "inwatchd.pid")]

        assert main(argv) == 0

        cmd = popen.call_args[0][0]
        assert cmd[1:3] == ["-m", "inwatchd"]
        assert cmd[3:] == argv
        assert popen.call_args[1]["start_new_session"] is True
        # Lock was released before the replacement starts
        with RunLock(tmp_path / "inwatchd.pid"):
            pass


class TestSignalIntents:
    """Signals only set intent flags."""

    def test_handlers_installed(self, saved_signals):
        daemon = Mock()
        intents = SignalIntents(daemon)

        assert signal.getsignal(signal.SIGHUP) == intents._reload
        assert signal.getsignal(signal.SIGTERM) == intents._stop

    def test_handlers_map_to_requests(self, saved_signals):
        daemon = Mock()
        intents = SignalIntents(daemon)

        intents._reload(signal.SIGHUP, None)
        intents._dump(signal.SIGUSR1, None)
        intents._reopen_log(signal.SIGUSR2, None)
        intents._stop(signal.SIGINT, None)

        daemon.request_reload.assert_called_once_with()
        daemon.request_dump.assert_called_once_with()
        daemon.request_reopen_log.assert_called_once_with()
        daemon.request_stop.assert_called_once_with()
