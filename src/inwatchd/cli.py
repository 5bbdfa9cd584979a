"""
Command line interface for the inwatchd daemon.

Usage:
    inwatchd run --config /etc/inwatchd.conf --pid-file /run/inwatchd.pid
    inwatchd check --config /etc/inwatchd.conf
    inwatchd forward blocklist "reload /data/list.txt"
"""

import argparse
import fcntl
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from .companions import CompanionRegistry
from .config import CompanionDaemon, DaemonConfig
from .daemon import ExitReason, WatchDaemon
from .exceptions import ConfigParseError, ForwardError, LockHeldError
from .executor import ShellActionExecutor
from .logs import configure_logging
from .parser import iter_config

logger = logging.getLogger("inwatchd.cli")


class RunLock:
    """Exclusive lock on the pid file; one daemon per pid file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        """
        Take the lock and record our pid.

        Raises:
            LockHeldError: If another process holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockHeldError(f"{self.path} is held by another instance")

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class SignalIntents:
    """Map operator signals to daemon intents (SIGHUP, SIGUSR1, SIGUSR2, SIGINT, SIGTERM)."""

    def __init__(self, daemon: WatchDaemon):
        self.daemon = daemon
        signal.signal(signal.SIGHUP, self._reload)
        signal.signal(signal.SIGUSR1, self._dump)
        signal.signal(signal.SIGUSR2, self._reopen_log)
        signal.signal(signal.SIGINT, self._stop)
        signal.signal(signal.SIGTERM, self._stop)

    def _reload(self, signum, frame):
        self.daemon.request_reload()

    def _dump(self, signum, frame):
        self.daemon.request_dump()

    def _reopen_log(self, signum, frame):
        self.daemon.request_reopen_log()

    def _stop(self, signum, frame):
        self.daemon.request_stop()


def build_config(args) -> DaemonConfig:
    """Environment first, then command line flags."""
    config = DaemonConfig.from_env()
    if getattr(args, "config", None):
        config.config_path = Path(args.config)
    if getattr(args, "pid_file", None):
        config.pid_file = Path(args.pid_file)
    if getattr(args, "log_file", None):
        config.log_file = Path(args.log_file)
    if getattr(args, "log_level", None):
        config.log_level = args.log_level.upper()
    if getattr(args, "verbose", False):
        config.log_level = "DEBUG"
    for value in getattr(args, "companion", None) or []:
        config.companions.append(CompanionDaemon.parse(value))
    return config


def respawn(argv: List[str]) -> None:
    """Start a fresh, detached instance with the same arguments."""
    cmd = [sys.executable, "-m", "inwatchd", *argv]
    logger.info(f"Starting replacement instance: {' '.join(cmd)}")
    subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )


def cmd_run(args) -> int:
    """Run the daemon until stopped."""
    config = args.daemon_config
    lock = RunLock(config.pid_file)
    try:
        lock.acquire()
    except LockHeldError as e:
        logger.error(f"Not starting: {e}")
        return 1

    logger.info(f"Starting inwatchd (pid {os.getpid()}) with {config.config_path}")
    try:
        daemon = WatchDaemon(config)
        SignalIntents(daemon)
        try:
            reason = daemon.run()
        finally:
            daemon.close()
    finally:
        lock.release()

    if reason is ExitReason.RESTART:
        respawn(args.argv)
    return 0


def cmd_check(args) -> int:
    """Parse a configuration resource and report every line."""
    config = args.daemon_config
    path = os.path.abspath(config.config_path)
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.error(f"Cannot read {path}: {e}")
        return 1

    skipped = 0
    for lineno, item in iter_config(text, path, os.path.dirname(path)):
        if isinstance(item, ConfigParseError):
            skipped += 1
            print(f"{path}:{lineno}: skipped: {item}")
        else:
            print(f"{path}:{lineno}: {item.describe()}")
    return 1 if skipped else 0


def cmd_forward(args) -> int:
    """Send one payload to a companion daemon."""
    config = args.daemon_config
    executor = ShellActionExecutor(config, CompanionRegistry(config.companions))
    try:
        response = executor.forward(args.name, args.payload)
    except ForwardError as e:
        logger.error(str(e))
        return 1
    print(response)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inwatchd",
        description="Run reactions when watched files change",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the daemon
  inwatchd run --config /etc/inwatchd.conf

  # Validate a configuration file
  inwatchd check --config ./inwatchd.conf

  # Talk to a companion daemon
  inwatchd forward blocklist "reload"
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the watch daemon")
    run_parser.add_argument("--config", help="Configuration resource")
    run_parser.add_argument("--pid-file", help="Run-lock / pid file")
    run_parser.add_argument("--log-file", help="Log to this file instead of stderr")
    run_parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, ...)")
    run_parser.add_argument(
        "--companion",
        action="append",
        metavar="NAME:SOCKET:EXECUTABLE[:PROCESS]",
        help="Companion daemon (repeatable)",
    )
    run_parser.set_defaults(func=cmd_run)

    check_parser = subparsers.add_parser("check", help="Validate a configuration resource")
    check_parser.add_argument("--config", help="Configuration resource")
    check_parser.set_defaults(func=cmd_check)

    forward_parser = subparsers.add_parser("forward", help="Send a payload to a companion daemon")
    forward_parser.add_argument("name", help="Companion daemon name")
    forward_parser.add_argument("payload", help="Request payload")
    forward_parser.add_argument(
        "--companion",
        action="append",
        metavar="NAME:SOCKET:EXECUTABLE[:PROCESS]",
        help="Companion daemon (repeatable)",
    )
    forward_parser.set_defaults(func=cmd_forward)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(find_dotenv(usecwd=True))

    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        args.daemon_config = build_config(args)
    except ValueError as e:
        parser.error(str(e))
    args.argv = argv

    configure_logging(args.daemon_config.log_level, args.daemon_config.log_file)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
