"""Configuration for the inwatchd daemon."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional


@dataclass(frozen=True)
class CompanionDaemon:
    """
    A daemon that reactions may forward requests to.

    Attributes:
        name: Name used in ``@name payload`` reactions
        socket_path: Unix socket the daemon listens on
        executable: Program that starts the daemon
        process_name: Name the running daemon shows in /proc/<pid>/comm
    """
    name: str
    socket_path: Path
    executable: str
    process_name: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "CompanionDaemon":
        """
        Parse ``NAME:SOCKET:EXECUTABLE[:PROCESS]``.

        Raises:
            ValueError: If fewer than three fields are given
        """
        parts = value.split(":")
        if len(parts) < 3 or not all(parts[:3]):
            raise ValueError(
                f"companion must be NAME:SOCKET:EXECUTABLE[:PROCESS], got {value!r}"
            )
        process_name = parts[3] if len(parts) > 3 and parts[3] else None
        return cls(
            name=parts[0],
            socket_path=Path(parts[1]),
            executable=parts[2],
            process_name=process_name,
        )

    @property
    def effective_process_name(self) -> str:
        return self.process_name or Path(self.executable.split()[0]).name


@dataclass
class DaemonConfig:
    """
    Configuration options for the daemon.

    Attributes:
        config_path: Main configuration resource (watch table)
        pid_file: File holding the singleton run-lock
        log_file: Log destination, None for stderr
        log_level: Logging level name
        grace_ms: Grace sleep before a missing path is given up on
        truncate_threshold: Resource size (bytes) at or below which it is retracted
        poll_interval_ms: Longest wait before the loop checks intent flags
        max_workers: Reactions in flight before a warning is logged
        shell: Shell used to run command reactions
        socket_dir: Directory holding ``<name>.sock`` for unregistered daemons
        socket_timeout: Seconds to wait for a companion daemon response
        spawn_wait: Seconds to wait for a freshly spawned companion socket
        companions: Known companion daemons
        bootstrap_lines: Watch lines installed at startup with source "bootstrap"
    """
    config_path: Path = field(default_factory=lambda: Path("/etc/inwatchd.conf"))
    pid_file: Path = field(default_factory=lambda: Path("/run/inwatchd.pid"))
    log_file: Optional[Path] = None
    log_level: str = "INFO"
    grace_ms: int = 100
    truncate_threshold: int = 1
    poll_interval_ms: int = 500
    max_workers: int = 16
    shell: str = "/bin/sh"
    socket_dir: Path = field(default_factory=lambda: Path("/run/inwatchd"))
    socket_timeout: float = 5.0
    spawn_wait: float = 2.0
    companions: List[CompanionDaemon] = field(default_factory=list)
    bootstrap_lines: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DaemonConfig":
        """
        Build a configuration from ``INWATCHD_*`` environment variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        config = cls()

        if env.get("INWATCHD_CONFIG"):
            config.config_path = Path(env["INWATCHD_CONFIG"])
        if env.get("INWATCHD_PID_FILE"):
            config.pid_file = Path(env["INWATCHD_PID_FILE"])
        if env.get("INWATCHD_LOG_FILE"):
            config.log_file = Path(env["INWATCHD_LOG_FILE"])
        if env.get("INWATCHD_LOG_LEVEL"):
            config.log_level = env["INWATCHD_LOG_LEVEL"].upper()
        if env.get("INWATCHD_GRACE_MS"):
            config.grace_ms = int(env["INWATCHD_GRACE_MS"])
        if env.get("INWATCHD_MAX_WORKERS"):
            config.max_workers = int(env["INWATCHD_MAX_WORKERS"])
        if env.get("INWATCHD_SOCKET_DIR"):
            config.socket_dir = Path(env["INWATCHD_SOCKET_DIR"])

        return config

    def companion_map(self) -> Dict[str, CompanionDaemon]:
        """Companions keyed by name."""
        return {c.name: c for c in self.companions}

    def socket_for(self, daemon: str) -> Path:
        """Socket path for a forward target."""
        companion = self.companion_map().get(daemon)
        if companion is not None:
            return companion.socket_path
        return self.socket_dir / f"{daemon}.sock"
