"""Companion daemons: probe, spawn and watch the sockets of forward targets."""

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .config import CompanionDaemon
from .masks import DELETE_SELF
from .models import BOOTSTRAP_SOURCE, RunCommand, WatchSpec

logger = logging.getLogger(__name__)

# Kernel truncates /proc/<pid>/comm to this many characters.
COMM_LENGTH = 15


class CompanionRegistry:
    """
    Known companion daemons keyed by name.

    Used at bootstrap to start companions that are not running and to
    watch their sockets, and by the executor to spawn a companion once
    when a forward finds nobody listening.
    """

    def __init__(self, companions: List[CompanionDaemon], proc_root: Path = Path("/proc")):
        self._companions: Dict[str, CompanionDaemon] = {c.name: c for c in companions}
        self.proc_root = proc_root

    def get(self, name: str) -> Optional[CompanionDaemon]:
        return self._companions.get(name)

    def __iter__(self) -> Iterator[CompanionDaemon]:
        return iter(list(self._companions.values()))

    def __len__(self) -> int:
        return len(self._companions)

    def is_running(self, companion: CompanionDaemon) -> bool:
        """Whether a process with the companion's name exists."""
        wanted = companion.effective_process_name[:COMM_LENGTH]
        try:
            candidates = list(self.proc_root.iterdir())
        except OSError as e:
            logger.warning(f"Cannot list {self.proc_root}: {e}")
            return False

        for entry in candidates:
            if not entry.name.isdigit():
                continue
            try:
                comm = (entry / "comm").read_text().strip()
            except OSError:
                continue
            if comm == wanted:
                return True
        return False

    def needs_spawn(self, companion: CompanionDaemon) -> bool:
        """A companion needs starting if its socket is absent and no process runs."""
        if companion.socket_path.exists():
            return False
        return not self.is_running(companion)

    def spawn(self, companion: CompanionDaemon) -> bool:
        """
        Start a companion detached from this process.

        Returns:
            True if the process was started
        """
        argv = shlex.split(companion.executable)
        try:
            subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to start companion {companion.name} ({argv[0]}): {e}")
            return False
        logger.info(f"Started companion {companion.name}: {companion.executable}")
        return True

    def wait_for_socket(self, companion: CompanionDaemon, timeout: float) -> bool:
        """Poll until the companion's socket appears or the timeout expires."""
        deadline = time.monotonic() + timeout
        while True:
            if companion.socket_path.exists():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)

    def probe(self, wait: float = 0.0) -> List[str]:
        """
        Start every companion that is neither listening nor running.

        Args:
            wait: Seconds to wait for each started companion's socket

        Returns:
            Names of the companions started
        """
        started = []
        for companion in self:
            if not self.needs_spawn(companion):
                logger.debug(f"Companion {companion.name} is up")
                continue
            if self.spawn(companion):
                started.append(companion.name)
                if wait > 0 and not self.wait_for_socket(companion, wait):
                    logger.warning(
                        f"Companion {companion.name} did not create "
                        f"{companion.socket_path} within {wait}s"
                    )
        return started

    def bootstrap_specs(self) -> List[WatchSpec]:
        """
        Watches restarting a companion when its socket disappears.

        Companion executables are expected to detach on their own; startup
        itself is handled by ``probe``.
        """
        return [
            WatchSpec(
                path=os.path.abspath(str(companion.socket_path)),
                mask=DELETE_SELF,
                reaction=RunCommand(companion.executable),
                source=BOOTSTRAP_SOURCE,
            )
            for companion in self
        ]
