"""Shared fixtures: an in-memory notification source and a recording executor."""

import errno
import threading
import time
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple, Union
from unittest.mock import Mock

import pytest

from inwatchd.companions import CompanionRegistry
from inwatchd.config import DaemonConfig
from inwatchd.daemon import WatchDaemon
from inwatchd.executor import ActionExecutor
from inwatchd.masks import IGNORED
from inwatchd.registry import WatchRegistry
from inwatchd.source import NotificationSource


class FakeSource(NotificationSource):
    """
    Notification source backed by dicts instead of the kernel.

    Descriptors are handed out sequentially and never reused. Removing a
    watch queues IN_IGNORED for it, as the kernel does.
    """

    def __init__(self):
        super().__init__()
        self._next_wd = 1
        self.kernel: Dict[int, Tuple[str, int]] = {}
        self.pending: List[Tuple[int, int, int, str]] = []
        self.closed = False
        self._pending_lock = threading.Lock()

    def _add_watch(self, path: str, mask: int) -> int:
        wd = self._next_wd
        self._next_wd += 1
        self.kernel[wd] = (path, mask)
        return wd

    def _rm_watch(self, wd: int) -> None:
        if wd not in self.kernel:
            raise OSError(errno.EINVAL, "Invalid argument")
        del self.kernel[wd]
        self._queue((wd, IGNORED, 0, ""))

    def _read(self, timeout_ms: Optional[int]) -> List[Tuple[int, int, int, str]]:
        if not self.pending and timeout_ms:
            time.sleep(timeout_ms / 1000.0)
        with self._pending_lock:
            events, self.pending = self.pending, []
        return events

    def wd_for(self, path) -> int:
        path = str(path)
        matches = [wd for wd, (p, _) in list(self.kernel.items()) if p == path]
        if not matches:
            raise KeyError(path)
        return matches[-1]

    def mask_for(self, path) -> int:
        return self.kernel[self.wd_for(path)][1]

    def emit(self, target: Union[str, int], mask: int, name: str = "", cookie: int = 0) -> int:
        """Queue an event for a path (its current watch) or a raw descriptor."""
        wd = target if isinstance(target, int) else self.wd_for(target)
        self._queue((wd, mask, cookie, name))
        return wd

    def drop(self, wd: int) -> None:
        """Kernel-side removal of a watch (path deleted, filesystem gone)."""
        self.kernel.pop(wd, None)
        self._queue((wd, IGNORED, 0, ""))

    def _queue(self, raw: Tuple[int, int, int, str]) -> None:
        with self._pending_lock:
            self.pending.append(raw)

    def close(self) -> None:
        super().close()
        self.closed = True


class RecordingExecutor(ActionExecutor):
    """Records reactions instead of running them; optionally blocks on a gate."""

    def __init__(self, returncode: int = 0, response: str = "ok"):
        self.returncode = returncode
        self.response = response
        self.gate: Optional[threading.Event] = None
        self.commands: List[str] = []
        self.forwards: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def run_command(self, cmdline: str) -> int:
        with self._lock:
            self.commands.append(cmdline)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return self.returncode

    def forward(self, daemon: str, payload: str) -> str:
        with self._lock:
            self.forwards.append((daemon, payload))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return self.response


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def handlers():
    return SimpleNamespace(reaction=Mock(), sentinel=Mock(), missing=Mock())


@pytest.fixture
def registry(source, handlers):
    return WatchRegistry(
        source,
        reaction_handler=handlers.reaction,
        sentinel_handler=handlers.sentinel,
        grace_ms=0,
        missing_handler=handlers.missing,
    )


@pytest.fixture
def make_daemon(tmp_path, source, executor):
    """Build a daemon on the fake source; the config file is written if text is given."""
    created = []

    def _make(config_text: Optional[str] = None, **overrides) -> WatchDaemon:
        config_path = tmp_path / "inwatchd.conf"
        if config_text is not None:
            config_path.write_text(config_text)
        options = dict(
            config_path=config_path,
            pid_file=tmp_path / "inwatchd.pid",
            grace_ms=0,
            poll_interval_ms=50,
        )
        options.update(overrides)
        daemon = WatchDaemon(
            DaemonConfig(**options),
            source=source,
            executor=executor,
            companions=CompanionRegistry([]),
            on_reopen_log=Mock(),
        )
        created.append(daemon)
        return daemon

    yield _make

    if executor.gate is not None:
        executor.gate.set()
    for daemon in created:
        daemon.close()


@pytest.fixture
def settle():
    """Wait for in-flight reactions, then drain the daemon's queue."""

    def _settle(daemon: WatchDaemon, timeout: float = 5.0) -> int:
        processed = 0
        for _ in range(10):
            assert daemon.workers.wait_all(timeout=timeout)
            count = daemon.pump()
            processed += count
            if count == 0 and len(daemon.workers) == 0:
                break
        return processed

    return _settle
