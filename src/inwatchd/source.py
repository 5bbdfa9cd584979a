"""Notification source: kernel watches plus the callback attached to each."""

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from inotify_simple import INotify

from .exceptions import WatchCreateError, WatchNotFoundError
from .models import WatchEvent, WatchHandle

logger = logging.getLogger(__name__)

Callback = Callable[[WatchEvent], None]

# (wd, mask, cookie, name) as read from the kernel
RawEvent = Tuple[int, int, int, str]


class NotificationSource(ABC):
    """
    Registers watches on paths and yields the events they produce.

    Subclasses provide the kernel calls; this class keeps the table of
    callbacks keyed by watch descriptor, which the dispatch loop consults
    for every event. Swapping a callback never touches the kernel watch.
    """

    def __init__(self):
        self._callbacks: Dict[int, Callback] = {}
        self._paths: Dict[int, str] = {}
        self._lock = threading.Lock()

    @abstractmethod
    def _add_watch(self, path: str, mask: int) -> int:
        """Add a kernel watch and return its descriptor."""
        pass

    @abstractmethod
    def _rm_watch(self, wd: int) -> None:
        """Remove a kernel watch."""
        pass

    @abstractmethod
    def _read(self, timeout_ms: Optional[int]) -> List[RawEvent]:
        """Block until events are available or the timeout expires."""
        pass

    def register(self, path: str, mask: int, callback: Callback) -> WatchHandle:
        """
        Start watching a path.

        Args:
            path: Path to watch
            mask: Kernel event mask
            callback: Called with each WatchEvent for this watch

        Returns:
            Handle identifying the new watch

        Raises:
            WatchNotFoundError: If the path does not exist
            WatchCreateError: If the kernel refuses the watch
        """
        if not os.path.lexists(path):
            raise WatchNotFoundError(f"cannot watch missing path: {path}")

        try:
            wd = self._add_watch(path, mask)
        except FileNotFoundError as e:
            raise WatchNotFoundError(f"cannot watch missing path: {path}") from e
        except OSError as e:
            raise WatchCreateError(f"cannot watch {path}: {e}") from e

        with self._lock:
            previous = self._paths.get(wd)
            if previous is not None and previous != path:
                logger.warning(
                    f"{path} shares watch descriptor {wd} with {previous}; "
                    f"events will be reported for {path}"
                )
            self._callbacks[wd] = callback
            self._paths[wd] = path

        return WatchHandle(wd=wd, path=path, mask=mask)

    def cancel(self, handle: WatchHandle) -> bool:
        """
        Stop watching.

        Returns:
            True if the kernel watch was removed, False if the kernel had
            already dropped it (deleted or unmounted path)
        """
        with self._lock:
            self._callbacks.pop(handle.wd, None)
            self._paths.pop(handle.wd, None)

        try:
            self._rm_watch(handle.wd)
            return True
        except OSError as e:
            logger.debug(f"Watch {handle.wd} on {handle.path} already gone: {e}")
            return False

    def set_callback(self, handle: WatchHandle, callback: Callback) -> bool:
        """
        Replace the callback of a live watch.

        Returns:
            True if replaced, False if the watch is not registered
        """
        with self._lock:
            if self._paths.get(handle.wd) != handle.path:
                return False
            self._callbacks[handle.wd] = callback
            return True

    def callback_for(self, wd: int) -> Optional[Callback]:
        """Current callback for a watch descriptor."""
        with self._lock:
            return self._callbacks.get(wd)

    def read_events(self, timeout_ms: Optional[int] = None) -> List[WatchEvent]:
        """
        Block until a batch of events is available.

        Args:
            timeout_ms: Give up after this many milliseconds, None to wait forever

        Returns:
            Events in kernel order; empty on timeout
        """
        raw = self._read(timeout_ms)
        with self._lock:
            return [
                WatchEvent(
                    wd=wd,
                    mask=mask,
                    name=name or "",
                    path=self._paths.get(wd, ""),
                    cookie=cookie,
                )
                for wd, mask, cookie, name in raw
            ]

    def watched(self) -> Dict[int, str]:
        """Snapshot of watch descriptor to path."""
        with self._lock:
            return dict(self._paths)

    def close(self) -> None:
        """Release the underlying facility."""
        with self._lock:
            self._callbacks.clear()
            self._paths.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)


class InotifySource(NotificationSource):
    """Linux inotify via inotify_simple."""

    def __init__(self):
        super().__init__()
        self._inotify = INotify()

    def _add_watch(self, path: str, mask: int) -> int:
        return self._inotify.add_watch(path, mask)

    def _rm_watch(self, wd: int) -> None:
        self._inotify.rm_watch(wd)

    def _read(self, timeout_ms: Optional[int]) -> List[RawEvent]:
        return [
            (event.wd, event.mask, event.cookie, event.name)
            for event in self._inotify.read(timeout=timeout_ms)
        ]

    def fileno(self) -> int:
        return self._inotify.fileno()

    def close(self) -> None:
        super().close()
        self._inotify.close()
