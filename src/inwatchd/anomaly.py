"""Recovery from kernel-reported anomalies: overflow, unmount, invalidated watches."""

import logging
from typing import Optional

from .exceptions import QueueOverflowError
from .models import WatchEntry, WatchEvent
from .registry import WatchRegistry

logger = logging.getLogger(__name__)


class AnomalyHandler:
    """
    Classifies error-class events and drives recovery.

    - Queue overflow: events were lost, so the watch table can no longer be
      trusted; raises QueueOverflowError to request a full restart.
    - Unmount: recreate the watch, or drop the entry if that fails.
    - Watch invalidated (IN_IGNORED): ignored if the descriptor is the one
      most recently deleted by us, otherwise the entry is dropped.
    """

    def __init__(self, registry: WatchRegistry):
        self.registry = registry

    def handle(self, event: WatchEvent, path: Optional[str] = None) -> None:
        """
        Recover from one error-class event.

        Args:
            event: The event
            path: Watched path the event was routed to, if known

        Raises:
            QueueOverflowError: On kernel queue overflow
        """
        if event.is_overflow:
            logger.error("Kernel event queue overflowed; events were lost")
            raise QueueOverflowError("inotify event queue overflow")

        if event.is_unmount:
            self._on_unmount(event, path)
        elif event.is_ignored:
            self._on_ignored(event)

    def _find(self, event: WatchEvent, path: Optional[str]) -> Optional[WatchEntry]:
        if path is not None:
            entry = self.registry.get(path)
            if entry is not None and entry.handle is not None and entry.handle.wd == event.wd:
                return entry
        return self.registry.entry_for_wd(event.wd)

    def _on_unmount(self, event: WatchEvent, path: Optional[str]) -> None:
        entry = self._find(event, path)
        if entry is None:
            logger.warning(f"Unmount reported for unknown watch {event.wd}")
            return

        logger.warning(f"Filesystem holding {entry.path} was unmounted; recreating watch")
        if not self.registry.rebuild(entry, fire_missing=False):
            logger.warning(f"{entry.path} is gone with its filesystem; dropping watch")
            self.registry.remove(entry.path)

    def _on_ignored(self, event: WatchEvent) -> None:
        # Only the most recent deletion is remembered, so a late IN_IGNORED
        # for an older deletion is reported as unexplained.
        if event.wd == self.registry.last_reused_wd:
            logger.debug(f"Ignoring stale IN_IGNORED for recycled watch {event.wd}")
            return

        entry = self.registry.entry_for_wd(event.wd)
        if entry is None:
            logger.warning(f"IN_IGNORED for unknown watch {event.wd}")
            return

        logger.error(
            f"Watch {event.wd} on {entry.path} was invalidated by the kernel "
            f"without a known cause; dropping entry"
        )
        self.registry.remove(entry.path)
