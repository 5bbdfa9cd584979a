"""Wipe/restore: keep a reaction from re-triggering its own watch."""

import logging
from typing import Callable, Optional

from .masks import CONTENT_EVENTS, SELF_GONE
from .models import WatchEntry, WatchEvent
from .registry import WatchRegistry, read_inode

logger = logging.getLogger(__name__)


class WipeRestoreProtocol:
    """
    Suspends a path's reaction callback while that reaction runs.

    ``wipe`` swaps the live callback for a sentinel and marks the entry
    suspended; ``restore`` puts the reaction callback back, or rebuilds the
    watch from scratch when the file was replaced in the meantime. A
    suspended entry never has its reaction callback attached.
    """

    def __init__(
        self,
        registry: WatchRegistry,
        anomaly_handler: Callable[[WatchEvent, Optional[str]], None],
    ):
        """
        Initialize the protocol.

        Args:
            registry: Registry owning the entries and their watches
            anomaly_handler: Receives error-class events seen while suspended
        """
        self.registry = registry
        self._anomaly_handler = anomaly_handler

    def wipe(self, entry: WatchEntry) -> None:
        """Detach the reaction callback of an entry before its reaction runs."""
        entry.missing_at_wipe = entry.handle is None
        entry.suspended = True

        if entry.handle is None:
            logger.debug(f"Suspended unwatched {entry.path}")
            return

        sentinel = self.registry.sentinel_callback(entry.path)
        if not self.registry.source.set_callback(entry.handle, sentinel):
            # Descriptor no longer registered; restore will rebuild.
            logger.debug(f"Watch on {entry.path} vanished before suspension")
            entry.handle = None
        logger.debug(f"Suspended {entry.path}")

    def restore(self, entry: WatchEntry) -> bool:
        """
        Reattach the reaction callback after the reaction finished.

        If the inode is unchanged the existing watch is reused; otherwise
        the stale watch is cancelled and a fresh one created, replaying
        create-if-missing, and run-if-missing when the path vanished while
        the reaction ran.

        Returns:
            True if the entry is watched again
        """
        if not entry.suspended:
            logger.debug(f"{entry.path} is not suspended; nothing to restore")
            return entry.handle is not None

        entry.suspended = False
        current = read_inode(entry.path)

        if entry.handle is not None and current is not None and current == entry.last_inode:
            callback = self.registry.reaction_callback(entry.path)
            if self.registry.source.set_callback(entry.handle, callback):
                logger.debug(f"Restored {entry.path}")
                return True

        if current is None:
            logger.info(f"{entry.path} disappeared while its reaction ran; rebuilding watch")
        else:
            logger.info(f"{entry.path} was replaced while its reaction ran; rebuilding watch")
        return self.registry.rebuild(entry, fire_missing=not entry.missing_at_wipe)

    def rebuild_after_loss(self, entry: WatchEntry, event: WatchEvent) -> bool:
        """
        Cancel and recreate a watch whose path was deleted or moved away.

        Returns:
            True if the entry's reaction should run for this event: the
            kind was requested explicitly, or the path came back (an
            editor replacing the file) and content changes were requested
        """
        requested = entry.spec.mask
        logger.info(f"{entry.path} went away; recreating watch")
        if event.mask & requested & SELF_GONE:
            self.registry.rebuild(entry, fire_missing=False)
            return True

        watched = self.registry.rebuild(entry)
        return watched and bool(requested & CONTENT_EVENTS)

    def on_suspended_event(self, path: str, event: WatchEvent) -> None:
        """Sentinel callback: handle events for a path whose reaction is running."""
        if event.is_error:
            self._anomaly_handler(event, path)
            return

        entry = self.registry.get(path)
        if entry is None:
            return

        if event.is_self_gone:
            logger.info(f"{path} went away while its reaction was running; recreating watch")
            self.registry.rebuild(entry, fire_missing=False)
            return

        logger.debug(f"Suppressed {'|'.join(event.kinds)} on {path} while its reaction runs")
