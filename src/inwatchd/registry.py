"""Watch registry: path to watch state, and the kernel watch each entry owns."""

import itertools
import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .exceptions import ConfigConflictError, WatchCreateError, WatchNotFoundError
from .masks import describe_mask
from .models import UpsertResult, WatchEntry, WatchEvent, WatchSpec
from .source import NotificationSource

logger = logging.getLogger(__name__)

Handler = Callable[[str, WatchEvent], None]


class ReactionCallback:
    """Callback attached to an active watch; routes events to the reaction path."""

    is_sentinel = False

    def __init__(self, path: str, handler: Handler):
        self.path = path
        self.handler = handler

    def __call__(self, event: WatchEvent) -> None:
        self.handler(self.path, event)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path!r})"


class SentinelCallback(ReactionCallback):
    """Callback attached while the entry's own reaction is running."""

    is_sentinel = True


def read_inode(path: str) -> Optional[int]:
    """Inode of ``path``, or None if it does not exist."""
    try:
        return os.stat(path).st_ino
    except OSError:
        return None


class WatchRegistry:
    """
    Table of watched paths.

    Every entry holds at most one kernel watch. ``upsert`` refuses to let
    one configuration source take over a path owned by another, and
    replaces an entry wholesale when its semantics change.
    """

    def __init__(
        self,
        source: NotificationSource,
        reaction_handler: Handler,
        sentinel_handler: Handler,
        grace_ms: int = 100,
        missing_handler: Optional[Callable[[WatchEntry], None]] = None,
    ):
        """
        Initialize the registry.

        Args:
            source: Notification source that owns the kernel watches
            reaction_handler: Called as (path, event) by active watches
            sentinel_handler: Called as (path, event) by suspended watches
            grace_ms: Wait before giving up on a missing path
            missing_handler: Called with entries whose path is missing and
                which ask for their reaction to run in that case
        """
        self.source = source
        self.grace_ms = grace_ms
        self._reaction_handler = reaction_handler
        self._sentinel_handler = sentinel_handler
        self._missing_handler = missing_handler
        self._entries: Dict[str, WatchEntry] = {}
        self._serials = itertools.count(1)
        self._lock = threading.RLock()
        # Descriptor of the most recent watch deletion; see AnomalyHandler.
        self.last_reused_wd: Optional[int] = None

    def reaction_callback(self, path: str) -> ReactionCallback:
        return ReactionCallback(path, self._reaction_handler)

    def sentinel_callback(self, path: str) -> SentinelCallback:
        return SentinelCallback(path, self._sentinel_handler)

    def upsert(self, spec: WatchSpec) -> UpsertResult:
        """
        Add or replace the entry for ``spec.path``.

        Returns:
            ADDED, UPDATED or UNCHANGED

        Raises:
            ConfigConflictError: If the path is owned by a different source
        """
        with self._lock:
            existing = self._entries.get(spec.path)
            if existing is not None:
                if existing.source != spec.source:
                    raise ConfigConflictError(spec.path, existing.source, spec.source)
                if existing.spec.same_semantics(spec):
                    return UpsertResult.UNCHANGED
                self.teardown(existing)
                del self._entries[spec.path]
                result = UpsertResult.UPDATED
            else:
                result = UpsertResult.ADDED

            entry = WatchEntry(spec=spec, serial=next(self._serials))
            self._entries[spec.path] = entry
            logger.info(
                f"{'Updated' if result is UpsertResult.UPDATED else 'Added'} watch: "
                f"{spec.describe()} [{spec.source}]"
            )
            self.establish(entry)
            return result

    def remove(self, path: str) -> Optional[WatchEntry]:
        """
        Delete an entry and its kernel watch.

        Returns:
            The removed entry, or None if the path was not registered
        """
        with self._lock:
            entry = self._entries.pop(path, None)
            if entry is None:
                return None
            self.teardown(entry)
            logger.info(f"Removed watch: {path} [{entry.source}]")
            return entry

    def get(self, path: str) -> Optional[WatchEntry]:
        with self._lock:
            return self._entries.get(path)

    def entry_for_wd(self, wd: int) -> Optional[WatchEntry]:
        """Entry whose live handle has this descriptor."""
        with self._lock:
            for entry in self._entries.values():
                if entry.handle is not None and entry.handle.wd == wd:
                    return entry
            return None

    def owned_by(self, source: str) -> List[WatchEntry]:
        """Entries declared by one configuration source."""
        with self._lock:
            return [e for e in self._entries.values() if e.source == source]

    def for_each_owned_by(self, source: str, fn: Callable[[WatchEntry], None]) -> int:
        """
        Apply ``fn`` to every entry owned by ``source``.

        Returns:
            Number of entries visited
        """
        entries = self.owned_by(source)
        for entry in entries:
            fn(entry)
        return len(entries)

    def entries(self) -> List[WatchEntry]:
        with self._lock:
            return list(self._entries.values())

    def establish(self, entry: WatchEntry, fire_missing: bool = True) -> bool:
        """
        Create the kernel watch for an entry that has none.

        Applies the create-if-missing policy and a short grace period for
        editors that replace files. A suspended entry gets the sentinel
        callback, an active one its reaction callback.

        Args:
            entry: Entry without a live handle
            fire_missing: Notify the missing handler if the path is absent
                and the entry asks for its reaction in that case

        Returns:
            True if the entry is now watched
        """
        path = entry.path
        was_missing = not os.path.lexists(path)

        if was_missing and entry.spec.create_if_missing:
            try:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
                Path(path).touch()
                logger.info(f"Created missing file {path}")
            except OSError as e:
                logger.warning(f"Could not create {path}: {e}")

        if not os.path.lexists(path) and self.grace_ms > 0:
            time.sleep(self.grace_ms / 1000.0)

        callback = (
            self.sentinel_callback(path) if entry.suspended
            else self.reaction_callback(path)
        )
        try:
            entry.handle = self.source.register(path, entry.spec.effective_mask, callback)
        except WatchNotFoundError:
            entry.handle = None
            entry.last_inode = None
            entry.missing = True
            logger.warning(f"Not watching {path}: path does not exist")
        except WatchCreateError as e:
            entry.handle = None
            entry.last_inode = None
            entry.missing = False
            logger.warning(f"Not watching {path}: {e}")
            return False
        else:
            entry.last_inode = read_inode(path)
            entry.missing = False
            logger.debug(
                f"Watch {entry.handle.wd} on {path} "
                f"({describe_mask(entry.spec.effective_mask)})"
            )

        if was_missing and fire_missing and entry.spec.run_if_missing:
            if self._missing_handler is not None:
                self._missing_handler(entry)

        return entry.handle is not None

    def teardown(self, entry: WatchEntry) -> None:
        """Cancel the kernel watch of an entry, keeping the entry."""
        if entry.handle is None:
            return
        self.source.cancel(entry.handle)
        self.last_reused_wd = entry.handle.wd
        entry.handle = None

    def rebuild(self, entry: WatchEntry, fire_missing: bool = True) -> bool:
        """Cancel and recreate the kernel watch of an entry."""
        with self._lock:
            self.teardown(entry)
            return self.establish(entry, fire_missing=fire_missing)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._entries
