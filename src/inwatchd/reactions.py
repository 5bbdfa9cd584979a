"""Reaction dispatch: decide what a fired watch does and hand it off."""

import logging
import re
import shlex
from typing import Optional

from .exceptions import ConfigConflictError, ConfigParseError
from .executor import ActionExecutor
from .masks import describe_mask
from .models import (
    ForwardToSocket,
    LoadConfig,
    Reaction,
    RunCommand,
    SetWatch,
    WatchEntry,
    WatchEvent,
    WorkerHandle,
)
from .protocol import WipeRestoreProtocol
from .reconciler import ConfigReconciler
from .workers import WorkerManager

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$([@#%&$])")


def expand_placeholders(
    template: str,
    path: str,
    event: Optional[WatchEvent] = None,
    quote: bool = True,
) -> str:
    """
    Substitute event details into a command line or payload.

    ``$@`` watched path, ``$#`` event file name, ``$%`` symbolic event
    kinds, ``$&`` numeric mask, ``$$`` a literal ``$``.

    Args:
        template: Text with placeholders
        path: Watched path
        event: Triggering event, None for direct invocations
        quote: Shell-quote substituted values
    """
    mask = event.mask if event is not None else 0
    values = {
        "@": path,
        "#": event.name if event is not None else "",
        "%": describe_mask(mask) if mask else "",
        "&": str(mask),
    }

    def _sub(match: "re.Match") -> str:
        key = match.group(1)
        if key == "$":
            return "$"
        value = values[key]
        return shlex.quote(value) if quote else value

    return _PLACEHOLDER.sub(_sub, template)


class ReactionDispatcher:
    """
    Routes a fired watch to its reaction.

    Commands and forwards run on workers inside the wipe/restore window;
    LOAD_CONF and SET_WATCH are carried out inline by the reconciler.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        workers: WorkerManager,
        protocol: WipeRestoreProtocol,
        reconciler: ConfigReconciler,
    ):
        self.executor = executor
        self.workers = workers
        self.protocol = protocol
        self.reconciler = reconciler

    def dispatch(
        self,
        entry: WatchEntry,
        event: Optional[WatchEvent] = None,
        reaction: Optional[Reaction] = None,
    ) -> Optional[WorkerHandle]:
        """
        Execute a reaction for an entry.

        Args:
            entry: Entry the reaction belongs to
            event: Triggering event, None for direct invocations
            reaction: Reaction to run instead of the entry's own

        Returns:
            The worker handle for asynchronous reactions, else None
        """
        reaction = reaction or entry.reaction

        if isinstance(reaction, RunCommand):
            cmdline = expand_placeholders(reaction.cmdline, entry.path, event, quote=True)
            return self._spawn(entry, lambda: self.executor.run_command(cmdline), cmdline)

        if isinstance(reaction, ForwardToSocket):
            daemon = reaction.daemon
            payload = expand_placeholders(reaction.payload, entry.path, event, quote=False)
            return self._spawn(
                entry,
                lambda: self.executor.forward(daemon, payload),
                f"@{daemon} {payload}",
            )

        if isinstance(reaction, LoadConfig):
            target = reaction.resolve(entry.path)
            logger.info(f"{entry.path}: loading {target}")
            self.reconciler.load(target, owner=entry.source)
            return None

        if isinstance(reaction, SetWatch):
            try:
                self.reconciler.set_watch(reaction, entry.source)
            except (ConfigParseError, ConfigConflictError) as e:
                logger.warning(f"{entry.path}: cannot set watch on {reaction.path}: {e}")
            return None

        raise TypeError(f"unsupported reaction: {reaction!r}")

    def _spawn(self, entry: WatchEntry, job, description: str) -> WorkerHandle:
        self.protocol.wipe(entry)
        try:
            return self.workers.spawn(entry.path, entry.serial, job, description)
        except RuntimeError:
            # Worker manager already shut down
            self.protocol.restore(entry)
            raise
