"""Data models for the inwatchd package."""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, List, Optional, Tuple, Union
import time

from .masks import (
    DELETE_SELF,
    ERROR_EVENTS,
    IGNORED,
    Q_OVERFLOW,
    SELF_GONE,
    UNMOUNT,
    describe_mask,
    mask_names,
)


BOOTSTRAP_SOURCE = "bootstrap"


class ReactionKind(Enum):
    """Closed set of things a watch can do when it fires."""
    RUN_COMMAND = "run_command"
    FORWARD = "forward"
    LOAD_CONF = "load_conf"
    SET_WATCH = "set_watch"


@dataclass(frozen=True)
class RunCommand:
    """Run a shell command line."""
    cmdline: str
    kind: ClassVar[ReactionKind] = ReactionKind.RUN_COMMAND

    def describe(self) -> str:
        return self.cmdline


@dataclass(frozen=True)
class ForwardToSocket:
    """Send a payload to a companion daemon over its local socket."""
    daemon: str
    payload: str
    kind: ClassVar[ReactionKind] = ReactionKind.FORWARD

    def describe(self) -> str:
        return f"@{self.daemon} {self.payload}".rstrip()


@dataclass(frozen=True)
class LoadConfig:
    """
    Load a configuration resource.

    Attributes:
        target: Resource to load; None means the watched path itself
    """
    target: Optional[str] = None
    kind: ClassVar[ReactionKind] = ReactionKind.LOAD_CONF

    def resolve(self, watched_path: str) -> str:
        return self.target or watched_path

    def describe(self) -> str:
        return f"LOAD_CONF {self.target}" if self.target else "LOAD_CONF"


@dataclass(frozen=True)
class SetWatch:
    """Install a further watch, written in configuration-line syntax."""
    path: str
    mask_expr: str
    reaction: str
    kind: ClassVar[ReactionKind] = ReactionKind.SET_WATCH

    def describe(self) -> str:
        return f"SET_WATCH {self.path} {self.mask_expr} {self.reaction}"


Reaction = Union[RunCommand, ForwardToSocket, LoadConfig, SetWatch]

# Executed inline on the dispatch thread, never on a worker.
INTERNAL_REACTIONS = (LoadConfig, SetWatch)


@dataclass(frozen=True)
class WatchSpec:
    """
    What a configuration line asks for.

    Attributes:
        path: Absolute path to watch
        mask: Requested event kinds (without forced bits)
        reaction: What to do when the watch fires
        source: Configuration resource that declared this spec, or "bootstrap"
        create_if_missing: Create an empty file when the path is absent
        run_if_missing: Fire the reaction when the path is absent
    """
    path: str
    mask: int
    reaction: Reaction
    source: str
    create_if_missing: bool = False
    run_if_missing: bool = False

    @property
    def effective_mask(self) -> int:
        """Mask handed to the kernel; self-deletion is always watched."""
        return self.mask | DELETE_SELF

    def same_semantics(self, other: "WatchSpec") -> bool:
        """Compare the fields that decide whether a watch must be rebuilt."""
        return (
            self.mask == other.mask
            and self.reaction == other.reaction
            and self.create_if_missing == other.create_if_missing
            and self.run_if_missing == other.run_if_missing
        )

    def describe(self) -> str:
        mask = describe_mask(self.mask)
        if self.create_if_missing:
            mask += "|IN_CREATE_SELF"
        if self.run_if_missing:
            mask += "|IN_RUN_SELF"
        return f"{self.path} {mask} {self.reaction.describe()}"


@dataclass(frozen=True)
class WatchHandle:
    """A live kernel watch: descriptor, path and mask at registration time."""
    wd: int
    path: str
    mask: int


@dataclass
class WatchEntry:
    """
    Registry state for one watched path.

    The registry exclusively owns ``handle`` while the entry is watched.
    ``serial`` changes whenever the entry is replaced, so late worker
    completions can tell whether they still refer to this entry.
    """
    spec: WatchSpec
    serial: int
    handle: Optional[WatchHandle] = None
    last_inode: Optional[int] = None
    suspended: bool = False
    missing: bool = False
    missing_at_wipe: bool = False

    @property
    def path(self) -> str:
        return self.spec.path

    @property
    def source(self) -> str:
        return self.spec.source

    @property
    def reaction(self) -> Reaction:
        return self.spec.reaction

    @property
    def state(self) -> str:
        if self.handle is None:
            return "unwatched"
        return "suspended" if self.suspended else "active"


@dataclass(frozen=True)
class WatchEvent:
    """
    One record read from the notification source.

    Attributes:
        wd: Watch descriptor the kernel attributed the event to (-1 for overflow)
        mask: Event kinds that fired
        name: File name within a watched directory, empty for the path itself
        path: Watched path as known at registration time
        cookie: Rename cookie
    """
    wd: int
    mask: int
    name: str = ""
    path: str = ""
    cookie: int = 0

    @property
    def is_error(self) -> bool:
        return bool(self.mask & ERROR_EVENTS)

    @property
    def is_overflow(self) -> bool:
        return bool(self.mask & Q_OVERFLOW)

    @property
    def is_unmount(self) -> bool:
        return bool(self.mask & UNMOUNT)

    @property
    def is_ignored(self) -> bool:
        return bool(self.mask & IGNORED)

    @property
    def is_self_gone(self) -> bool:
        return bool(self.mask & SELF_GONE)

    @property
    def kinds(self) -> List[str]:
        return mask_names(self.mask)


@dataclass(frozen=True)
class WorkerHandle:
    """Maps an in-flight worker to the entry whose reaction it runs."""
    task_id: str
    path: str
    serial: int
    description: str
    started_at: float = field(default_factory=time.time)


class CommandType(Enum):
    """Types of commands consumed by the dispatch loop."""
    EVENTS = "events"
    REAP = "reap"
    FIRE = "fire"
    DIRECT = "direct"
    RELOAD = "reload"
    DUMP_STATE = "dump_state"
    REOPEN_LOG = "reopen_log"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class ControlCommand:
    """
    One unit of work for the dispatch loop.

    Attributes:
        command_type: The type of command
        path: Target path (FIRE, DIRECT)
        events: Event batch (EVENTS)
        task_id: Completed worker (REAP)
        serial: Entry generation the command refers to (FIRE)
        args: Reaction text for a direct invocation (DIRECT)
        timestamp: Unix timestamp when the command was created
    """
    command_type: CommandType
    path: Optional[str] = None
    events: Tuple[WatchEvent, ...] = ()
    task_id: Optional[str] = None
    serial: Optional[int] = None
    args: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class UpsertResult(Enum):
    """Outcome of a registry upsert."""
    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class ReconcileReport:
    """Summary of one configuration load."""
    source: str
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    retracted: bool = False

    @property
    def mutations(self) -> int:
        """Number of registry changes this load made."""
        return len(self.added) + len(self.updated) + len(self.removed)

    def summary(self) -> str:
        return (
            f"{len(self.added)} added, {len(self.updated)} updated, "
            f"{len(self.unchanged)} unchanged, {len(self.removed)} removed, "
            f"{len(self.conflicts)} conflicts, {len(self.skipped)} skipped"
        )
