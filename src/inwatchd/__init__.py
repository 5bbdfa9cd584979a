"""
inwatchd

A daemon that watches filesystem paths with inotify and reacts to changes
by running shell commands or forwarding requests to companion daemons.

Features:
- Line-oriented watch table with hot reload and nested configuration files
- Reactions are suspended while they run, so they never re-trigger themselves
- Watches survive editors replacing files and filesystems being remounted
- Kernel queue overflow and untracked workers trigger a clean restart
"""

from .models import (
    BOOTSTRAP_SOURCE,
    CommandType,
    ControlCommand,
    ForwardToSocket,
    LoadConfig,
    ReactionKind,
    ReconcileReport,
    RunCommand,
    SetWatch,
    UpsertResult,
    WatchEntry,
    WatchEvent,
    WatchHandle,
    WatchSpec,
    WorkerHandle,
)

from .config import CompanionDaemon, DaemonConfig

from .exceptions import (
    InwatchdError,
    ConfigParseError,
    ConfigConflictError,
    WatchCreateError,
    WatchNotFoundError,
    RestartRequested,
    QueueOverflowError,
    UnknownWorkerError,
    LockHeldError,
    ForwardError,
    DaemonAlreadyRunningError,
)

from .source import NotificationSource, InotifySource
from .registry import WatchRegistry
from .reconciler import ConfigReconciler
from .executor import ActionExecutor, ShellActionExecutor
from .daemon import ExitReason, WatchDaemon

__version__ = "0.1.0"

__all__ = [
    # Models
    "BOOTSTRAP_SOURCE",
    "CommandType",
    "ControlCommand",
    "ForwardToSocket",
    "LoadConfig",
    "ReactionKind",
    "ReconcileReport",
    "RunCommand",
    "SetWatch",
    "UpsertResult",
    "WatchEntry",
    "WatchEvent",
    "WatchHandle",
    "WatchSpec",
    "WorkerHandle",
    # Config
    "CompanionDaemon",
    "DaemonConfig",
    # Exceptions
    "InwatchdError",
    "ConfigParseError",
    "ConfigConflictError",
    "WatchCreateError",
    "WatchNotFoundError",
    "RestartRequested",
    "QueueOverflowError",
    "UnknownWorkerError",
    "LockHeldError",
    "ForwardError",
    "DaemonAlreadyRunningError",
    # Components
    "NotificationSource",
    "InotifySource",
    "WatchRegistry",
    "ConfigReconciler",
    "ActionExecutor",
    "ShellActionExecutor",
    "ExitReason",
    "WatchDaemon",
]
