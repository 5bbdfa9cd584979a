"""Watch daemon: the event dispatch loop and everything it drives."""

import logging
import os
import queue
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

from .anomaly import AnomalyHandler
from .companions import CompanionRegistry
from .config import DaemonConfig
from .exceptions import (
    ConfigConflictError,
    ConfigParseError,
    DaemonAlreadyRunningError,
    RestartRequested,
    UnknownWorkerError,
)
from .executor import ActionExecutor, ShellActionExecutor
from .logs import reopen_log_files
from .models import (
    BOOTSTRAP_SOURCE,
    INTERNAL_REACTIONS,
    CommandType,
    ControlCommand,
    ReconcileReport,
    WatchEntry,
    WatchEvent,
    WatchSpec,
    WorkerHandle,
)
from .parser import iter_config, parse_reaction
from .protocol import WipeRestoreProtocol
from .reactions import ReactionDispatcher
from .reconciler import ConfigReconciler
from .registry import WatchRegistry
from .source import InotifySource, NotificationSource
from .workers import WorkerManager

logger = logging.getLogger(__name__)

# Owner of entries created by direct invocations of unwatched paths.
DIRECT_SOURCE = "direct"


class ExitReason(Enum):
    """Why the dispatch loop returned."""
    STOPPED = "stopped"
    RESTART = "restart"


class WatchDaemon:
    """
    Watches configured paths and runs their reactions.

    A single dispatch thread owns the registry. It consumes commands from
    one queue: event batches from the reader thread, completions from
    workers, missing-path firings and direct invocations. Operator
    requests (reload, dump state, reopen log, stop) only set intent flags,
    which the loop acts on between commands, so they are safe to call
    from signal handlers.

    Example:
        daemon = WatchDaemon(DaemonConfig(config_path=Path("/etc/inwatchd.conf")))
        reason = daemon.run()
    """

    def __init__(
        self,
        config: Optional[DaemonConfig] = None,
        source: Optional[NotificationSource] = None,
        executor: Optional[ActionExecutor] = None,
        companions: Optional[CompanionRegistry] = None,
        on_reopen_log: Optional[Callable[[], object]] = None,
    ):
        """
        Initialize the daemon.

        Args:
            config: Daemon configuration
            source: Notification source (inotify by default)
            executor: Performs command and forward reactions
            companions: Companion daemons to probe and watch at bootstrap
            on_reopen_log: Called for the reopen-log intent
        """
        self.config = config or DaemonConfig()
        self._source = source if source is not None else InotifySource()
        self._companions = (
            companions if companions is not None
            else CompanionRegistry(self.config.companions)
        )
        self._executor = executor or ShellActionExecutor(self.config, self._companions)
        self._on_reopen_log = on_reopen_log or reopen_log_files

        self._commands: "queue.Queue[ControlCommand]" = queue.Queue()

        self._registry = WatchRegistry(
            self._source,
            reaction_handler=self.handle_event,
            sentinel_handler=self._on_suspended_event,
            grace_ms=self.config.grace_ms,
            missing_handler=self._on_missing,
        )
        self._anomaly = AnomalyHandler(self._registry)
        self._protocol = WipeRestoreProtocol(self._registry, self._anomaly.handle)
        self._workers = WorkerManager(
            max_workers=self.config.max_workers,
            on_complete=self._on_worker_complete,
        )
        self._reconciler = ConfigReconciler(
            self._registry,
            truncate_threshold=self.config.truncate_threshold,
        )
        self._dispatcher = ReactionDispatcher(
            self._executor,
            self._workers,
            self._protocol,
            self._reconciler,
        )

        # Intent flags; plain assignments so signal handlers may set them.
        self.reload_requested = False
        self.dump_requested = False
        self.reopen_log_requested = False
        self.stop_requested = False

        self.exit_reason: Optional[ExitReason] = None
        self._running = False
        self._stop_event = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def registry(self) -> WatchRegistry:
        return self._registry

    @property
    def workers(self) -> WorkerManager:
        return self._workers

    @property
    def source(self) -> NotificationSource:
        return self._source

    @property
    def is_running(self) -> bool:
        return self._running

    # Setup

    def bootstrap(self) -> ReconcileReport:
        """
        Install the startup watches and load the main configuration.

        Companions are probed (and started if needed) first, their socket
        watches and any ``bootstrap_lines`` are installed with source
        "bootstrap", then the configuration resource is reconciled.
        """
        started = self._companions.probe(wait=self.config.spawn_wait)
        if started:
            logger.info(f"Started companions: {', '.join(started)}")

        for spec in self._companions.bootstrap_specs():
            self._install_bootstrap(spec)

        text = "\n".join(self.config.bootstrap_lines)
        for lineno, item in iter_config(text, BOOTSTRAP_SOURCE, os.getcwd()):
            if isinstance(item, ConfigParseError):
                logger.warning(f"Bootstrap line {lineno}: {item}; line skipped")
                continue
            self._install_bootstrap(item)

        return self._reconciler.load(str(self.config.config_path), owner=BOOTSTRAP_SOURCE)

    def _install_bootstrap(self, spec: WatchSpec) -> None:
        try:
            self._registry.upsert(spec)
        except ConfigConflictError as e:
            logger.warning(f"Conflict: {e}")
            return
        if isinstance(spec.reaction, INTERNAL_REACTIONS):
            self._dispatcher.dispatch(self._registry.get(spec.path))

    # Loop

    def run(self) -> ExitReason:
        """
        Bootstrap and run the dispatch loop until stopped (blocking).

        Returns:
            STOPPED after a stop request, RESTART when internal state can
            no longer be trusted and the process should be replaced

        Raises:
            DaemonAlreadyRunningError: If the loop is already running
        """
        self._mark_running()
        return self._loop()

    def _loop(self) -> ExitReason:
        try:
            self.bootstrap()
            self._start_reader()
            poll = self.config.poll_interval_ms / 1000.0

            while not self.stop_requested:
                self._check_intents()
                try:
                    command = self._commands.get(timeout=poll)
                except queue.Empty:
                    continue
                self._process_command(command)

            self.exit_reason = ExitReason.STOPPED
        except RestartRequested as e:
            logger.error(f"Restart required: {e}")
            self.exit_reason = ExitReason.RESTART
        finally:
            self._shutdown()

        logger.info(f"Dispatch loop exited: {self.exit_reason.value}")
        return self.exit_reason

    def start_async(self) -> threading.Thread:
        """
        Run the daemon in a background thread.

        Returns immediately; ``exit_reason`` is set once the loop ends.

        Raises:
            DaemonAlreadyRunningError: If the loop is already running
        """
        with self._lock:
            if self._loop_thread and self._loop_thread.is_alive():
                raise DaemonAlreadyRunningError("Daemon is already running")
        self._mark_running()
        self._loop_thread = threading.Thread(target=self._loop, name="DispatchLoop", daemon=True)
        self._loop_thread.start()
        return self._loop_thread

    def pump(self, timeout_ms: int = 0) -> int:
        """
        Process pending events and commands on the calling thread.

        Reads the notification source, then handles commands until both
        are drained. Used instead of ``run`` where no threads are wanted.

        Args:
            timeout_ms: How long the first read may wait for events

        Returns:
            Number of commands processed
        """
        processed = 0
        timeout = timeout_ms
        while True:
            self._check_intents()
            events = self._source.read_events(timeout_ms=timeout)
            timeout = 0
            if events:
                self._commands.put(ControlCommand(CommandType.EVENTS, events=tuple(events)))
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                return processed
            self._process_command(command)
            processed += 1

    def _mark_running(self) -> None:
        with self._lock:
            if self._running:
                raise DaemonAlreadyRunningError("Daemon is already running")
            self._running = True
            self._stop_event.clear()
            self.stop_requested = False
            self.exit_reason = None
            self._discard_stale_shutdown()

    def _discard_stale_shutdown(self) -> None:
        # A stop() that raced the previous loop's exit leaves its SHUTDOWN behind
        kept = []
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                break
            if command.command_type != CommandType.SHUTDOWN:
                kept.append(command)
        for command in kept:
            self._commands.put(command)

    def _start_reader(self) -> None:
        self._reader = threading.Thread(target=self._reader_loop, name="EventReader")
        self._reader.daemon = True
        self._reader.start()

    def _reader_loop(self) -> None:
        logger.debug("Event reader started")
        while not self._stop_event.is_set():
            try:
                events = self._source.read_events(timeout_ms=self.config.poll_interval_ms)
            except (OSError, ValueError) as e:
                if self._stop_event.is_set():
                    break
                logger.error(f"Reading events failed: {e}")
                self._stop_event.wait(timeout=0.5)
                continue
            if events:
                self._commands.put(ControlCommand(CommandType.EVENTS, events=tuple(events)))

    def _check_intents(self) -> None:
        if self.reload_requested:
            self.reload_requested = False
            self.reload()
        if self.dump_requested:
            self.dump_requested = False
            self.dump_state()
        if self.reopen_log_requested:
            self.reopen_log_requested = False
            self._reopen_log()

    def _process_command(self, command: ControlCommand) -> None:
        """Handle one command; only RestartRequested escapes."""
        command_type = command.command_type

        if command_type == CommandType.EVENTS:
            for event in command.events:
                try:
                    self._dispatch_event(event)
                except RestartRequested:
                    raise
                except Exception as e:
                    logger.exception(f"Error handling event {event}: {e}")
            return

        try:
            if command_type == CommandType.REAP:
                self._reap(command.task_id)
            elif command_type == CommandType.FIRE:
                self._fire_missing(command)
            elif command_type == CommandType.DIRECT:
                self.handle_direct(command.path, command.args)
            elif command_type == CommandType.RELOAD:
                self.reload()
            elif command_type == CommandType.DUMP_STATE:
                self.dump_state()
            elif command_type == CommandType.REOPEN_LOG:
                self._reopen_log()
            elif command_type == CommandType.SHUTDOWN:
                self.stop_requested = True
        except RestartRequested:
            raise
        except Exception as e:
            logger.exception(f"Error processing {command_type.value} command: {e}")

    def _dispatch_event(self, event: WatchEvent) -> None:
        if event.is_overflow:
            self._anomaly.handle(event)
            return

        callback = self._source.callback_for(event.wd)
        if callback is None:
            if event.is_error:
                self._anomaly.handle(event)
            else:
                logger.debug(f"Dropped event {'|'.join(event.kinds)} for unknown watch {event.wd}")
            return
        callback(event)

    # Reactions

    def handle_event(self, path: str, event: WatchEvent) -> None:
        """Reaction callback of an active watch."""
        entry = self._registry.get(path)
        if entry is None:
            logger.debug(f"Event for unregistered {path} dropped")
            return

        if event.is_error:
            self._anomaly.handle(event, path)
            return

        if event.is_self_gone:
            if not self._protocol.rebuild_after_loss(entry, event):
                return
        elif not event.mask & entry.spec.mask:
            logger.debug(f"Unrequested {'|'.join(event.kinds)} on {path} skipped")
            return

        logger.info(f"{'|'.join(event.kinds)} on {path}: {entry.reaction.describe()}")
        self._dispatcher.dispatch(entry, event)

    def handle_direct(self, path: str, args: Optional[str] = None) -> Optional[WorkerHandle]:
        """
        Run a reaction for a path without a triggering event.

        Args:
            path: Watched path (or any path, when ``args`` is given)
            args: Reaction text to run instead of the entry's own

        Returns:
            Worker handle for asynchronous reactions, else None
        """
        path = os.path.abspath(path)
        reaction = None
        if args:
            try:
                reaction = parse_reaction(args, os.path.dirname(path))
            except ConfigParseError as e:
                logger.warning(f"Direct invocation for {path}: {e}")
                return None

        entry = self._registry.get(path)
        if entry is None:
            if reaction is None:
                logger.warning(f"Direct invocation for unwatched {path} without a reaction")
                return None
            entry = WatchEntry(
                spec=WatchSpec(path=path, mask=0, reaction=reaction, source=DIRECT_SOURCE),
                serial=0,
            )
        elif entry.suspended and not isinstance(reaction or entry.reaction, INTERNAL_REACTIONS):
            logger.info(f"Reaction for {path} is still running; direct invocation skipped")
            return None

        return self._dispatcher.dispatch(entry, None, reaction)

    def invoke(self, path: str, args: Optional[str] = None) -> None:
        """Queue a direct invocation for the dispatch thread."""
        self._commands.put(ControlCommand(CommandType.DIRECT, path=path, args=args))

    def submit(self, command: ControlCommand) -> None:
        """Queue a command for the dispatch thread."""
        self._commands.put(command)

    def _on_suspended_event(self, path: str, event: WatchEvent) -> None:
        self._protocol.on_suspended_event(path, event)

    def _on_missing(self, entry: WatchEntry) -> None:
        self._commands.put(
            ControlCommand(CommandType.FIRE, path=entry.path, serial=entry.serial)
        )

    def _on_worker_complete(self, task_id: str) -> None:
        self._commands.put(ControlCommand(CommandType.REAP, task_id=task_id))

    def _fire_missing(self, command: ControlCommand) -> None:
        entry = self._registry.get(command.path)
        if entry is None or entry.serial != command.serial:
            logger.debug(f"Missing-path reaction for replaced entry {command.path} dropped")
            return
        if entry.suspended:
            logger.debug(f"Reaction for {entry.path} already running")
            return

        logger.info(f"{entry.path} is missing; running {entry.reaction.describe()}")
        self._dispatcher.dispatch(entry)

    def _reap(self, task_id: str) -> None:
        try:
            handle = self._workers.reap(task_id)
        except UnknownWorkerError as e:
            logger.error(f"{e}; an untracked reaction is running")
            raise

        entry = self._registry.get(handle.path)
        if entry is None or entry.serial != handle.serial:
            logger.debug(f"Worker {task_id} finished for a replaced or removed entry {handle.path}")
            return
        self._protocol.restore(entry)

    # Operator requests

    def reload(self) -> ReconcileReport:
        """Reconcile the main configuration resource again."""
        logger.info(f"Reloading {self.config.config_path}")
        return self._reconciler.load(str(self.config.config_path), owner=BOOTSTRAP_SOURCE)

    def dump_state(self) -> List[str]:
        """
        Log every entry and every in-flight worker.

        Returns:
            The logged lines
        """
        entries = sorted(self._registry.entries(), key=lambda e: e.path)
        workers = self._workers.pending()
        lines = [
            f"{len(entries)} watch(es), {len(workers)} worker(s) in flight, "
            f"last reused wd {self._registry.last_reused_wd}"
        ]
        for entry in entries:
            wd = entry.handle.wd if entry.handle is not None else "-"
            lines.append(
                f"[{entry.state}] wd={wd} serial={entry.serial} "
                f"{entry.spec.describe()} ({entry.source})"
            )
        now = time.time()
        for worker in workers:
            lines.append(
                f"worker {worker.task_id} for {worker.path}: {worker.description} "
                f"({now - worker.started_at:.1f}s)"
            )

        for line in lines:
            logger.info(line)
        return lines

    def _reopen_log(self) -> None:
        self._on_reopen_log()
        logger.info("Log reopened")

    def request_reload(self) -> None:
        self.reload_requested = True

    def request_dump(self) -> None:
        self.dump_requested = True

    def request_reopen_log(self) -> None:
        self.reopen_log_requested = True

    def request_stop(self) -> None:
        self.stop_requested = True

    # Lifecycle

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and wait for a background loop thread to finish."""
        self.stop_requested = True
        self._commands.put(ControlCommand(CommandType.SHUTDOWN))
        thread = self._loop_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _shutdown(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False

        self._stop_event.set()
        if self._reader is not None and self._reader.is_alive():
            self._reader.join(timeout=self.config.poll_interval_ms / 1000.0 + 1.0)
        self._reader = None

        pending = len(self._workers)
        if pending:
            logger.info(f"Leaving {pending} reaction(s) running")

    def close(self) -> None:
        """Stop the daemon and release the notification source."""
        self.stop()
        self._workers.shutdown(wait=False)
        self._source.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
