"""Worker lifecycle: one asynchronous worker per fired reaction."""

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from .exceptions import UnknownWorkerError
from .models import WorkerHandle

logger = logging.getLogger(__name__)


class WorkerManager:
    """
    Runs reaction jobs off the dispatch thread and tracks them by task id.

    Every job gets its own thread, so a reaction that never finishes only
    holds up the path it belongs to. ``max_workers`` is a warning threshold
    for the number of jobs in flight, not a cap.

    ``on_complete`` is called with the task id from the worker thread once
    the job has finished (successfully or not); the dispatch loop then
    calls ``reap`` to retire the worker and learn which path it served.
    """

    def __init__(
        self,
        max_workers: int = 16,
        on_complete: Optional[Callable[[str], None]] = None,
    ):
        self.max_workers = max_workers
        self.on_complete = on_complete
        self._workers: Dict[str, WorkerHandle] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._closed = False
        self._lock = threading.Lock()

    def spawn(
        self,
        path: str,
        serial: int,
        job: Callable[[], Any],
        description: str,
    ) -> WorkerHandle:
        """
        Start a job without waiting for it.

        Args:
            path: Path whose reaction the job executes
            serial: Generation of the entry the job belongs to
            job: Callable doing the work
            description: Human readable summary for logs

        Returns:
            Handle recorded for the new worker

        Raises:
            RuntimeError: If the manager has been shut down
        """
        handle = WorkerHandle(
            task_id=uuid.uuid4().hex[:12],
            path=path,
            serial=serial,
            description=description,
        )
        thread = threading.Thread(
            target=self._run,
            args=(handle, job),
            name=f"reaction-{handle.task_id}",
            daemon=True,
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("worker manager is shut down")
            self._workers[handle.task_id] = handle
            self._threads[handle.task_id] = thread
            running = sum(1 for t in self._threads.values() if t is thread or t.is_alive())

        thread.start()

        logger.info(f"Worker {handle.task_id} spawned for {path}: {description}")
        if running > self.max_workers:
            logger.warning(f"{running} reactions in flight (threshold {self.max_workers})")
        return handle

    def _run(self, handle: WorkerHandle, job: Callable[[], Any]) -> Any:
        result = None
        try:
            result = job()
            if isinstance(result, int) and not isinstance(result, bool) and result != 0:
                logger.warning(
                    f"Worker {handle.task_id} for {handle.path} exited with status {result}"
                )
            else:
                logger.info(f"Worker {handle.task_id} for {handle.path} finished")
        except Exception as e:
            logger.error(f"Worker {handle.task_id} for {handle.path} failed: {e}")
        finally:
            if self.on_complete is not None:
                self.on_complete(handle.task_id)
        return result

    def reap(self, task_id: str) -> WorkerHandle:
        """
        Retire a completed worker.

        Returns:
            The handle recorded at spawn time

        Raises:
            UnknownWorkerError: If the task id was never spawned here
        """
        with self._lock:
            handle = self._workers.pop(task_id, None)
            self._threads.pop(task_id, None)

        if handle is None:
            raise UnknownWorkerError(f"completion reported for unknown worker {task_id}")
        return handle

    def pending(self) -> List[WorkerHandle]:
        """Workers spawned but not yet reaped."""
        with self._lock:
            return list(self._workers.values())

    def running(self) -> int:
        """Number of jobs still executing."""
        with self._lock:
            return sum(1 for thread in self._threads.values() if thread.is_alive())

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every running job has finished.

        Returns:
            True if all jobs finished within the timeout
        """
        with self._lock:
            threads = list(self._threads.values())

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            if deadline is None:
                thread.join()
            else:
                thread.join(max(0.0, deadline - time.monotonic()))
        return not any(thread.is_alive() for thread in threads)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; optionally wait for running ones."""
        with self._lock:
            self._closed = True
        if wait:
            self.wait_all()

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)
