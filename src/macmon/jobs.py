"""Background runner for scans and executions, one in flight per kind."""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Generic, TypeVar

from macmon.errors import OperationBusy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationKind(Enum):
    """Operations that may not overlap with another of the same kind."""

    SCAN = "scan"
    EXECUTE = "execute"


class Job(Generic[T]):
    """Handle to a submitted operation with cooperative cancellation."""

    def __init__(self, kind: OperationKind, future: Future, cancel_event: threading.Event) -> None:
        self._kind = kind
        self._future = future
        self._cancel_event = cancel_event

    @property
    def kind(self) -> OperationKind:
        return self._kind

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Ask the operation to stop at its next checkpoint."""
        self._cancel_event.set()
        self._future.cancel()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> T:
        """Block until the operation finishes and return its result."""
        return self._future.result(timeout=timeout)

    def add_done_callback(self, callback: Callable[["Job[T]"], None]) -> None:
        self._future.add_done_callback(lambda _future: callback(self))


class OperationRunner:
    """
    Runs operations on one single-worker thread pool per kind.

    A submission while a job of the same kind is unfinished is rejected
    with OperationBusy. Jobs of different kinds run concurrently.
    """

    def __init__(self) -> None:
        self._executors = {
            kind: ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"macmon-{kind.value}")
            for kind in OperationKind
        }
        self._active: dict[OperationKind, Job] = {}
        self._lock = threading.Lock()

    def busy(self, kind: OperationKind) -> bool:
        with self._lock:
            job = self._active.get(kind)
            return job is not None and not job.done()

    def submit(self, kind: OperationKind, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Job[T]:
        """
        Run ``fn(*args, cancel=event, **kwargs)`` in the background.

        The callable receives the job's cancellation event as ``cancel``.
        """
        with self._lock:
            active = self._active.get(kind)
            if active is not None and not active.done():
                logger.info("operation_rejected kind=%s reason=busy", kind.value)
                raise OperationBusy(kind.value)
            event = threading.Event()
            future = self._executors[kind].submit(fn, *args, cancel=event, **kwargs)
            job: Job[T] = Job(kind, future, event)
            self._active[kind] = job
        logger.debug("operation_submitted kind=%s", kind.value)
        return job

    def shutdown(self, wait: bool = True) -> None:
        """Cancel unfinished jobs and stop the worker threads."""
        with self._lock:
            for job in self._active.values():
                if not job.done():
                    job.cancel()
        for executor in self._executors.values():
            executor.shutdown(wait=wait)
