"""Background task helpers for ftpkit.

Provides the worker thread used for each transfer and a thread-safe
queue for handing notifications back to the caller's thread.
"""

import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar


T = TypeVar("T")


class TaskStatus(Enum):
    """Status of a background task."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskResult(Generic[T]):
    """Result of a background task."""
    status: TaskStatus
    result: Optional[T] = None
    error: Optional[Exception] = None


class ThreadedTask(Generic[T]):
    """
    Runs a callable in a background thread.

    Usage:
        task = ThreadedTask(engine.run, args=(operation,), on_cancel=engine.cancel)
        task.start()
        ...
        task.cancel()
        result = task.get_result(timeout=10)
    """

    def __init__(
        self,
        target: Callable[..., T],
        args: tuple = (),
        kwargs: Optional[dict] = None,
        on_complete: Optional[Callable[[TaskResult[T]], None]] = None,
        on_cancel: Optional[Callable[[], None]] = None,
        name: Optional[str] = None
    ):
        """
        Initialize a threaded task.

        Args:
            target: Callable to run in background
            args: Positional arguments for target
            kwargs: Keyword arguments for target
            on_complete: Callback when task finishes (called from worker thread)
            on_cancel: Called from the cancelling thread to interrupt target
            name: Worker thread name
        """
        self._target = target
        self._args = args
        self._kwargs = kwargs or {}
        self._on_complete = on_complete
        self._on_cancel = on_cancel
        self._name = name

        self._thread: Optional[threading.Thread] = None
        self._finished = threading.Event()
        self._result: Optional[TaskResult[T]] = None
        self._cancelled = threading.Event()
        self._status = TaskStatus.PENDING

    @property
    def status(self) -> TaskStatus:
        """Current task status."""
        return self._status

    @property
    def is_running(self) -> bool:
        """True if task is currently running."""
        return self._status == TaskStatus.RUNNING

    @property
    def is_done(self) -> bool:
        """True once the task has finished, whatever the outcome."""
        return self._finished.is_set()

    @property
    def is_cancelled(self) -> bool:
        """True if cancellation was requested."""
        return self._cancelled.is_set()

    def start(self) -> None:
        """Start the background task."""
        if self._status != TaskStatus.PENDING:
            raise RuntimeError("Task already started")

        self._status = TaskStatus.RUNNING
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        """Request cancellation of the task."""
        if self._cancelled.is_set() or self._finished.is_set():
            return
        self._cancelled.set()
        if self._on_cancel:
            self._on_cancel()

    def _run(self) -> None:
        """Internal method that runs in the background thread."""
        try:
            result = self._target(*self._args, **self._kwargs)

            if self._cancelled.is_set():
                self._result = TaskResult(status=TaskStatus.CANCELLED, result=result)
                self._status = TaskStatus.CANCELLED
            else:
                self._result = TaskResult(status=TaskStatus.COMPLETED, result=result)
                self._status = TaskStatus.COMPLETED

        except Exception as e:
            self._result = TaskResult(status=TaskStatus.FAILED, error=e)
            self._status = TaskStatus.FAILED

        try:
            if self._on_complete:
                self._on_complete(self._result)
        finally:
            self._finished.set()

    def get_result(self, timeout: Optional[float] = None) -> TaskResult[T]:
        """
        Wait for task completion and return result.

        Args:
            timeout: Maximum time to wait (None = forever)

        Returns:
            TaskResult with status and result/error

        Raises:
            TimeoutError: If timeout expires before task completes
        """
        if self._thread:
            if not self._finished.wait(timeout=timeout):
                raise TimeoutError("Task did not complete within timeout")

        return self._result or TaskResult(status=TaskStatus.PENDING)


class CallbackQueue:
    """
    Thread-safe queue for running notifications on the caller's thread.

    Usage:
        # In the caller's thread:
        callbacks = CallbackQueue()
        client = FTPClient("ftp.example.com", callback_queue=callbacks)
        client.upload_file(local, remote, on_progress, on_complete)

        # Later, in the caller's loop:
        callbacks.dispatch_pending()
    """

    def __init__(self):
        """Initialize the callback queue."""
        self._queue: queue.Queue[tuple[Callable[..., Any], tuple]] = queue.Queue()

    def put(self, callback: Callable[..., Any], *args: Any) -> None:
        """
        Schedule a callback (thread-safe).

        Args:
            callback: Callable to invoke on dispatch
            *args: Arguments for the callable
        """
        self._queue.put((callback, args))

    def dispatch_pending(self) -> int:
        """
        Run all queued callbacks in order on the current thread.

        Returns:
            Number of callbacks run
        """
        count = 0
        while True:
            try:
                callback, args = self._queue.get_nowait()
            except queue.Empty:
                break
            callback(*args)
            count += 1
        return count

    def dispatch_next(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for one callback and run it.

        Args:
            timeout: Maximum time to wait (None = forever)

        Returns:
            True if a callback ran, False on timeout
        """
        try:
            callback, args = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        callback(*args)
        return True

    def clear(self) -> None:
        """Drop all pending callbacks."""
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
