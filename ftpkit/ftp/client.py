"""FTP client façade for ftpkit.

FTPClient exposes the caller-facing operations. It owns one control
session, creates it lazily on the first operation, and runs each
operation on its own worker thread, one at a time.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional, Union

from ftpkit.config.credentials import lookup_password, store_password
from ftpkit.config.settings import ClientSettings
from ftpkit.ftp.connection import ControlSession, ServerEndpoint
from ftpkit.ftp.data_channel import DataChannelMode, DataChannelNegotiator
from ftpkit.ftp.exceptions import FTPCancelledError, FTPError, FTPSessionBusyError
from ftpkit.ftp.listing import ListingParser
from ftpkit.ftp.transfer import (
    CompletionCallback,
    OperationKind,
    OperationResult,
    PendingOperation,
    ProgressCallback,
    TransferEngine,
)
from ftpkit.utils.threading import CallbackQueue, TaskResult, TaskStatus, ThreadedTask
from ftpkit.utils.validators import validate_file_path, validate_ftp_path

logger = logging.getLogger("ftpkit.client")


ErrorCallback = Callable[[FTPError], None]


class DirectoryListing(list):
    """Entries from a synchronous listing, marked with the error if it failed."""

    def __init__(self, entries=(), error: Optional[Exception] = None):
        super().__init__(entries)
        self.error = error

    @property
    def success(self) -> bool:
        return self.error is None


class OperationHandle:
    """Caller's view of one started operation."""

    def __init__(
        self,
        operation: PendingOperation,
        task: Optional[ThreadedTask] = None,
        result: Optional[OperationResult] = None
    ):
        self._operation = operation
        self._task = task
        self._result = result
        self._done = threading.Event()
        if result is not None:
            self._done.set()

    @property
    def kind(self) -> OperationKind:
        return self._operation.kind

    @property
    def done(self) -> bool:
        """True once the terminal result is available."""
        return self._done.is_set()

    @property
    def result(self) -> Optional[OperationResult]:
        """Terminal result, or None while running."""
        return self._result

    @property
    def status(self) -> TaskStatus:
        """Worker status."""
        if self._task is None:
            return TaskStatus.FAILED
        return self._task.status

    def cancel(self) -> None:
        """Cancel the operation; it completes with FTPCancelledError."""
        if self._task is not None:
            self._task.cancel()

    def wait(self, timeout: Optional[float] = None) -> OperationResult:
        """
        Block until the operation finishes.

        Raises:
            TimeoutError: If timeout expires first
        """
        if not self._done.wait(timeout=timeout):
            raise TimeoutError("Operation did not complete within timeout")
        return self._result

    def _set_result(self, result: OperationResult) -> None:
        self._result = result
        self._done.set()


class FTPClient:
    """Entry point for listing, mkdir, upload and download."""

    def __init__(
        self,
        server_address: str = "",
        username: str = "anonymous",
        password: str = "",
        port: int = 21,
        settings: Optional[ClientSettings] = None,
        on_error: Optional[ErrorCallback] = None,
        callback_queue: Optional[CallbackQueue] = None
    ):
        """
        Initialize the client.

        Args:
            server_address: FTP server host
            username: Login name
            password: Login password
            port: Control port
            settings: Timeouts, data channel mode and listing options
            on_error: Called for errors not tied to an operation, such as
                the server closing the control connection
            callback_queue: If given, notifications are queued here and run
                by the caller via dispatch_pending(); otherwise they run on
                the worker thread
        """
        self._settings = settings or ClientSettings()
        self.server_address = server_address or self._settings.host
        self.username = username
        self.password = password
        self.port = port
        self.show_hidden_files = self._settings.show_hidden_files
        self.on_error = on_error
        self._callback_queue = callback_queue

        self._session: Optional[ControlSession] = None
        self._session_lock = threading.Lock()
        self._busy = threading.Lock()
        self._active: Optional[OperationHandle] = None

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        password: Optional[str] = None,
        **kwargs
    ) -> "FTPClient":
        """
        Create a client from saved settings.

        The password is read from the system keyring when not given.
        """
        if password is None:
            password = lookup_password(settings.host, settings.port, settings.username) or ""
        return cls(
            server_address=settings.host,
            username=settings.username,
            password=password,
            port=settings.port,
            settings=settings,
            **kwargs
        )

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def session(self) -> Optional[ControlSession]:
        """Current control session, if one was created."""
        return self._session

    @property
    def is_busy(self) -> bool:
        """True while an operation is running."""
        return self._busy.locked()

    def save_password(self) -> bool:
        """
        Remember the current password in the system keyring.

        from_settings() reads it back for the same host, port and user.

        Returns:
            True if the keyring was updated
        """
        return store_password(self.server_address, self.port, self.username, self.password)

    def list_directory_sync(self, path: str = "") -> DirectoryListing:
        """
        List a directory, blocking until done.

        Failures do not raise: an empty listing is returned with its
        error attribute set.
        """
        handle = self.list_directory(path)
        result = handle.wait()
        if result.success:
            return DirectoryListing(result.value)
        return DirectoryListing(error=result.error)

    def list_directory(self, path: str = "", on_complete: Optional[CompletionCallback] = None) -> OperationHandle:
        """Start a LIST; on_complete receives the entries in result.value."""
        self._check_optional_path(path)
        operation = self._make_operation(OperationKind.LIST, path, on_complete=on_complete)
        return self._start(operation)

    def list_names(self, path: str = "", on_complete: Optional[CompletionCallback] = None) -> OperationHandle:
        """Start an NLST; on_complete receives the names in result.value."""
        self._check_optional_path(path)
        operation = self._make_operation(OperationKind.NLST, path, on_complete=on_complete)
        return self._start(operation)

    def make_directory(self, path: str, on_complete: Optional[CompletionCallback] = None) -> OperationHandle:
        """Start an MKD; on_complete receives the created path in result.value."""
        self._check_path(path)
        operation = self._make_operation(OperationKind.MKDIR, path, on_complete=on_complete)
        return self._start(operation)

    def upload_file(
        self,
        local_path: Union[str, Path],
        remote_path: str,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompletionCallback] = None
    ) -> OperationHandle:
        """Start a STOR of local_path to remote_path."""
        is_valid, error = validate_file_path(Path(local_path), must_exist=True)
        if not is_valid:
            raise ValueError(error)
        self._check_path(remote_path)
        operation = self._make_operation(
            OperationKind.UPLOAD,
            remote_path,
            local_path=local_path,
            on_progress=on_progress,
            on_complete=on_complete,
        )
        return self._start(operation)

    def download_file(
        self,
        remote_path: str,
        expected_size: int,
        local_path: Union[str, Path],
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompletionCallback] = None
    ) -> OperationHandle:
        """
        Start a RETR of remote_path into local_path.

        Progress percentages use expected_size; pass 0 to let the server's
        SIZE answer stand in when available.
        """
        self._check_path(remote_path)
        if not local_path:
            raise ValueError("Local path is required")
        if expected_size is None or expected_size < 0:
            raise ValueError(f"Expected size must be zero or positive, got {expected_size}")
        operation = self._make_operation(
            OperationKind.DOWNLOAD,
            remote_path,
            local_path=local_path,
            expected_size=expected_size,
            on_progress=on_progress,
            on_complete=on_complete,
        )
        return self._start(operation)

    def cancel(self) -> None:
        """Cancel the running operation, if any."""
        active = self._active
        if active is not None:
            active.cancel()

    def close(self, timeout: Optional[float] = None) -> None:
        """Cancel any running operation and close the session."""
        active = self._active
        if active is not None:
            active.cancel()
            try:
                active.wait(timeout=timeout if timeout is not None else self._settings.command_timeout)
            except TimeoutError:
                logger.warning("Operation still running while closing the client")

        with self._session_lock:
            if self._session is not None:
                self._session.close()
                self._session = None

    def __enter__(self) -> "FTPClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _make_operation(self, kind: OperationKind, remote_path: str, **kwargs) -> PendingOperation:
        return PendingOperation(kind, remote_path=remote_path, dispatch=self._dispatch, **kwargs)

    def _dispatch(self, callback: Callable, *args) -> None:
        if self._callback_queue is not None:
            self._callback_queue.put(callback, *args)
        else:
            callback(*args)

    def _start(self, operation: PendingOperation) -> OperationHandle:
        endpoint = self._endpoint()

        if not self._busy.acquire(blocking=False):
            logger.warning(f"Rejected {operation.kind.value}: another operation is running")
            result = OperationResult(
                kind=operation.kind,
                remote_path=operation.remote_path,
                success=False,
                error=FTPSessionBusyError(operation.kind.value),
            )
            operation.complete(result)
            return OperationHandle(operation, result=result)

        handle_ref: List[OperationHandle] = []

        def finish(task_result: TaskResult) -> None:
            self._finish(handle_ref[0], operation, task_result)

        task = ThreadedTask(
            self._execute,
            args=(operation, endpoint),
            on_complete=finish,
            on_cancel=operation.cancel,
            name=f"ftpkit-{operation.kind.value}",
        )
        handle = OperationHandle(operation, task)
        handle_ref.append(handle)
        self._active = handle

        try:
            task.start()
        except RuntimeError:
            self._active = None
            self._busy.release()
            raise
        return handle

    def _execute(self, operation: PendingOperation, endpoint: ServerEndpoint) -> OperationResult:
        """Worker body: make sure a session exists, then run the engine."""
        try:
            session = self._ensure_session(endpoint)
        except FTPError as e:
            error = FTPCancelledError(operation.kind.value) if operation.is_cancelled else e
            return OperationResult(
                kind=operation.kind,
                remote_path=operation.remote_path,
                success=False,
                error=error,
            )

        settings = self._settings
        mode = DataChannelMode.PASSIVE if settings.passive_mode else DataChannelMode.ACTIVE
        negotiator = DataChannelNegotiator(
            session,
            mode=mode,
            timeout=settings.data_timeout,
            prefer_epsv=settings.prefer_epsv,
            trust_pasv_address=settings.trust_pasv_address,
            active_address=settings.active_address or None,
        )
        engine = TransferEngine(
            session,
            negotiator,
            parser=ListingParser(show_hidden=self.show_hidden_files),
            block_size=settings.block_size,
            encoding=settings.encoding,
            data_timeout=settings.data_timeout,
        )
        result = engine.run(operation)

        if session.is_closed and session.close_error is not None:
            self._report_error(session.close_error)
        return result

    def _finish(self, handle: OperationHandle, operation: PendingOperation, task_result: TaskResult) -> None:
        if task_result.status == TaskStatus.FAILED:
            logger.error(f"{operation.kind.value} worker failed: {task_result.error}")
            error = task_result.error
            if not isinstance(error, FTPError):
                error = FTPError(f"{operation.kind.value} failed", error)
            result = OperationResult(
                kind=operation.kind,
                remote_path=operation.remote_path,
                success=False,
                error=error,
                bytes_transferred=operation.bytes_transferred,
            )
        elif task_result.status == TaskStatus.CANCELLED and not task_result.result.cancelled:
            result = OperationResult(
                kind=operation.kind,
                remote_path=operation.remote_path,
                success=False,
                error=FTPCancelledError(operation.kind.value),
                bytes_transferred=operation.bytes_transferred,
                duration_seconds=task_result.result.duration_seconds,
            )
        else:
            result = task_result.result

        self._active = None
        self._busy.release()
        operation.complete(result)
        handle._set_result(result)

    def _ensure_session(self, endpoint: ServerEndpoint) -> ControlSession:
        with self._session_lock:
            session = self._session
            if session is not None and not session.is_closed and session.endpoint == endpoint:
                # An idle timeout on the server shows up here, not as a failed operation
                if not session.check_connection() and session.close_error is not None:
                    self._report_error(session.close_error)
            if session is not None and (session.is_closed or session.endpoint != endpoint):
                session.close()
                session = None

            if session is None:
                settings = self._settings
                session = ControlSession(
                    endpoint,
                    connect_timeout=settings.connect_timeout,
                    command_timeout=settings.command_timeout,
                    encoding=settings.encoding,
                )
                self._session = session
                try:
                    session.connect()
                    session.login()
                except FTPError:
                    session.close()
                    raise
            return session

    def _endpoint(self) -> ServerEndpoint:
        return ServerEndpoint(
            host=self.server_address,
            port=self.port,
            username=self.username,
            password=self.password,
        )

    def _report_error(self, error: FTPError) -> None:
        logger.error(f"Session error: {error}")
        if self.on_error:
            self._dispatch(self.on_error, error)

    @staticmethod
    def _check_path(path: str) -> None:
        is_valid, error = validate_ftp_path(path)
        if not is_valid:
            raise ValueError(error)

    @staticmethod
    def _check_optional_path(path: str) -> None:
        if path:
            FTPClient._check_path(path)
