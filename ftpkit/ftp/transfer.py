"""Transfer engine for ftpkit.

Drives one listing, mkdir, upload or download from request to a single
terminal result, reporting progress along the way.
"""

import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Union

from ftpkit.ftp.codec import Reply, parse_pwd_reply
from ftpkit.ftp.connection import ControlSession, SessionState, TransferType
from ftpkit.ftp.data_channel import DataChannelHandle, DataChannelNegotiator
from ftpkit.ftp.exceptions import (
    FTPCancelledError,
    FTPCommandRejectedError,
    FTPError,
    FTPLocalFileError,
    FTPMalformedReplyError,
    FTPNotConnectedError,
    FTPSessionBusyError,
    FTPTimeoutError,
    FTPTransportError,
)
from ftpkit.ftp.listing import DirectoryEntry, ListingParser

logger = logging.getLogger("ftpkit.transfer")

# Downloads are written here and renamed on success
PARTIAL_SUFFIX = ".part"


class OperationKind(Enum):
    """Kind of request driven by the engine."""
    LIST = "list"
    NLST = "nlst"
    MKDIR = "mkdir"
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass
class TransferProgress:
    """Progress information for a running operation."""
    kind: OperationKind
    remote_path: str
    bytes_transferred: int
    bytes_total: Optional[int] = None

    @property
    def percent(self) -> Optional[float]:
        """Progress as percentage (0-100), or None if the total is unknown."""
        if not self.bytes_total:
            return None
        return min(100.0, (self.bytes_transferred / self.bytes_total) * 100.0)


@dataclass
class OperationResult:
    """Terminal outcome of one operation."""
    kind: OperationKind
    remote_path: str
    success: bool
    value: Any = None
    error: Optional[Exception] = None
    bytes_transferred: int = 0
    duration_seconds: float = 0.0

    @property
    def error_message(self) -> Optional[str]:
        """Error text, or None on success."""
        if self.error is None:
            return None
        return str(self.error)

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, FTPCancelledError)


# Callback type aliases
ProgressCallback = Callable[[TransferProgress], None]
CompletionCallback = Callable[[OperationResult], None]
Dispatcher = Callable[..., None]


def _call_now(callback: Callable[..., Any], *args: Any) -> None:
    callback(*args)


class PendingOperation:
    """One in-flight request and the callbacks that belong to it."""

    def __init__(
        self,
        kind: OperationKind,
        remote_path: str = "",
        local_path: Optional[Union[str, Path]] = None,
        expected_size: int = 0,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
        dispatch: Optional[Dispatcher] = None
    ):
        """
        Initialize the operation.

        Args:
            kind: Operation kind
            remote_path: Path on the server
            local_path: Local source (upload) or destination (download)
            expected_size: Caller-supplied size for download progress
            on_progress: Called with TransferProgress after each chunk
            on_complete: Called exactly once with the OperationResult
            dispatch: Delivers notifications (default: call immediately)
        """
        self.kind = kind
        self.remote_path = remote_path
        self.local_path = Path(local_path) if local_path is not None else None
        self.expected_size = expected_size
        self.bytes_total: Optional[int] = expected_size if expected_size > 0 else None
        self.bytes_transferred = 0

        self._on_progress = on_progress
        self._on_complete = on_complete
        self._dispatch = dispatch or _call_now
        self._cancelled = threading.Event()
        self._notify_lock = threading.Lock()
        self._completed = False
        self._handle: Optional[DataChannelHandle] = None
        self._handle_lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        """True if cancellation was requested."""
        return self._cancelled.is_set()

    @property
    def is_completed(self) -> bool:
        return self._completed

    @property
    def handle(self) -> Optional[DataChannelHandle]:
        """Data channel bound to this operation, if any."""
        return self._handle

    def bind(self, handle: DataChannelHandle) -> DataChannelHandle:
        """Attach the operation's data channel."""
        with self._handle_lock:
            if self._handle is not None:
                handle.close()
                raise FTPSessionBusyError("Binding a second data channel")
            self._handle = handle
            if self._cancelled.is_set():
                handle.close()
        return handle

    def close_channel(self) -> None:
        """Close the bound data channel, if any."""
        with self._handle_lock:
            handle = self._handle
        if handle is not None:
            handle.close()

    def cancel(self) -> None:
        """Request cancellation and interrupt data channel I/O."""
        self._cancelled.set()
        self.close_channel()

    def report_progress(self, nbytes: int) -> None:
        """Add transferred bytes and notify the progress callback."""
        with self._notify_lock:
            self.bytes_transferred += nbytes
            if self._completed or self._cancelled.is_set() or not self._on_progress:
                return
            progress = TransferProgress(
                kind=self.kind,
                remote_path=self.remote_path,
                bytes_transferred=self.bytes_transferred,
                bytes_total=self.bytes_total,
            )
            self._dispatch(self._on_progress, progress)

    def complete(self, result: OperationResult) -> bool:
        """
        Deliver the terminal notification.

        Returns:
            False if the operation had already completed
        """
        with self._notify_lock:
            if self._completed:
                return False
            self._completed = True
            if self._on_complete:
                self._dispatch(self._on_complete, result)
            return True


class TransferEngine:
    """Drives a single PendingOperation over a control session."""

    # Chunk size for data channel transfers (8KB)
    BLOCK_SIZE = 8192

    def __init__(
        self,
        session: ControlSession,
        negotiator: DataChannelNegotiator,
        parser: Optional[ListingParser] = None,
        block_size: int = BLOCK_SIZE,
        encoding: str = "utf-8",
        data_timeout: float = 30
    ):
        """
        Initialize the engine.

        Args:
            session: Logged-in control session
            negotiator: Data channel negotiator bound to the session
            parser: Listing parser (default: hidden entries excluded)
            block_size: Chunk size for uploads and downloads
            encoding: Encoding of listing bodies
            data_timeout: Seconds allowed between data channel reads/writes
        """
        self._session = session
        self._negotiator = negotiator
        self._parser = parser or ListingParser()
        self._block_size = block_size
        self._encoding = encoding
        self._data_timeout = data_timeout
        self._operation: Optional[PendingOperation] = None

    @property
    def active_operation(self) -> Optional[PendingOperation]:
        """Operation currently being driven."""
        return self._operation

    def cancel(self) -> None:
        """Cancel the active operation, if any."""
        operation = self._operation
        if operation is not None:
            logger.info(f"Cancelling {operation.kind.value} {operation.remote_path}")
            operation.cancel()

    def run(self, operation: PendingOperation) -> OperationResult:
        """
        Drive the operation to its terminal result.

        Protocol and transport failures are returned in the result, never
        raised.

        Returns:
            OperationResult

        Raises:
            FTPNotConnectedError: If the session is not logged in
            FTPSessionBusyError: If this engine is already running an operation
        """
        if self._session.state != SessionState.IDLE:
            if self._session.state == SessionState.AWAITING_REPLY:
                raise FTPSessionBusyError(operation.kind.value)
            raise FTPNotConnectedError(operation.kind.value)
        if self._operation is not None:
            raise FTPSessionBusyError(operation.kind.value)

        handlers = {
            OperationKind.LIST: self._run_list,
            OperationKind.NLST: self._run_nlst,
            OperationKind.MKDIR: self._run_mkdir,
            OperationKind.UPLOAD: self._run_upload,
            OperationKind.DOWNLOAD: self._run_download,
        }

        self._operation = operation
        start_time = time.time()
        logger.info(f"Starting {operation.kind.value} {operation.remote_path}")

        try:
            self._check_cancelled(operation)
            value = handlers[operation.kind](operation)
            # A cancel that lands during the final reply still wins
            self._check_cancelled(operation)
            result = OperationResult(
                kind=operation.kind,
                remote_path=operation.remote_path,
                success=True,
                value=value,
                bytes_transferred=operation.bytes_transferred,
                duration_seconds=time.time() - start_time,
            )
            logger.info(
                f"Finished {operation.kind.value} {operation.remote_path} "
                f"({operation.bytes_transferred} bytes)"
            )

        except Exception as e:
            error = self._classify(operation, e)
            self._recover(operation, error)
            result = OperationResult(
                kind=operation.kind,
                remote_path=operation.remote_path,
                success=False,
                error=error,
                bytes_transferred=operation.bytes_transferred,
                duration_seconds=time.time() - start_time,
            )
            if isinstance(error, FTPCancelledError):
                logger.info(f"{operation.kind.value} {operation.remote_path} cancelled")
            else:
                logger.warning(f"{operation.kind.value} {operation.remote_path} failed: {error}")

        finally:
            operation.close_channel()
            self._operation = None

        return result

    def _run_list(self, operation: PendingOperation) -> List[DirectoryEntry]:
        data = self._read_listing(operation, "LIST")
        return self._parser.parse(data.decode(self._encoding, errors="replace"))

    def _run_nlst(self, operation: PendingOperation) -> List[str]:
        data = self._read_listing(operation, "NLST")
        return self._parser.parse_names(data.decode(self._encoding, errors="replace"))

    def _read_listing(self, operation: PendingOperation, verb: str) -> bytes:
        self._session.set_transfer_type(TransferType.ASCII)
        handle = operation.bind(self._negotiator.open())

        args = (operation.remote_path,) if operation.remote_path else ()
        reply = self._session.send_command(verb, *args)
        if reply.is_failure:
            raise FTPCommandRejectedError(verb, reply)

        data = bytearray()
        if reply.is_preliminary:
            self._establish(operation, handle)
            self._check_cancelled(operation)
            # The server signals end of listing by closing the data connection
            with self._data_errors(operation, verb):
                for chunk in handle.iter_chunks(self._block_size):
                    self._check_cancelled(operation)
                    data.extend(chunk)
                    operation.report_progress(len(chunk))
            operation.close_channel()
            self._check_cancelled(operation)
            reply = self._session.read_final_reply()

        if not reply.is_success:
            raise FTPCommandRejectedError(verb, reply)
        return bytes(data)

    def _run_mkdir(self, operation: PendingOperation) -> str:
        reply = self._session.send_command("MKD", operation.remote_path)
        if reply.is_preliminary:
            reply = self._session.read_final_reply()
        if not reply.is_success:
            raise FTPCommandRejectedError("MKD", reply)

        if reply.code == 257:
            try:
                created = parse_pwd_reply(reply)
            except FTPMalformedReplyError:
                created = ""
            if created:
                return created
        return operation.remote_path

    def _run_upload(self, operation: PendingOperation) -> None:
        local_path = operation.local_path
        try:
            source = open(local_path, "rb")
            operation.bytes_total = os.fstat(source.fileno()).st_size
        except OSError as e:
            raise FTPLocalFileError(local_path, e)

        with source:
            self._session.set_transfer_type(TransferType.BINARY)
            handle = operation.bind(self._negotiator.open())

            reply = self._session.send_command("STOR", operation.remote_path)
            if reply.is_failure:
                raise FTPCommandRejectedError("STOR", reply)

            if reply.is_preliminary:
                self._establish(operation, handle)
                with self._data_errors(operation, "STOR"):
                    while True:
                        self._check_cancelled(operation)
                        try:
                            block = source.read(self._block_size)
                        except OSError as e:
                            raise FTPLocalFileError(local_path, e)
                        if not block:
                            break
                        handle.sendall(block)
                        operation.report_progress(len(block))

                # Closing the data connection marks end of file
                operation.close_channel()
                self._check_cancelled(operation)
                reply = self._session.read_final_reply()

            if not reply.is_success:
                raise FTPCommandRejectedError("STOR", reply)

    def _run_download(self, operation: PendingOperation) -> None:
        self._session.set_transfer_type(TransferType.BINARY)
        if operation.bytes_total is None:
            operation.bytes_total = self._query_size(operation.remote_path)

        # Received bytes go to a sibling file; the destination is only
        # replaced once the server confirms the transfer
        local_path = operation.local_path
        partial_path = local_path.with_name(local_path.name + PARTIAL_SUFFIX)
        try:
            target = open(partial_path, "wb")
        except OSError as e:
            raise FTPLocalFileError(local_path, e)

        try:
            with target:
                handle = operation.bind(self._negotiator.open())

                reply = self._session.send_command("RETR", operation.remote_path)
                if reply.is_failure:
                    raise FTPCommandRejectedError("RETR", reply)

                if reply.is_preliminary:
                    self._establish(operation, handle)
                    self._check_cancelled(operation)
                    with self._data_errors(operation, "RETR"):
                        for chunk in handle.iter_chunks(self._block_size):
                            self._check_cancelled(operation)
                            try:
                                target.write(chunk)
                            except OSError as e:
                                raise FTPLocalFileError(local_path, e)
                            operation.report_progress(len(chunk))

                    operation.close_channel()
                    self._check_cancelled(operation)
                    reply = self._session.read_final_reply()

                if not reply.is_success:
                    raise FTPCommandRejectedError("RETR", reply)

            self._check_cancelled(operation)
            try:
                os.replace(partial_path, local_path)
            except OSError as e:
                raise FTPLocalFileError(local_path, e)
        except BaseException:
            self._remove_partial(partial_path)
            raise

    def _query_size(self, remote_path: str) -> Optional[int]:
        """Ask the server for a file size; None if unsupported."""
        reply = self._session.send_command("SIZE", remote_path)
        if reply.code != 213:
            logger.debug(f"SIZE unavailable for {remote_path}: {reply.text}")
            return None
        try:
            return int(reply.message.strip())
        except ValueError:
            return None

    def _establish(self, operation: PendingOperation, handle: DataChannelHandle) -> None:
        try:
            handle.establish()
        except FTPError:
            if operation.is_cancelled:
                raise FTPCancelledError(operation.kind.value)
            raise

    @contextmanager
    def _data_errors(self, operation: PendingOperation, verb: str) -> Iterator[None]:
        """
        Map data channel socket errors for a transfer command.

        A server that fails a transfer mid-stream closes the data
        connection and sends a 4xx/5xx reply on the control channel. That
        reply is read and reported as a rejection; the error only counts as
        a transport failure when no failure reply arrives.
        """
        try:
            yield
        except socket.timeout as e:
            if operation.is_cancelled:
                raise FTPCancelledError(operation.kind.value) from e
            raise FTPTimeoutError("Data transfer", self._data_timeout)
        except FTPTransportError as e:
            if operation.is_cancelled:
                raise FTPCancelledError(operation.kind.value) from e
            raise
        except OSError as e:
            if operation.is_cancelled:
                raise FTPCancelledError(operation.kind.value) from e
            reply = self._reply_after_data_error(operation, verb)
            if reply is not None and reply.is_failure:
                raise FTPCommandRejectedError(verb, reply) from e
            remote = operation.handle.remote if operation.handle else None
            host, port = remote if remote else ("", 0)
            raise FTPTransportError(host, port, e, message="Data connection failed")

    def _reply_after_data_error(self, operation: PendingOperation, verb: str) -> Optional[Reply]:
        if self._session.state != SessionState.AWAITING_REPLY:
            return None
        operation.close_channel()
        try:
            return self._session.read_final_reply()
        except FTPError as e:
            logger.warning(f"No {verb} reply after data connection failure: {e}")
            return None

    @staticmethod
    def _check_cancelled(operation: PendingOperation) -> None:
        if operation.is_cancelled:
            raise FTPCancelledError(operation.kind.value)

    def _classify(self, operation: PendingOperation, error: Exception) -> FTPError:
        if operation.is_cancelled and not isinstance(error, FTPCancelledError):
            return FTPCancelledError(operation.kind.value)
        if isinstance(error, FTPError):
            return error
        if isinstance(error, OSError):
            return FTPTransportError(
                self._session.endpoint.host, self._session.endpoint.port, error
            )
        return FTPError(f"{operation.kind.value} failed", error)

    def _recover(self, operation: PendingOperation, error: FTPError) -> None:
        """Close channels and return the session to IDLE after a failure."""
        operation.close_channel()

        if isinstance(error, FTPTransportError):
            if not self._session.is_closed:
                self._session.close()
            return

        if self._session.state == SessionState.AWAITING_REPLY:
            try:
                self._session.abort()
            except FTPError as e:
                logger.warning(f"Abort after {operation.kind.value} failed: {e}")

    @staticmethod
    def _remove_partial(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial download {path}: {e}")
