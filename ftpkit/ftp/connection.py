"""FTP control session for ftpkit.

Provides SessionState and TransferType enums, the ServerEndpoint
dataclass, and ControlSession, which owns the control connection and
runs the command/reply state machine over it.
"""

import logging
import posixpath
import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ftpkit.ftp.codec import Reply, ReplyReader, encode_command, parse_pwd_reply
from ftpkit.ftp.exceptions import (
    FTPAuthenticationError,
    FTPCommandRejectedError,
    FTPConnectionClosedError,
    FTPError,
    FTPMalformedReplyError,
    FTPNotConnectedError,
    FTPSessionBusyError,
    FTPTimeoutError,
    FTPTransportError,
)
from ftpkit.utils.validators import validate_host, validate_port

logger = logging.getLogger("ftpkit.session")

# Seconds to wait for unsolicited data when checking an idle session
IDLE_POLL_TIMEOUT = 0.05


class SessionState(Enum):
    """Control session state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    IDLE = "idle"
    AWAITING_REPLY = "awaiting_reply"
    CLOSED = "closed"


class TransferType(Enum):
    """Representation type negotiated with TYPE."""
    ASCII = "A"
    BINARY = "I"


@dataclass(frozen=True)
class ServerEndpoint:
    """Server address and credentials for one session."""
    host: str
    port: int = 21
    username: str = "anonymous"
    password: str = field(default="", repr=False)

    def __post_init__(self):
        """Validate endpoint after initialization."""
        is_valid, error = validate_host(self.host)
        if not is_valid:
            raise ValueError(error)
        is_valid, error = validate_port(self.port)
        if not is_valid:
            raise ValueError(error)


class ControlSession:
    """Owns the FTP control connection and serializes all exchanges on it."""

    def __init__(
        self,
        endpoint: ServerEndpoint,
        connect_timeout: float = 30,
        command_timeout: float = 30,
        encoding: str = "utf-8",
        abort_grace: float = 1.0
    ):
        """
        Initialize the session.

        Args:
            endpoint: Server to connect to
            connect_timeout: Seconds allowed for TCP connect and banner
            command_timeout: Seconds allowed for each command/reply round trip
            encoding: Control channel text encoding
            abort_grace: Seconds to wait for a trailing ABOR reply
        """
        self._endpoint = endpoint
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._encoding = encoding
        self._abort_grace = abort_grace

        self._sock: Optional[socket.socket] = None
        self._reader: Optional[ReplyReader] = None
        self._state = SessionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._transfer_type: Optional[TransferType] = None
        self._current_directory: Optional[str] = None
        self._welcome: Optional[Reply] = None
        self._connected_at: Optional[datetime] = None
        self._last_activity: Optional[datetime] = None
        self._close_error: Optional[FTPError] = None

    @property
    def endpoint(self) -> ServerEndpoint:
        """Server this session talks to."""
        return self._endpoint

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._state

    @property
    def is_authenticated(self) -> bool:
        """True once logged in and not closed."""
        return self._state in (SessionState.IDLE, SessionState.AWAITING_REPLY)

    @property
    def is_closed(self) -> bool:
        return self._state == SessionState.CLOSED

    @property
    def transfer_type(self) -> Optional[TransferType]:
        """Last transfer type acknowledged by the server."""
        return self._transfer_type

    @property
    def current_directory(self) -> Optional[str]:
        """Working directory, if known."""
        return self._current_directory

    @property
    def welcome(self) -> Optional[Reply]:
        """Banner reply received on connect."""
        return self._welcome

    @property
    def connected_at(self) -> Optional[datetime]:
        """Timestamp when connection was established."""
        return self._connected_at

    @property
    def last_activity(self) -> Optional[datetime]:
        """Timestamp of last completed exchange."""
        return self._last_activity

    @property
    def close_error(self) -> Optional[FTPError]:
        """Error that closed the session, if it was not closed explicitly."""
        return self._close_error

    @property
    def peer_host(self) -> str:
        """Address of the server end of the control connection."""
        if self._sock is None:
            raise FTPNotConnectedError("Peer lookup")
        return self._sock.getpeername()[0]

    @property
    def local_host(self) -> str:
        """Address of our end of the control connection."""
        if self._sock is None:
            raise FTPNotConnectedError("Local address lookup")
        return self._sock.getsockname()[0]

    @property
    def address_family(self) -> int:
        if self._sock is None:
            raise FTPNotConnectedError("Address family lookup")
        return self._sock.family

    def connect(self) -> Reply:
        """
        Open the control connection and read the banner.

        Returns:
            The 220 welcome reply

        Raises:
            FTPTransportError: If the connection fails
            FTPTimeoutError: If connect or banner times out
            FTPCommandRejectedError: If the server refuses service
        """
        if self._state == SessionState.CLOSED:
            raise FTPNotConnectedError("Reconnect on a closed session")
        if self._state != SessionState.DISCONNECTED:
            raise FTPSessionBusyError("Connect")

        host, port = self._endpoint.host, self._endpoint.port
        self._state = SessionState.CONNECTING
        logger.info(f"Connecting to {host}:{port}")

        try:
            self._sock = socket.create_connection((host, port), timeout=self._connect_timeout)
        except socket.timeout as e:
            self._fail(FTPTimeoutError("Connection", self._connect_timeout, host, port))
            raise self._close_error from e
        except OSError as e:
            self._fail(FTPTransportError(host, port, e))
            raise self._close_error from e

        self._reader = ReplyReader(self._sock.recv, encoding=self._encoding)

        reply = self._read_reply("Banner", self._connect_timeout)
        while reply.is_preliminary:
            # 120: service ready in nnn minutes
            reply = self._read_reply("Banner", self._connect_timeout)

        if reply.code != 220:
            error = FTPCommandRejectedError("Connect", reply)
            self._fail(error)
            raise error

        self._sock.settimeout(self._command_timeout)
        self._welcome = reply
        self._state = SessionState.AUTHENTICATING
        self._connected_at = datetime.now()
        self._last_activity = self._connected_at
        return reply

    def login(self, user: Optional[str] = None, password: Optional[str] = None) -> Reply:
        """
        Authenticate with USER/PASS.

        Args:
            user: Username (defaults to the endpoint's)
            password: Password (defaults to the endpoint's)

        Returns:
            The 230 reply

        Raises:
            FTPAuthenticationError: On 430/530 (session is closed)
            FTPCommandRejectedError: On any other failure reply
        """
        if self._state != SessionState.AUTHENTICATING:
            raise FTPNotConnectedError("Login")

        user = self._endpoint.username if user is None else user
        password = self._endpoint.password if password is None else password

        reply = self._exchange("USER", user)
        if reply.code == 331:
            reply = self._exchange("PASS", password)

        if reply.code == 230:
            self._state = SessionState.IDLE
            logger.info(f"Logged in as {user}")
            return reply

        if reply.code in (332, 430, 530):
            error = FTPAuthenticationError(user, reply)
            self._fail(error)
            raise error

        raise FTPCommandRejectedError("Login", reply)

    def send_command(self, verb: str, *args: str) -> Reply:
        """
        Send a command and return its first reply.

        A 1xx reply leaves the session AWAITING_REPLY until
        read_final_reply() is called. Failure replies are returned,
        not raised.

        Raises:
            FTPSessionBusyError: If a reply is still outstanding
            FTPNotConnectedError: If not logged in
        """
        if self._state == SessionState.AWAITING_REPLY:
            raise FTPSessionBusyError(verb.upper())
        if self._state != SessionState.IDLE:
            raise FTPNotConnectedError(verb.upper())
        return self._exchange(verb, *args)

    def expect_success(self, verb: str, *args: str) -> Reply:
        """
        Send a command that must complete with a 2xx reply.

        Raises:
            FTPCommandRejectedError: If the reply is not 2xx
        """
        reply = self.send_command(verb, *args)
        if reply.is_preliminary:
            reply = self.read_final_reply()
        if not reply.is_success:
            raise FTPCommandRejectedError(verb.upper(), reply)
        return reply

    def read_final_reply(self) -> Reply:
        """
        Read the completion reply after a preliminary one.

        Raises:
            FTPNotConnectedError: If no reply is outstanding
        """
        if self._state != SessionState.AWAITING_REPLY:
            raise FTPNotConnectedError("Reading a final reply")

        reply = self._read_reply("Reply", self._command_timeout)
        while reply.is_preliminary:
            reply = self._read_reply("Reply", self._command_timeout)
        self._complete(reply)
        return reply

    def change_directory(self, path: str) -> str:
        """
        Change the working directory.

        Args:
            path: Remote directory

        Returns:
            The new working directory

        Raises:
            FTPCommandRejectedError: If CWD fails
        """
        if path == "..":
            self.expect_success("CDUP")
        else:
            self.expect_success("CWD", path)

        try:
            self._current_directory = self.print_working_directory()
        except (FTPCommandRejectedError, FTPMalformedReplyError):
            base = self._current_directory or "/"
            self._current_directory = posixpath.normpath(posixpath.join(base, path))
        return self._current_directory

    def print_working_directory(self) -> str:
        """Ask the server for the working directory."""
        reply = self.expect_success("PWD")
        path = parse_pwd_reply(reply)
        if not path:
            raise FTPMalformedReplyError(f"no path in PWD reply: {reply.text}")
        self._current_directory = path
        return path

    def set_transfer_type(self, mode: TransferType) -> None:
        """
        Set the representation type, skipping TYPE if already active.

        Raises:
            FTPCommandRejectedError: If TYPE fails
        """
        if self._transfer_type == mode:
            return
        self.expect_success("TYPE", mode.value)
        self._transfer_type = mode

    def abort(self) -> Optional[Reply]:
        """
        Abort an outstanding transfer with ABOR.

        Consumes the transfer's own completion reply and the ABOR reply,
        then returns the session to IDLE.

        Returns:
            The last reply read, or None if nothing was outstanding
        """
        if self._state != SessionState.AWAITING_REPLY:
            return None

        self._send("ABOR")
        reply = self._read_reply("Abort", self._command_timeout)
        while reply.is_preliminary:
            reply = self._read_reply("Abort", self._command_timeout)

        if reply.code in (225, 226):
            # Either the only answer, or the transfer finished first and the
            # ABOR reply is still on its way
            if self._has_pending_reply():
                reply = self._read_reply("Abort", self._command_timeout)
        else:
            # 426/451 closes the transfer; the ABOR reply follows
            reply = self._read_reply("Abort", self._command_timeout)

        logger.info(f"Transfer aborted: {reply.text}")
        self._complete(reply)
        return reply

    def check_connection(self) -> bool:
        """
        Look for an unsolicited reply or a dropped connection while IDLE.

        Servers that time out an idle session send 421 and close the
        control connection. Reading that here closes the session before
        the next command is written to a dead socket.

        Returns:
            True if the session is still IDLE
        """
        if self._state != SessionState.IDLE:
            return False

        try:
            pending = self._reader.has_pending(
                IDLE_POLL_TIMEOUT, self._sock.settimeout, self._sock.gettimeout
            )
        except OSError as e:
            self._fail(FTPTransportError(self._endpoint.host, self._endpoint.port, e))
            return False

        if self._reader.at_eof:
            logger.warning(f"Server closed idle session to {self._endpoint.host}")
            self._fail(FTPConnectionClosedError(self._endpoint.host, self._endpoint.port))
            return False

        if pending:
            try:
                reply = self._read_reply("Unsolicited reply", self._command_timeout)
            except FTPError:
                # Recorded in close_error
                return False
            logger.warning(f"Unsolicited reply on idle session: {reply.text}")
            self._complete(reply)

        return self._state == SessionState.IDLE

    def close(self) -> None:
        """Close the session, sending QUIT when possible."""
        if self._state == SessionState.CLOSED:
            return

        if self._state == SessionState.IDLE:
            try:
                self._exchange("QUIT")
            except FTPError as e:
                logger.debug(f"QUIT failed during close: {e}")

        self._shutdown()
        logger.info(f"Session to {self._endpoint.host} closed")

    def _exchange(self, verb: str, *args: str) -> Reply:
        """Send a command and read its first reply under the busy guard."""
        data = encode_command(verb, *args, encoding=self._encoding)
        if not self._state_lock.acquire(blocking=False):
            raise FTPSessionBusyError(verb.upper())
        try:
            if self._state == SessionState.AWAITING_REPLY:
                raise FTPSessionBusyError(verb.upper())
            previous = self._state
            self._state = SessionState.AWAITING_REPLY
            self._write(verb, data)
            reply = self._read_reply(verb.upper(), self._command_timeout)
        finally:
            self._state_lock.release()

        if reply.is_preliminary:
            return reply

        if previous == SessionState.AUTHENTICATING:
            self._state = previous
        self._complete(reply)
        return reply

    def _complete(self, reply: Reply) -> None:
        self._last_activity = datetime.now()
        if reply.closes_connection:
            logger.warning(f"Server closing control connection: {reply.text}")
            error = FTPConnectionClosedError(self._endpoint.host, self._endpoint.port)
            self._fail(error)
            return
        if self._state == SessionState.AWAITING_REPLY:
            self._state = SessionState.IDLE

    def _send(self, verb: str, *args: str) -> None:
        self._write(verb, encode_command(verb, *args, encoding=self._encoding))

    def _write(self, verb: str, data: bytes) -> None:
        if verb.upper() == "PASS":
            logger.debug("-> PASS ****")
        else:
            logger.debug(f"-> {data.decode(self._encoding).rstrip()}")

        try:
            self._sock.sendall(data)
        except socket.timeout as e:
            self._fail(FTPTimeoutError(f"Sending {verb.upper()}", self._command_timeout,
                                       self._endpoint.host, self._endpoint.port))
            raise self._close_error from e
        except OSError as e:
            self._fail(FTPTransportError(self._endpoint.host, self._endpoint.port, e))
            raise self._close_error from e

    def _read_reply(self, operation: str, timeout: float) -> Reply:
        try:
            reply = self._reader.read_reply()
        except socket.timeout as e:
            self._fail(FTPTimeoutError(operation, timeout,
                                       self._endpoint.host, self._endpoint.port))
            raise self._close_error from e
        except FTPConnectionClosedError as e:
            self._fail(FTPConnectionClosedError(self._endpoint.host, self._endpoint.port, e))
            raise self._close_error from e
        except FTPMalformedReplyError as e:
            self._fail(e)
            raise
        except OSError as e:
            self._fail(FTPTransportError(self._endpoint.host, self._endpoint.port, e))
            raise self._close_error from e

        logger.debug(f"<- {reply.text}")
        return reply

    def _has_pending_reply(self) -> bool:
        try:
            return self._reader.has_pending(
                self._abort_grace, self._sock.settimeout, self._sock.gettimeout
            )
        except OSError as e:
            self._fail(FTPTransportError(self._endpoint.host, self._endpoint.port, e))
            raise self._close_error from e

    def _fail(self, error: FTPError) -> None:
        """Record a fatal error and close the session."""
        logger.error(f"Control session failed: {error}")
        self._close_error = error
        self._shutdown()

    def _shutdown(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as e:
                logger.debug(f"Error closing control socket: {e}")
        self._sock = None
        self._state = SessionState.CLOSED
        self._transfer_type = None
