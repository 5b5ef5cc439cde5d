"""Data channel negotiation for ftpkit.

Negotiates the per-transfer data connection in passive (PASV/EPSV) or
active (PORT/EPRT) mode and wraps it in a DataChannelHandle.
"""

import logging
import socket
import threading
from enum import Enum
from typing import Iterator, Optional, Tuple

from ftpkit.ftp.codec import (
    format_eprt_args,
    format_port_args,
    parse_epsv_reply,
    parse_pasv_reply,
)
from ftpkit.ftp.connection import ControlSession
from ftpkit.ftp.exceptions import (
    FTPCommandRejectedError,
    FTPDataChannelTimeoutError,
    FTPTransportError,
)

logger = logging.getLogger("ftpkit.data")


class DataChannelMode(Enum):
    """Data connection establishment strategy."""
    PASSIVE = "passive"
    ACTIVE = "active"


class DataChannelHandle:
    """
    One data connection, bound to a single operation.

    In passive mode the socket is connected on creation. In active mode
    the handle holds a listening socket until establish() accepts the
    server's connection.
    """

    def __init__(
        self,
        mode: DataChannelMode,
        timeout: float,
        sock: Optional[socket.socket] = None,
        listener: Optional[socket.socket] = None,
        remote: Optional[Tuple[str, int]] = None
    ):
        self.mode = mode
        self.remote = remote
        self._timeout = timeout
        self._sock = sock
        self._listener = listener
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_established(self) -> bool:
        """True once a connected data socket exists."""
        return self._sock is not None

    def establish(self) -> None:
        """
        Make sure the data connection is up.

        Passive handles are already connected. Active handles accept one
        inbound connection within the timeout.

        Raises:
            FTPDataChannelTimeoutError: If no connection arrives in time
            FTPTransportError: If the handle was closed or accept fails
        """
        if self._sock is not None:
            return
        if self._closed or self._listener is None:
            raise FTPTransportError("", 0, message="Data channel is closed")

        try:
            conn, address = self._listener.accept()
        except socket.timeout as e:
            raise FTPDataChannelTimeoutError(self._timeout, e)
        except OSError as e:
            raise FTPTransportError("", 0, e, message="Accepting data connection failed")

        conn.settimeout(self._timeout)
        with self._lock:
            if self._closed:
                conn.close()
                raise FTPTransportError("", 0, message="Data channel is closed")
            self._sock = conn
            self.remote = address[:2]
            self._close_listener()
        logger.debug(f"Accepted data connection from {address[0]}:{address[1]}")

    def recv(self, size: int) -> bytes:
        """Receive up to size bytes; b"" means the server closed the channel."""
        return self._connected().recv(size)

    def sendall(self, data: bytes) -> None:
        self._connected().sendall(data)

    def iter_chunks(self, size: int) -> Iterator[bytes]:
        """Yield chunks until the server closes the connection."""
        while True:
            chunk = self.recv(size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        """Close the data connection. Safe to call from any thread, repeatedly."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._sock is not None:
                try:
                    # Wakes a worker blocked in recv/sendall
                    self._sock.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
                self._sock.close()
            self._close_listener()

    def _close_listener(self) -> None:
        if self._listener is not None:
            try:
                self._listener.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._listener.close()
            self._listener = None

    def _connected(self) -> socket.socket:
        if self._sock is None:
            raise FTPTransportError("", 0, message="Data channel is not connected")
        return self._sock

    def __enter__(self) -> "DataChannelHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class DataChannelNegotiator:
    """Opens one data channel per operation over a control session."""

    def __init__(
        self,
        session: ControlSession,
        mode: DataChannelMode = DataChannelMode.PASSIVE,
        timeout: float = 30,
        prefer_epsv: bool = False,
        trust_pasv_address: bool = True,
        active_address: Optional[str] = None
    ):
        """
        Initialize the negotiator.

        Args:
            session: Logged-in control session
            mode: Passive (default) or active
            timeout: Seconds allowed to establish the data connection
            prefer_epsv: Use EPSV before PASV on IPv4 connections
            trust_pasv_address: Connect to the host in the PASV reply rather
                than the control connection's peer
            active_address: Local address announced in PORT/EPRT
        """
        self._session = session
        self.mode = mode
        self._timeout = timeout
        self._prefer_epsv = prefer_epsv
        self._trust_pasv_address = trust_pasv_address
        self._active_address = active_address

    def open(self) -> DataChannelHandle:
        """Open a data channel using the configured mode."""
        if self.mode == DataChannelMode.ACTIVE:
            return self.open_active(self._active_address)
        handle, _, _ = self.open_passive()
        return handle

    def open_passive(self) -> Tuple[DataChannelHandle, str, int]:
        """
        Request passive mode and connect to the announced endpoint.

        Returns:
            (handle, server host, server port)

        Raises:
            FTPCommandRejectedError: If both PASV and EPSV are refused
            FTPDataChannelTimeoutError: If the connect times out
            FTPTransportError: If the connect fails
        """
        use_epsv = self._prefer_epsv or self._session.address_family == socket.AF_INET6
        verbs = ("EPSV", "PASV") if use_epsv else ("PASV", "EPSV")

        reply = self._session.send_command(verbs[0])
        verb = verbs[0]
        if reply.code in (500, 501, 502):
            logger.debug(f"{verbs[0]} not supported, trying {verbs[1]}")
            verb = verbs[1]
            reply = self._session.send_command(verb)
        if not reply.is_success:
            raise FTPCommandRejectedError(verb, reply)

        if verb == "EPSV":
            host = self._session.peer_host
            port = parse_epsv_reply(reply)
        else:
            host, port = parse_pasv_reply(reply)
            if not self._trust_pasv_address or host == "0.0.0.0":
                host = self._session.peer_host

        logger.debug(f"Opening passive data connection to {host}:{port}")
        try:
            sock = socket.create_connection((host, port), timeout=self._timeout)
        except socket.timeout as e:
            raise FTPDataChannelTimeoutError(self._timeout, e)
        except OSError as e:
            raise FTPTransportError(host, port, e)

        sock.settimeout(self._timeout)
        handle = DataChannelHandle(
            DataChannelMode.PASSIVE, self._timeout, sock=sock, remote=(host, port)
        )
        return handle, host, port

    def open_active(self, local_address: Optional[str] = None, local_port: int = 0) -> DataChannelHandle:
        """
        Listen locally and announce the endpoint with PORT/EPRT.

        The returned handle accepts the server's connection in
        establish(), after the transfer command has been sent.

        Args:
            local_address: Address to listen on and announce (default: the
                local end of the control connection)
            local_port: Port to listen on (0 = ephemeral)

        Raises:
            FTPCommandRejectedError: If PORT/EPRT is refused
            FTPTransportError: If the listening socket cannot be created
        """
        host = local_address or self._session.local_host
        family = socket.AF_INET6 if ":" in host else socket.AF_INET

        try:
            listener = socket.socket(family, socket.SOCK_STREAM)
            listener.bind((host, local_port))
            listener.listen(1)
            listener.settimeout(self._timeout)
        except OSError as e:
            raise FTPTransportError(host, local_port, e, message="Cannot listen for data connection")

        port = listener.getsockname()[1]
        try:
            if family == socket.AF_INET6:
                verb, args = "EPRT", format_eprt_args(host, port)
            else:
                verb, args = "PORT", format_port_args(host, port)

            reply = self._session.send_command(verb, args)
            if not reply.is_success:
                raise FTPCommandRejectedError(verb, reply)
        except Exception:
            listener.close()
            raise

        logger.debug(f"Listening for active data connection on {host}:{port}")
        return DataChannelHandle(DataChannelMode.ACTIVE, self._timeout, listener=listener)
