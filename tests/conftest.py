"""Pytest configuration and shared fixtures for ftpkit tests."""

import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional
from unittest.mock import patch

import pytest

from ftpkit.ftp.connection import ControlSession, ServerEndpoint


# Test constants
TEST_FTP_HOST = "127.0.0.1"
TEST_FTP_PORT = 21
TEST_FTP_USER = "testuser"
TEST_FTP_PASS = "testpass"

BANNER = b"220 Ready\r\n"
LOGIN_REPLIES = b"331 Password required\r\n230 Logged in\r\n"


@dataclass
class MockFTPConfig:
    """Configuration for the scripted FTP endpoint in tests."""
    host: str = TEST_FTP_HOST
    port: int = TEST_FTP_PORT
    username: str = TEST_FTP_USER
    password: str = TEST_FTP_PASS


class FakeControlSocket:
    """
    Scripted control connection.

    Replies are queued with feed(); recv() hands them out in order and
    raises socket.timeout once the script runs dry, the way a silent
    server looks to a socket with a timeout.
    """

    def __init__(
        self,
        peer: tuple = (TEST_FTP_HOST, TEST_FTP_PORT),
        local: tuple = (TEST_FTP_HOST, 50000),
        family: int = socket.AF_INET
    ):
        self.family = family
        self.sent: List[bytes] = []
        self.closed = False
        self._incoming = bytearray()
        self._eof = False
        self._peer = peer
        self._local = local
        self._timeout = None
        self.timeouts: List[float] = []
        # Called once when the script runs dry, before recv() times out
        self.on_drained: Optional[Callable[[], None]] = None

    def feed(self, data: bytes) -> None:
        """Queue reply bytes for the client to read."""
        self._incoming.extend(data)

    def hang_up(self) -> None:
        """Make recv() report end of stream once queued data is consumed."""
        self._eof = True

    @property
    def commands(self) -> List[str]:
        """Commands sent so far, without CRLF."""
        return [data.decode("utf-8").rstrip("\r\n") for data in self.sent]

    def recv(self, size: int) -> bytes:
        if self.closed:
            raise OSError(9, "Bad file descriptor")
        if not self._incoming and self.on_drained is not None:
            hook, self.on_drained = self.on_drained, None
            hook()
        if not self._incoming:
            if self._eof:
                return b""
            raise socket.timeout("timed out")
        chunk = bytes(self._incoming[:size])
        del self._incoming[:size]
        return chunk

    def sendall(self, data: bytes) -> None:
        if self.closed:
            raise OSError(9, "Bad file descriptor")
        self.sent.append(bytes(data))

    def settimeout(self, timeout) -> None:
        self._timeout = timeout
        self.timeouts.append(timeout)

    def gettimeout(self):
        return self._timeout

    def getpeername(self) -> tuple:
        return self._peer

    def getsockname(self) -> tuple:
        return self._local

    def shutdown(self, how: int) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeDataSocket:
    """
    Scripted data connection: serves a payload, records what is sent.

    send_limit makes sendall() fail with a broken pipe once that many bytes
    were accepted; reset makes recv() fail once the payload is drained.
    """

    def __init__(self, payload: bytes = b"", send_limit: Optional[int] = None, reset: bool = False):
        self.received = bytearray()
        self.send_limit = send_limit
        self.reset = reset
        self.closed = False
        self.was_shut_down = False
        self._payload = bytearray(payload)

    def recv(self, size: int) -> bytes:
        if self.closed:
            raise OSError(9, "Bad file descriptor")
        if not self._payload and self.reset:
            raise ConnectionResetError(104, "Connection reset by peer")
        chunk = bytes(self._payload[:size])
        del self._payload[:size]
        return chunk

    def sendall(self, data: bytes) -> None:
        if self.closed:
            raise OSError(9, "Bad file descriptor")
        if self.send_limit is not None and len(self.received) + len(data) > self.send_limit:
            raise BrokenPipeError(32, "Broken pipe")
        self.received.extend(data)

    def settimeout(self, timeout) -> None:
        pass

    def shutdown(self, how: int) -> None:
        self.was_shut_down = True

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def ftp_config() -> MockFTPConfig:
    """Provide scripted FTP configuration for tests."""
    return MockFTPConfig()


@pytest.fixture
def endpoint(ftp_config: MockFTPConfig) -> ServerEndpoint:
    """Endpoint matching ftp_config."""
    return ServerEndpoint(
        host=ftp_config.host,
        port=ftp_config.port,
        username=ftp_config.username,
        password=ftp_config.password,
    )


@pytest.fixture
def control_socket() -> FakeControlSocket:
    """Provide an empty scripted control connection."""
    return FakeControlSocket()


@pytest.fixture
def connect_session(endpoint: ServerEndpoint) -> Callable[..., ControlSession]:
    """
    Factory connecting a ControlSession over a scripted control socket.

    The banner is queued automatically; pass login=True to also queue the
    USER/PASS exchange and log in. Commands sent during setup are cleared.
    """
    def factory(sock: FakeControlSocket, login: bool = True, **kwargs) -> ControlSession:
        sock.feed(BANNER)
        if login:
            sock.feed(LOGIN_REPLIES)
        session = ControlSession(endpoint, **kwargs)
        with patch("ftpkit.ftp.connection.socket.create_connection", return_value=sock):
            session.connect()
        if login:
            session.login()
        sock.sent.clear()
        return session

    return factory


@pytest.fixture
def session(control_socket: FakeControlSocket, connect_session) -> ControlSession:
    """Provide a logged-in session over control_socket."""
    return connect_session(control_socket, abort_grace=0.01)


@pytest.fixture
def temp_settings_file(tmp_path: Path) -> Path:
    """Provide a temporary settings file path for testing."""
    return tmp_path / "settings.json"


@pytest.fixture
def sample_file(tmp_path: Path) -> Path:
    """Create a 20000 byte local file for upload tests."""
    path = tmp_path / "payload.bin"
    path.write_bytes(bytes(range(256)) * 78 + b"\x00" * 32)
    return path
