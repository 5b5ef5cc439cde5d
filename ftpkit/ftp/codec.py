"""Wire codec for the FTP control channel.

Serializes commands into CRLF-terminated lines and reads (possibly
multi-line) replies from a byte stream. Also holds the parsers for the
structured replies the engine depends on (PASV, EPSV, PWD/MKD).
"""

import ipaddress
import re
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Tuple

from ftpkit.ftp.exceptions import (
    FTPConnectionClosedError,
    FTPMalformedReplyError,
)


CRLF = b"\r\n"

# Longest single reply line accepted from the server
MAX_LINE = 8192

# Upper bound for one complete (multi-line) reply
MAX_REPLY_SIZE = 65536

RECV_SIZE = 4096

VERB_PATTERN = re.compile(r"^[A-Za-z]{3,4}$")
CODE_PATTERN = re.compile(r"^([1-5]\d\d)([ -]|$)")
PASV_PATTERN = re.compile(r"(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3})")
EPSV_PATTERN = re.compile(r"\((.)\1\1(\d+)\1\)")


class ReplyKind(Enum):
    """Reply classification by leading digit."""
    PRELIMINARY = 1
    SUCCESS = 2
    INTERMEDIATE = 3
    TRANSIENT_FAILURE = 4
    PERMANENT_FAILURE = 5


@dataclass(frozen=True)
class Reply:
    """A single control-channel reply."""
    code: int
    lines: Tuple[str, ...]

    @property
    def kind(self) -> ReplyKind:
        """Classification of the reply."""
        return ReplyKind(self.code // 100)

    @property
    def is_preliminary(self) -> bool:
        return self.kind == ReplyKind.PRELIMINARY

    @property
    def is_success(self) -> bool:
        return self.kind == ReplyKind.SUCCESS

    @property
    def is_intermediate(self) -> bool:
        return self.kind == ReplyKind.INTERMEDIATE

    @property
    def is_failure(self) -> bool:
        return self.code >= 400

    @property
    def closes_connection(self) -> bool:
        """True if the server announced it is closing the control channel."""
        return self.code == 421

    @property
    def message(self) -> str:
        """Reply text without the code prefixes."""
        parts = []
        for index, line in enumerate(self.lines):
            if index == 0 or line[:3] == str(self.code):
                parts.append(line[4:])
            else:
                parts.append(line)
        return "\n".join(parts)

    @property
    def text(self) -> str:
        """Full reply text as received (lines joined with newlines)."""
        return "\n".join(self.lines)

    def __str__(self) -> str:
        return self.text


def encode_command(verb: str, *args: str, encoding: str = "utf-8") -> bytes:
    """
    Serialize a command for the control channel.

    Args:
        verb: Command verb (e.g. "RETR")
        *args: Command arguments, joined by single spaces
        encoding: Text encoding for the control channel

    Returns:
        Encoded command line including the CRLF terminator

    Raises:
        ValueError: If the verb is invalid or an argument contains CR/LF
    """
    if not VERB_PATTERN.match(verb):
        raise ValueError(f"Invalid FTP command verb: {verb!r}")

    parts = [verb.upper()]
    for arg in args:
        arg = str(arg)
        if "\r" in arg or "\n" in arg:
            raise ValueError("FTP command arguments cannot contain line breaks")
        parts.append(arg)

    return " ".join(parts).encode(encoding) + CRLF


class ReplyReader:
    """
    Buffered reply reader over a recv-style callable.

    The buffer survives socket timeouts, so a timed out read can be
    retried or checked with has_pending() without losing data.
    """

    def __init__(
        self,
        recv: Callable[[int], bytes],
        encoding: str = "utf-8",
        max_line: int = MAX_LINE,
        max_reply: int = MAX_REPLY_SIZE
    ):
        self._recv = recv
        self._encoding = encoding
        self._max_line = max_line
        self._max_reply = max_reply
        self._buffer = bytearray()
        self._eof = False

    @property
    def buffered(self) -> int:
        """Number of bytes received but not yet consumed."""
        return len(self._buffer)

    @property
    def at_eof(self) -> bool:
        """True once the peer has closed the stream."""
        return self._eof

    def _fill(self) -> bool:
        """Receive more data. Returns False on end of stream."""
        data = self._recv(RECV_SIZE)
        if not data:
            self._eof = True
            return False
        self._buffer.extend(data)
        return True

    def _read_line(self) -> str:
        while True:
            index = self._buffer.find(b"\n")
            if index >= 0:
                if index > self._max_line:
                    raise FTPMalformedReplyError(f"line longer than {self._max_line} bytes")
                raw = bytes(self._buffer[:index + 1])
                del self._buffer[:index + 1]
                return raw.rstrip(b"\r\n").decode(self._encoding, errors="replace")

            if len(self._buffer) > self._max_line:
                raise FTPMalformedReplyError(f"line longer than {self._max_line} bytes")

            if not self._fill():
                if self._buffer:
                    raise FTPMalformedReplyError("stream ended before line terminator")
                raise FTPConnectionClosedError()

    def read_reply(self) -> Reply:
        """
        Read one complete reply.

        Returns:
            Parsed Reply

        Raises:
            FTPMalformedReplyError: If the reply cannot be parsed or is cut off
            FTPConnectionClosedError: If the stream ended before any data
            socket.timeout: If no data at all arrived within the socket timeout
        """
        lines = []
        size = 0

        try:
            first = self._read_line()
            match = CODE_PATTERN.match(first)
            if not match:
                raise FTPMalformedReplyError(f"no reply code in {first[:80]!r}")

            code = match.group(1)
            lines.append(first)
            size += len(first)

            if match.group(2) == "-":
                while True:
                    line = self._read_line()
                    lines.append(line)
                    size += len(line)
                    if size > self._max_reply:
                        raise FTPMalformedReplyError(
                            f"reply larger than {self._max_reply} bytes"
                        )
                    if line[:3] == code and line[3:4] in (" ", ""):
                        break

        except socket.timeout as e:
            if lines or self._buffer:
                raise FTPMalformedReplyError("reply terminator not received in time", e)
            raise
        except FTPConnectionClosedError:
            if lines:
                raise FTPMalformedReplyError("stream ended inside a multi-line reply")
            raise

        return Reply(code=int(code), lines=tuple(lines))

    def has_pending(self, timeout: float, settimeout: Callable = None, gettimeout: Callable = None) -> bool:
        """
        Check whether more reply data is available.

        Args:
            timeout: Seconds to wait for data when the buffer is empty
            settimeout: Socket settimeout used to bound the wait
            gettimeout: Socket gettimeout used to restore the previous value

        Returns:
            True if unread data is buffered or arrives within the timeout
        """
        if self._buffer:
            return True

        previous = gettimeout() if gettimeout else None
        if settimeout:
            settimeout(timeout)
        try:
            return self._fill()
        except socket.timeout:
            return False
        finally:
            if settimeout:
                settimeout(previous)


def parse_reply(data: bytes, encoding: str = "utf-8") -> Reply:
    """Parse a complete reply from a byte string."""
    chunks = [bytes(data)]

    def recv(_size: int) -> bytes:
        return chunks.pop() if chunks else b""

    return ReplyReader(recv, encoding=encoding).read_reply()


def parse_pasv_reply(reply: Reply) -> Tuple[str, int]:
    """
    Parse the '227' reply to a PASV request.

    Returns:
        (host, port) tuple

    Raises:
        FTPMalformedReplyError: If the reply has no '(h1,h2,h3,h4,p1,p2)'
    """
    if reply.code != 227:
        raise FTPMalformedReplyError(f"unexpected PASV reply: {reply.text}")

    match = PASV_PATTERN.search(reply.text)
    if not match:
        raise FTPMalformedReplyError(f"no address in PASV reply: {reply.text}")

    numbers = [int(n) for n in match.groups()]
    if any(n > 255 for n in numbers):
        raise FTPMalformedReplyError(f"address out of range in PASV reply: {reply.text}")

    host = ".".join(str(n) for n in numbers[:4])
    port = (numbers[4] << 8) + numbers[5]
    return host, port


def parse_epsv_reply(reply: Reply) -> int:
    """
    Parse the '229' reply to an EPSV request.

    Returns:
        Port number

    Raises:
        FTPMalformedReplyError: If the reply has no '(|||port|)'
    """
    if reply.code != 229:
        raise FTPMalformedReplyError(f"unexpected EPSV reply: {reply.text}")

    match = EPSV_PATTERN.search(reply.text)
    if not match:
        raise FTPMalformedReplyError(f"no port in EPSV reply: {reply.text}")

    port = int(match.group(2))
    if not 1 <= port <= 65535:
        raise FTPMalformedReplyError(f"port out of range in EPSV reply: {reply.text}")
    return port


def parse_pwd_reply(reply: Reply) -> str:
    """
    Parse the '257' reply to a PWD or MKD request.

    Doubled quotes inside the path are unescaped.

    Returns:
        Quoted directory name, or an empty string if none is present
    """
    if reply.code != 257:
        raise FTPMalformedReplyError(f"unexpected directory reply: {reply.text}")

    text = reply.lines[0][4:]
    if not text.startswith('"'):
        return ""

    name = []
    index = 1
    while index < len(text):
        char = text[index]
        if char == '"':
            if text[index + 1:index + 2] == '"':
                name.append('"')
                index += 2
                continue
            break
        name.append(char)
        index += 1
    return "".join(name)


def format_port_args(host: str, port: int) -> str:
    """Format the PORT argument 'h1,h2,h3,h4,p1,p2'."""
    octets = host.split(".")
    return ",".join(octets + [str(port >> 8), str(port & 0xFF)])


def format_eprt_args(host: str, port: int) -> str:
    """Format the EPRT argument '|af|host|port|'."""
    # scope ids ("fe80::1%eth0") are local only
    host = host.split("%", 1)[0]
    family = 2 if ipaddress.ip_address(host).version == 6 else 1
    return f"|{family}|{host}|{port}|"
