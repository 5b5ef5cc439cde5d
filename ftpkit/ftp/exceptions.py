"""FTP-specific exceptions for ftpkit.

Custom exception hierarchy for the FTP engine. Transport failures,
protocol rejections and caller-initiated aborts are kept distinct so
callers can decide on retry policy themselves.
"""

from typing import Optional


class FTPError(Exception):
    """Base exception for all FTP-related errors."""

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class FTPTransportError(FTPError):
    """Connection-level failure (refused, reset, DNS failure)."""

    def __init__(
        self,
        host: str,
        port: int,
        original_error: Exception = None,
        message: Optional[str] = None
    ):
        self.host = host
        self.port = port
        if message is None:
            message = f"Connection to {host}:{port} failed"
        super().__init__(message, original_error)


class FTPTimeoutError(FTPTransportError):
    """Control-channel operation timed out."""

    def __init__(
        self,
        operation: str = "Operation",
        timeout: float = 30,
        host: str = "",
        port: int = 0
    ):
        self.operation = operation
        self.timeout = timeout
        message = f"{operation} timed out after {timeout} seconds"
        super().__init__(host, port, message=message)


class FTPConnectionClosedError(FTPTransportError):
    """Server closed the control connection."""

    def __init__(self, host: str = "", port: int = 0, original_error: Exception = None):
        message = "Control connection closed by server"
        if host:
            message = f"Control connection to {host}:{port} closed by server"
        super().__init__(host, port, original_error, message=message)


class FTPAuthenticationError(FTPError):
    """FTP authentication (login) failed."""

    def __init__(self, username: str, reply=None):
        self.username = username
        self.reply = reply
        message = f"Authentication failed for user '{username}'"
        if reply is not None:
            message = f"{message} ({reply.text})"
        super().__init__(message)


class FTPSessionBusyError(FTPError):
    """An operation was started while another one owns the session."""

    def __init__(self, operation: str = "Operation"):
        self.operation = operation
        message = f"{operation} rejected: another operation is in progress"
        super().__init__(message)


class FTPNotConnectedError(FTPError):
    """Operation attempted without an authenticated FTP session."""

    def __init__(self, operation: str = "Operation"):
        message = f"{operation} requires an authenticated FTP session"
        super().__init__(message)


class FTPCommandRejectedError(FTPError):
    """Server answered a well-formed command with a 4xx/5xx reply."""

    def __init__(self, command: str, reply):
        self.command = command
        self.reply = reply
        message = f"{command} rejected: {reply.text}"
        super().__init__(message)

    @property
    def code(self) -> int:
        """Reply code that rejected the command."""
        return self.reply.code


class FTPMalformedReplyError(FTPError):
    """Control-channel response could not be parsed."""

    def __init__(self, detail: str, original_error: Exception = None):
        self.detail = detail
        message = f"Malformed server reply: {detail}"
        super().__init__(message, original_error)


class FTPDataChannelTimeoutError(FTPError):
    """No data connection was established within the configured bound."""

    def __init__(self, timeout: float = 30, original_error: Exception = None):
        self.timeout = timeout
        message = f"Data connection not established within {timeout} seconds"
        super().__init__(message, original_error)


class FTPCancelledError(FTPError):
    """Operation was cancelled by the caller."""

    def __init__(self, operation: str = "Operation"):
        self.operation = operation
        message = f"{operation} cancelled"
        super().__init__(message)


class FTPLocalFileError(FTPError):
    """Local file could not be read or written."""

    def __init__(self, path, original_error: Exception = None):
        self.path = path
        message = f"Local file error for '{path}'"
        super().__init__(message, original_error)
