"""Logging configuration for ftpkit.

Provides centralized logging with PII redaction so passwords sent on
the control channel are never written to log files.
"""

import logging
import re
import sys
from pathlib import Path
from typing import Optional


# Credential patterns, always redacted
PII_PATTERNS = [
    # Password in various formats
    (re.compile(r'(password["\s:=]+)[^\s,}\]]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(passwd["\s:=]+)[^\s,}\]]+', re.IGNORECASE), r'\1[REDACTED]'),
    # PASS command on the control channel
    (re.compile(r'\bPASS [^\s*]\S*'), 'PASS [REDACTED]'),
    # FTP URLs with credentials
    (re.compile(r'ftp://[^:/\s]+:[^@\s]+@'), 'ftp://[REDACTED]@'),
]

# IP addresses (partial redaction for privacy)
ADDRESS_PATTERNS = [
    (re.compile(r'(\d+\.\d+\.)\d+\.\d+'), r'\1*.*'),
]

LOGGER_NAME = "ftpkit"


class PIIRedactingFormatter(logging.Formatter):
    """Custom formatter that redacts PII from log messages."""

    def __init__(self, *args, redact_addresses: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self._patterns = list(PII_PATTERNS)
        if redact_addresses:
            self._patterns.extend(ADDRESS_PATTERNS)

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record, redacting any PII."""
        message = super().format(record)
        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        return message


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    console: bool = True,
    redact_addresses: bool = False
) -> logging.Logger:
    """
    Configure ftpkit logging with PII redaction.

    Args:
        level: Logging level (default INFO)
        log_file: Optional file path for log output
        console: Whether to output to console (default True)
        redact_addresses: Also mask the last two octets of IPv4 addresses

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Clear any existing handlers
    logger.handlers.clear()

    formatter = PIIRedactingFormatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        redact_addresses=redact_addresses
    )

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (default is the package logger)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
