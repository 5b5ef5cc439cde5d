"""Keyring-backed passwords for ftpkit.

Passwords live in the system keyring, one entry per server endpoint
(user@host:port), so the settings file never holds them.
"""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger("ftpkit.config")

SERVICE_NAME = "ftpkit"


def credential_key(host: str, port: int, username: str) -> str:
    """Keyring entry name for one endpoint."""
    return f"{username}@{host}:{port}"


def lookup_password(host: str, port: int, username: str) -> Optional[str]:
    """
    Read the stored password for an endpoint.

    Returns:
        Password string, or None if nothing is stored or the keyring
        backend is unavailable
    """
    try:
        return keyring.get_password(SERVICE_NAME, credential_key(host, port, username))
    except KeyringError as e:
        logger.warning(f"Keyring lookup failed for {host}:{port}: {e}")
        return None


def store_password(host: str, port: int, username: str, password: str) -> bool:
    """
    Store or forget the password for an endpoint.

    An empty password removes the entry.

    Returns:
        True if the keyring was updated
    """
    key = credential_key(host, port, username)
    try:
        if password:
            keyring.set_password(SERVICE_NAME, key, password)
        else:
            keyring.delete_password(SERVICE_NAME, key)
        return True
    except PasswordDeleteError:
        # Nothing was stored
        return True
    except KeyringError as e:
        logger.warning(f"Keyring update failed for {host}:{port}: {e}")
        return False
