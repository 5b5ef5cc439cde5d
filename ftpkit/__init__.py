"""ftpkit - a threaded FTP client engine.

Exposes the FTPClient facade along with its result and entry types.
"""

from ftpkit.ftp.client import DirectoryListing, FTPClient, OperationHandle
from ftpkit.ftp.listing import DirectoryEntry, EntryType
from ftpkit.ftp.transfer import OperationResult, TransferProgress

__version__ = "1.0.0"

__all__ = [
    "DirectoryEntry",
    "DirectoryListing",
    "EntryType",
    "FTPClient",
    "OperationHandle",
    "OperationResult",
    "TransferProgress",
]
