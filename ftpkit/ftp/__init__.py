"""FTP protocol module for ftpkit.

This module handles all FTP-related functionality:
- ControlSession: Control connection with state tracking
- DataChannelNegotiator: Passive and active data connections
- TransferEngine: LIST, NLST, MKD, STOR and RETR execution
- ListingParser: Unix and DOS directory listing parsing
- FTPClient: Thread-backed facade with callbacks
- Exceptions: FTP-specific error types
"""
