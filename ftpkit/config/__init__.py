"""Configuration module for ftpkit.

This module handles client settings and stored passwords:
- SettingsManager: JSON-based settings persistence
- credentials: Per-endpoint passwords in the system keyring
- Paths: Path constants and discovery
- ClientSettings: Settings dataclass
"""
