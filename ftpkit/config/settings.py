"""Client settings management for ftpkit.

Provides ClientSettings dataclass and SettingsManager for persistence.
Passwords are never stored here; see ftpkit.config.credentials.
"""

import json
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

from ftpkit.config.paths import get_settings_path
from ftpkit.utils.validators import validate_block_size, validate_port, validate_timeout


@dataclass
class ClientSettings:
    """Connection and transfer settings that persist between sessions."""

    # Server defaults
    host: str = ""
    port: int = 21
    username: str = "anonymous"

    # Data channel
    passive_mode: bool = True
    prefer_epsv: bool = False
    trust_pasv_address: bool = True
    active_address: str = ""

    # Listing
    show_hidden_files: bool = False

    # Timeouts (seconds)
    connect_timeout: float = 30
    command_timeout: float = 30
    data_timeout: float = 30

    # Transfers
    block_size: int = 8192
    encoding: str = "utf-8"

    def __post_init__(self):
        """Validate settings after initialization."""
        is_valid, error = validate_port(self.port)
        if not is_valid:
            raise ValueError(error)
        for name in ("connect_timeout", "command_timeout", "data_timeout"):
            is_valid, error = validate_timeout(getattr(self, name))
            if not is_valid:
                raise ValueError(f"{name}: {error}")
        is_valid, error = validate_block_size(self.block_size)
        if not is_valid:
            raise ValueError(error)

    def to_dict(self) -> dict:
        """Convert settings to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ClientSettings":
        """Create settings from dictionary, ignoring unknown keys."""
        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)


class SettingsManager:
    """Manages client settings persistence."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize settings manager.

        Args:
            config_path: Optional custom path, defaults to platform standard
        """
        self._config_path = config_path or get_settings_path()
        self._settings: Optional[ClientSettings] = None

    @property
    def config_path(self) -> Path:
        """Path to settings file."""
        return self._config_path

    def load(self) -> ClientSettings:
        """
        Load settings from disk.

        Returns:
            ClientSettings instance (defaults if file not found or invalid)
        """
        if self._config_path.exists():
            try:
                with open(self._config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self._settings = ClientSettings.from_dict(data)
            except (json.JSONDecodeError, IOError, TypeError, ValueError):
                # Invalid or unreadable file, use defaults
                self._settings = ClientSettings()
        else:
            self._settings = ClientSettings()

        return self._settings

    def save(self, settings: ClientSettings) -> None:
        """
        Persist settings to disk.

        Args:
            settings: Settings to save
        """
        self._settings = settings

        # Ensure parent directory exists
        self._config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self._config_path, "w", encoding="utf-8") as f:
            json.dump(settings.to_dict(), f, indent=2)

    def reset(self) -> ClientSettings:
        """
        Reset to default settings.

        Returns:
            Default ClientSettings instance
        """
        self._settings = ClientSettings()

        # Remove existing file
        if self._config_path.exists():
            self._config_path.unlink()

        return self._settings

    def update(self, **kwargs) -> ClientSettings:
        """
        Update specific settings fields.

        Args:
            **kwargs: Field names and new values

        Returns:
            Updated ClientSettings instance
        """
        if self._settings is None:
            self.load()

        data = self._settings.to_dict()
        for key, value in kwargs.items():
            if key in data:
                data[key] = value

        # Rebuild so the new values are validated
        self.save(ClientSettings.from_dict(data))
        return self._settings
