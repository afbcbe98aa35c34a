"""
Centralized path management for ledger-sync.

Resolves the working directory that holds the configuration file, the
watermark state and the log files.
"""

import os
import sys
from pathlib import Path
from typing import Optional
import logging


class PathManager:
    """Manages ledger-sync file paths."""

    # Directory names
    WORKING_DIR_NAME = "ledger-sync"
    HOME_ENV_VAR = "LEDGER_SYNC_HOME"

    # File names
    CONFIG_FILE = "config.json"
    STATE_FILE = "sync_state.json"
    LOG_FILE = "ledger-sync.log"

    def __init__(self, logger: Optional[logging.Logger] = None):
        """Initialize path manager."""
        self.logger = logger or logging.getLogger(__name__)
        self._working_dir: Optional[Path] = None

    def _default_user_dir(self) -> Path:
        """Platform-appropriate per-user data directory."""
        if sys.platform == "darwin":
            return Path.home() / "Library" / "Application Support" / self.WORKING_DIR_NAME
        xdg = os.environ.get("XDG_CONFIG_HOME")
        if xdg:
            return Path(xdg).expanduser() / self.WORKING_DIR_NAME
        return Path.home() / ".config" / self.WORKING_DIR_NAME

    @property
    def working_dir(self) -> Path:
        """Get the working directory, honouring the environment override."""
        if self._working_dir is not None:
            return self._working_dir

        env_override = os.environ.get(self.HOME_ENV_VAR)
        if env_override:
            env_path = Path(env_override).expanduser().resolve()
            self.logger.debug(f"Using {self.HOME_ENV_VAR} override: {env_path}")
            self._working_dir = env_path
        else:
            self._working_dir = self._default_user_dir()

        return self._working_dir

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        for directory in (self.working_dir, self.data_dir, self.log_dir):
            directory.mkdir(parents=True, exist_ok=True)
            self.logger.debug(f"Ensured directory exists: {directory}")

    @property
    def data_dir(self) -> Path:
        """Get the data directory for pass state."""
        return self.working_dir / "data"

    @property
    def log_dir(self) -> Path:
        """Get the log directory."""
        return self.working_dir / "logs"

    @property
    def config_path(self) -> Path:
        """Get the configuration file path."""
        return self.working_dir / self.CONFIG_FILE

    @property
    def state_path(self) -> Path:
        """Get the watermark state file path."""
        return self.data_dir / self.STATE_FILE

    @property
    def log_path(self) -> Path:
        """Get the log file path."""
        return self.log_dir / self.LOG_FILE


# Global instance for convenience
_path_manager = None


def get_path_manager() -> PathManager:
    """Get or create the global PathManager instance."""
    global _path_manager
    if _path_manager is None:
        _path_manager = PathManager()
    return _path_manager


def reset_path_manager() -> None:
    """Drop the cached PathManager (used when the environment changes)."""
    global _path_manager
    _path_manager = None
