"""
Locating, loading and saving the ledger-sync configuration file.

``SyncConfig`` owns the file format; this module only decides where the file
lives. An explicit ``--config`` path wins over the working directory default.
"""

from pathlib import Path
from typing import Optional

from .models import SyncConfig
from .paths import get_path_manager


def get_default_config_path() -> Path:
    return get_path_manager().config_path


def _config_file(config_path: Optional[str]) -> str:
    if config_path:
        return str(Path(config_path).expanduser())
    return str(get_default_config_path())


def load_config(config_path: Optional[str] = None) -> SyncConfig:
    """Load the configuration; a missing or unreadable file yields defaults."""
    return SyncConfig.load_from_file(_config_file(config_path))


def save_config(config: SyncConfig, config_path: Optional[str] = None) -> None:
    config.save_to_file(_config_file(config_path))


def get_log_dir() -> Path:
    """Log directory under the working directory, created on first use."""
    manager = get_path_manager()
    manager.ensure_directories()
    return manager.log_dir
