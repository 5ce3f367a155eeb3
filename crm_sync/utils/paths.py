"""
Path utilities for configuration directory resolution.

Provides consistent path resolution for the crm-sync configuration
directory across all modules.
"""

from __future__ import annotations

import os
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".crm-sync"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "CRM_SYNC_CONFIG_DIR"

# Default SQLite database file name inside the config directory
DEFAULT_DB_FILE = "sync.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. CRM_SYNC_CONFIG_DIR environment variable
        3. Default directory (~/.crm-sync)

    Args:
        config_dir: Optional explicit configuration directory path.
                   Can be a Path object or string.

    Returns:
        Resolved Path to the configuration directory (expanduser and resolve applied)
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_db_path(config_dir: Path, db_path: str | None = None) -> Path:
    """
    Resolve the sync database location.

    A configured db_path is used as-is (after ~ expansion) when absolute,
    or relative to the configuration directory otherwise.
    """
    if not db_path:
        return config_dir / DEFAULT_DB_FILE

    path = Path(db_path).expanduser()
    if path.is_absolute():
        return path
    return config_dir / path
