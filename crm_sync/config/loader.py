"""
Configuration loader module for CRM synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Type and range validation of known keys
- Resolving OAuth client credentials from config or environment
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml

from crm_sync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

# Environment variables consulted for the OAuth client when the config
# file does not name other ones via client_id_env / client_secret_env
DEFAULT_CLIENT_ID_ENV = "CRM_SYNC_CLIENT_ID"
DEFAULT_CLIENT_SECRET_ENV = "CRM_SYNC_CLIENT_SECRET"

# Valid configuration keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # CRM connection
    "crm_base_url": str,
    "token_url": str,
    "authorize_url": str,
    "redirect_uri": str,
    "client_id": str,
    "client_secret": str,
    "client_id_env": str,
    "client_secret_env": str,
    "provider": str,
    # Storage
    "db_path": str,
    # API options
    "api_page_size": int,
    "api_max_retries": int,
    "api_initial_retry_delay": (int, float),
    "api_max_retry_delay": (int, float),
    "api_timeout": (int, float),
    "api_min_request_interval": (int, float),
    "token_refresh_margin": (int, float),
    # Matching options
    "secondary_match": bool,
    "name_match_threshold": (int, float),
    # Sync behavior
    "parallel": bool,
    "full": bool,
    "verbose": bool,
    # Logging options
    "log_dir": str,
    "log_retention_count": int,
    # Daemon options
    "daemon_interval": (str, int),
    "daemon_full_sync_interval": (str, int),
    "daemon_pid_file": str,
}

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ConfigLoader:
    """
    YAML configuration file loader.

    Handles loading and validation of YAML configuration files
    for the crm-sync application.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

        # With custom path
        loader = ConfigLoader(config_dir=Path("/custom/path"))
        config = loader.load()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to $CRM_SYNC_CONFIG_DIR or ~/.crm-sync/
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Dictionary containing configuration values, or empty dict if the
            file doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values, or empty dict if the
            file doesn't exist or is empty

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration types and values.

        Unknown keys are ignored with a warning.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            expected_type = VALID_KEYS.get(key)
            if expected_type is None:
                logger.warning(f"Unknown configuration key ignored: {key}")
                continue

            # bool is an int subclass; reject it for numeric keys
            is_bool_for_number = isinstance(value, bool) and expected_type is not bool
            if is_bool_for_number or not isinstance(value, expected_type):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        if "name_match_threshold" in config:
            threshold = config["name_match_threshold"]
            if not (0.0 <= threshold <= 1.0):
                raise ConfigError(
                    f"name_match_threshold must be between 0.0 and 1.0, got {threshold}"
                )

        if "api_page_size" in config:
            page_size = config["api_page_size"]
            if not (1 <= page_size <= 100):
                raise ConfigError(
                    f"api_page_size must be between 1 and 100, got {page_size}"
                )

        for key in ("api_max_retries", "log_retention_count"):
            if key in config and config[key] < 0:
                raise ConfigError(f"{key} must be >= 0, got {config[key]}")

        for key in ("api_initial_retry_delay", "api_max_retry_delay", "api_timeout"):
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        for key in ("api_min_request_interval", "token_refresh_margin"):
            if key in config and config[key] < 0:
                raise ConfigError(f"{key} must be >= 0, got {config[key]}")

        for key in ("crm_base_url", "token_url", "authorize_url"):
            if key in config and not config[key].startswith(("http://", "https://")):
                raise ConfigError(f"{key} must be an http(s) URL, got {config[key]!r}")

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config


def resolve_client_credentials(
    config: dict[str, Any],
) -> tuple[Optional[str], Optional[str]]:
    """
    Resolve the OAuth client id and secret.

    Values in the config file win; otherwise the environment variables named
    by client_id_env / client_secret_env (default CRM_SYNC_CLIENT_ID and
    CRM_SYNC_CLIENT_SECRET) are used.

    Returns:
        Tuple of (client_id, client_secret); either may be None
    """
    client_id = config.get("client_id") or os.environ.get(
        config.get("client_id_env", DEFAULT_CLIENT_ID_ENV)
    )
    client_secret = config.get("client_secret") or os.environ.get(
        config.get("client_secret_env", DEFAULT_CLIENT_SECRET_ENV)
    )
    return client_id or None, client_secret or None
