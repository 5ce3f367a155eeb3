"""
Configuration file generator for CRM synchronization.

Provides functionality to generate a default configuration file with
documentation for every available option.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Returns:
        String containing YAML configuration with comments

    Example:
        config_yaml = generate_default_config()
        with open("config.yaml", "w") as f:
            f.write(config_yaml)
    """
    return """# CRM Sync Configuration
# ======================
#
# Default options for crm-sync. CLI arguments always override these values.
#
# To use this configuration:
#   1. Save as ~/.crm-sync/config.yaml (or set CRM_SYNC_CONFIG_DIR)
#   2. Uncomment and modify options as needed
#   3. Run crm-sync commands normally


# CRM Connection
# --------------

# API root of the practice-management CRM
# Default: https://app.practicepanther.com/api/v2
# crm_base_url: https://app.practicepanther.com/api/v2

# OAuth endpoints
# token_url: https://app.practicepanther.com/OAuth/Token
# authorize_url: https://app.practicepanther.com/OAuth/Authorize

# Redirect URI registered for this application (used by auth-url / authorize)
# redirect_uri: http://localhost:8080/callback

# OAuth client credentials. Prefer environment variables over storing the
# secret here. By default CRM_SYNC_CLIENT_ID and CRM_SYNC_CLIENT_SECRET are read.
# client_id: your-client-id
# client_secret: your-client-secret
# client_id_env: CRM_SYNC_CLIENT_ID
# client_secret_env: CRM_SYNC_CLIENT_SECRET

# Name credentials are stored under in the token store
# Default: practicepanther
# provider: practicepanther

# Refresh access tokens expiring within this many seconds
# Default: 60
# token_refresh_margin: 60


# Storage
# -------

# SQLite database file (relative paths are inside the config directory)
# Default: sync.db
# db_path: sync.db


# API Behavior
# ------------

# Records per page (1 to 100)
# Default: 100
# api_page_size: 100

# Retries for rate limits, server errors and timeouts
# Default: 5
# api_max_retries: 5

# Backoff: first delay and ceiling for any single delay, in seconds
# Default: 0.5 and 30
# api_initial_retry_delay: 0.5
# api_max_retry_delay: 30

# Per-request timeout in seconds
# Default: 30
# api_timeout: 30

# Minimum seconds between requests
# Default: 0.1
# api_min_request_interval: 0.1


# Sync Behavior
# -------------

# Ignore the last successful run and fetch every record
# Default: false
# full: false

# Sync entity types concurrently when syncing all of them
# Default: true
# parallel: true

# Link CRM records to existing local rows without a CRM id by email/name
# Default: true
# secondary_match: true

# Fuzzy name similarity required for such a link (0.0 to 1.0)
# Default: 0.92
# name_match_threshold: 0.92


# Logging Options
# ---------------

# Enable verbose output with detailed logging
# Default: false
# verbose: false

# Directory for log files
# Default: ~/.crm-sync/logs
# log_dir: ~/.crm-sync/logs

# Number of log files of each kind to keep (0 keeps all)
# Default: 10
# log_retention_count: 10


# Daemon Options
# --------------

# Incremental sync interval (e.g. 30s, 15m, 1h)
# Default: 15m
# daemon_interval: 15m

# Full sync interval
# Default: 1d
# daemon_full_sync_interval: 1d

# PID file location
# Default: ~/.crm-sync/daemon.pid
# daemon_pid_file: ~/.crm-sync/daemon.pid
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save the default configuration file to a path.

    Creates parent directories if needed and restricts the file to its owner,
    since it may hold the OAuth client secret.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite an existing file

    Returns:
        Tuple of (success, error message or None)
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)
