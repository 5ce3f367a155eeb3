"""CLI package for crm_sync."""

from crm_sync.cli.formatters import (
    format_run_line,
    show_entity_status,
    show_run_details,
    show_run_summary,
    show_token_status,
)
from crm_sync.cli.main import (
    ENTITY_CHOICES,
    cli,
    create_engine,
    create_token_manager,
    get_config_dir,
    open_database,
)
from crm_sync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "ENTITY_CHOICES",
    "cli",
    "create_engine",
    "create_token_manager",
    "format_run_line",
    "get_config_dir",
    "open_database",
    "show_entity_status",
    "show_run_details",
    "show_run_summary",
    "show_token_status",
]
