"""
crm_sync.config - Configuration management module

Contains configuration loading, validation, field mapping overrides
and the default configuration file.
"""

from crm_sync.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
    resolve_client_credentials,
)
from crm_sync.config.mapping_config import (
    DEFAULT_MAPPING_FILE,
    MappingConfig,
    MappingConfigError,
    load_mapping_config,
)

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_MAPPING_FILE",
    "MappingConfig",
    "MappingConfigError",
    "load_mapping_config",
    "resolve_client_credentials",
]
