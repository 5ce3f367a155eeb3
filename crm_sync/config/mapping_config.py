"""
Custom-field mapping configuration.

Lets an installation add, retarget or remove custom-field labels without
code changes. Labels not listed keep their built-in mapping.

Configuration file format (field_mappings.json):

    {
        "version": "1.0",
        "matters": {
            "Escrow Officer": {"column": "escrow_officer", "type": "text"},
            "Rel Value": {"column": "relinquished_value", "type": "number"},
            "Bank": null
        },
        "contacts": {
            "Referral Source": "referral_source"
        }
    }

Notes:
    - A string value is shorthand for a text column
    - null removes a built-in label (its value stays in the raw payload)
    - Column names must be lowercase identifiers and may not reuse a fixed
      or bookkeeping column
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from crm_sync.sync.mapping import (
    CUSTOM_FIELDS,
    DERIVED_COLUMNS,
    FIXED_FIELDS,
    MAPPING_VERSION,
    ColumnMapping,
    ColumnType,
    EntityType,
)
from crm_sync.utils import resolve_config_dir

logger = logging.getLogger(__name__)

# Default mapping file name inside the config directory
DEFAULT_MAPPING_FILE = "field_mappings.json"

_COLUMN_NAME = re.compile(r"^[a-z][a-z0-9_]*$")

_BOOKKEEPING_COLUMNS = frozenset(
    {
        "id",
        "external_id",
        "raw_payload",
        "mapping_version",
        "last_synced_at",
        "created_at",
        "updated_at",
    }
)


class MappingConfigError(Exception):
    """Raised when mapping configuration loading or validation fails."""

    pass


def _reserved_columns(entity_type: EntityType) -> set[str]:
    reserved = set(_BOOKKEEPING_COLUMNS)
    reserved.update(f.column for f in FIXED_FIELDS[entity_type])
    reserved.update(DERIVED_COLUMNS[entity_type])
    return reserved


def _parse_entry(
    entity_type: EntityType, label: str, value: Any
) -> Optional[ColumnMapping]:
    if value is None:
        return None

    if isinstance(value, str):
        column, type_name = value, ColumnType.TEXT.value
    elif isinstance(value, dict):
        column = value.get("column")
        type_name = value.get("type", ColumnType.TEXT.value)
    else:
        raise MappingConfigError(
            f"{entity_type.value}.{label}: expected a column name, an object "
            f"or null, got {type(value).__name__}"
        )

    if not isinstance(column, str) or not _COLUMN_NAME.match(column):
        raise MappingConfigError(
            f"{entity_type.value}.{label}: invalid column name {column!r}"
        )
    if column in _reserved_columns(entity_type):
        raise MappingConfigError(
            f"{entity_type.value}.{label}: column '{column}' is reserved"
        )

    try:
        column_type = ColumnType(type_name)
    except ValueError:
        valid = ", ".join(t.value for t in ColumnType)
        raise MappingConfigError(
            f"{entity_type.value}.{label}: invalid type {type_name!r} "
            f"(expected one of: {valid})"
        ) from None

    return ColumnMapping(column=column, column_type=column_type)


@dataclass
class MappingConfig:
    """
    Overrides for the custom-field label tables.

    Attributes:
        version: Mapping file version (defaults to MAPPING_VERSION)
        overrides: Per entity type, label to ColumnMapping or None (removal)

    Usage:
        config = MappingConfig.load_from_file(path)
        mapper = FieldMapper(custom_fields=config.custom_fields())
    """

    version: str = MAPPING_VERSION
    overrides: dict[EntityType, dict[str, Optional[ColumnMapping]]] = field(
        default_factory=dict
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MappingConfig:
        """
        Create a MappingConfig from a dictionary.

        Raises:
            MappingConfigError: If the structure is invalid
        """
        if not isinstance(data, dict):
            raise MappingConfigError(
                f"Mapping configuration must be a dictionary, got {type(data).__name__}"
            )

        version = data.get("version", MAPPING_VERSION)
        if not isinstance(version, str):
            raise MappingConfigError(
                f"version must be a string, got {type(version).__name__}"
            )

        overrides: dict[EntityType, dict[str, Optional[ColumnMapping]]] = {}
        for key, entries in data.items():
            if key == "version":
                continue
            try:
                entity_type = EntityType.parse(key)
            except ValueError as e:
                raise MappingConfigError(str(e)) from e

            if not isinstance(entries, dict):
                raise MappingConfigError(
                    f"{key} must map labels to columns, got {type(entries).__name__}"
                )

            table: dict[str, Optional[ColumnMapping]] = {}
            for label, value in entries.items():
                table[str(label).strip()] = _parse_entry(entity_type, label, value)
            overrides[entity_type] = table

        return cls(version=version, overrides=overrides)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the file format."""
        result: dict[str, Any] = {"version": self.version}
        for entity_type, table in self.overrides.items():
            result[entity_type.value] = {
                label: (
                    None
                    if mapping is None
                    else {"column": mapping.column, "type": mapping.column_type.value}
                )
                for label, mapping in table.items()
            }
        return result

    def custom_fields(self) -> dict[EntityType, dict[str, ColumnMapping]]:
        """
        Built-in label tables with the overrides applied.

        Raises:
            MappingConfigError: If two labels end up on one column with
                different types
        """
        tables: dict[EntityType, dict[str, ColumnMapping]] = {}
        for entity_type in EntityType:
            table = dict(CUSTOM_FIELDS[entity_type])
            for label, mapping in self.overrides.get(entity_type, {}).items():
                if mapping is None:
                    table.pop(label, None)
                else:
                    table[label] = mapping

            types: dict[str, ColumnType] = {}
            for label, mapping in table.items():
                previous = types.setdefault(mapping.column, mapping.column_type)
                if previous is not mapping.column_type:
                    raise MappingConfigError(
                        f"{entity_type.value}: column '{mapping.column}' is mapped "
                        f"with conflicting types"
                    )
            tables[entity_type] = table
        return tables

    @classmethod
    def load_from_file(cls, path: Path | str) -> MappingConfig:
        """
        Load mapping configuration from a JSON file.

        Returns the default (empty) configuration if the file doesn't exist.

        Raises:
            MappingConfigError: If the file exists but is invalid
        """
        path = Path(path).expanduser().resolve()

        if not path.exists():
            logger.debug(f"Mapping file not found: {path}, using built-in mappings")
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise MappingConfigError(
                f"Failed to parse mapping JSON at {path}: {e}"
            ) from e
        except OSError as e:
            raise MappingConfigError(f"Failed to read mapping file: {e}") from e

        logger.debug(f"Loaded field mappings from {path}")
        return cls.from_dict(data)

    def save_to_file(self, path: Path | str) -> None:
        """
        Save the mapping configuration as JSON.

        Raises:
            MappingConfigError: If the file cannot be written
        """
        path = Path(path).expanduser().resolve()
        try:
            path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.write("\n")
        except OSError as e:
            raise MappingConfigError(f"Failed to write mapping file: {e}") from e


def load_mapping_config(config_dir: Path | str | None = None) -> MappingConfig:
    """
    Load field_mappings.json from a config directory.

    Resolution order for the directory: explicit argument,
    CRM_SYNC_CONFIG_DIR, then ~/.crm-sync.
    """
    resolved_dir = resolve_config_dir(config_dir)
    return MappingConfig.load_from_file(resolved_dir / DEFAULT_MAPPING_FILE)
