"""
Tests for custom-field mapping overrides.
"""

import json
import os
from unittest.mock import patch

import pytest

from crm_sync.config.mapping_config import (
    DEFAULT_MAPPING_FILE,
    MappingConfig,
    MappingConfigError,
    load_mapping_config,
)
from crm_sync.sync.mapper import FieldMapper
from crm_sync.sync.mapping import (
    CUSTOM_FIELDS,
    MAPPING_VERSION,
    ColumnMapping,
    ColumnType,
    EntityType,
)


class TestFromDict:
    """Tests for MappingConfig.from_dict."""

    def test_empty(self):
        config = MappingConfig.from_dict({})
        assert config.version == MAPPING_VERSION
        assert config.overrides == {}

    def test_entries(self):
        config = MappingConfig.from_dict(
            {
                "version": "2.0",
                "matters": {
                    "Escrow Officer": {"column": "escrow_officer", "type": "text"},
                    "Rel Value": {"column": "relinquished_value", "type": "number"},
                    "Bank": None,
                },
                "contacts": {" Referral Source ": "referral_source"},
            }
        )

        assert config.version == "2.0"
        matters = config.overrides[EntityType.MATTERS]
        assert matters["Escrow Officer"] == ColumnMapping("escrow_officer", ColumnType.TEXT)
        assert matters["Rel Value"].column_type is ColumnType.NUMBER
        assert matters["Bank"] is None
        assert config.overrides[EntityType.CONTACTS]["Referral Source"] == ColumnMapping(
            "referral_source"
        )

    def test_exchanges_alias(self):
        config = MappingConfig.from_dict({"exchanges": {"Escrow Officer": "escrow_officer"}})
        assert EntityType.MATTERS in config.overrides

    @pytest.mark.parametrize(
        "data, message",
        [
            (["not", "a", "dict"], "must be a dictionary"),
            ({"version": 2}, "version must be a string"),
            ({"invoices": {}}, "Unknown entity type"),
            ({"matters": ["Bank"]}, "must map labels"),
            ({"matters": {"Bank": 5}}, "expected a column name"),
            ({"matters": {"Bank": "Bad Column"}}, "invalid column name"),
            ({"matters": {"Bank": "name"}}, "reserved"),
            ({"matters": {"Bank": "raw_payload"}}, "reserved"),
            ({"matters": {"Bank": "identification_deadline"}}, "reserved"),
            ({"matters": {"Bank": {"column": "bank", "type": "blob"}}}, "invalid type"),
        ],
    )
    def test_invalid(self, data, message):
        with pytest.raises(MappingConfigError, match=message):
            MappingConfig.from_dict(data)


class TestCustomFields:
    """Tests for applying overrides to the built-in tables."""

    def test_no_overrides_is_builtin(self):
        tables = MappingConfig().custom_fields()
        assert tables[EntityType.MATTERS] == CUSTOM_FIELDS[EntityType.MATTERS]

    def test_add_retarget_remove(self):
        config = MappingConfig.from_dict(
            {
                "matters": {
                    "Escrow Officer": "escrow_officer",
                    "Bank": {"column": "bank_name", "type": "text"},
                    "Proceeds": None,
                }
            }
        )
        table = config.custom_fields()[EntityType.MATTERS]

        assert table["Escrow Officer"].column == "escrow_officer"
        assert table["Bank"].column == "bank_name"
        assert "Proceeds" not in table
        assert table["Day 45"] == CUSTOM_FIELDS[EntityType.MATTERS]["Day 45"]

    def test_builtin_tables_are_not_modified(self):
        MappingConfig.from_dict({"matters": {"Bank": None}}).custom_fields()
        assert "Bank" in CUSTOM_FIELDS[EntityType.MATTERS]

    def test_conflicting_column_types(self):
        config = MappingConfig.from_dict(
            {"matters": {"Proceeds Text": {"column": "proceeds", "type": "text"}}}
        )
        with pytest.raises(MappingConfigError, match="conflicting types"):
            config.custom_fields()

    def test_mapper_uses_overrides(self, custom_field):
        config = MappingConfig.from_dict({"matters": {"Escrow Officer": "escrow_officer"}})
        mapper = FieldMapper(custom_fields=config.custom_fields(), version=config.version)
        raw = {
            "id": "m1",
            "custom_field_values": [custom_field("Escrow Officer", "TextBox", value_string="Kim")],
        }

        mapped = mapper.map_entity(EntityType.MATTERS, raw)

        assert mapped.custom == {"escrow_officer": "Kim"}
        assert "escrow_officer" in mapper.columns(EntityType.MATTERS)


class TestFiles:
    """Tests for loading and saving mapping files."""

    def test_missing_file_is_default(self, tmp_path):
        config = MappingConfig.load_from_file(tmp_path / "missing.json")
        assert config.overrides == {}

    def test_save_and_load(self, tmp_path):
        config = MappingConfig.from_dict(
            {"version": "1.1", "matters": {"Escrow Officer": "escrow_officer", "Bank": None}}
        )
        path = tmp_path / "sub" / DEFAULT_MAPPING_FILE
        config.save_to_file(path)

        data = json.loads(path.read_text())
        assert data == {
            "version": "1.1",
            "matters": {
                "Escrow Officer": {"column": "escrow_officer", "type": "text"},
                "Bank": None,
            },
        }
        assert MappingConfig.load_from_file(path) == config

    def test_invalid_json(self, tmp_path):
        path = tmp_path / DEFAULT_MAPPING_FILE
        path.write_text("{not json")
        with pytest.raises(MappingConfigError, match="Failed to parse"):
            MappingConfig.load_from_file(path)

    def test_load_mapping_config_from_dir(self, tmp_path):
        (tmp_path / DEFAULT_MAPPING_FILE).write_text(
            json.dumps({"contacts": {"Spouse": "spouse_name"}})
        )
        config = load_mapping_config(tmp_path)
        assert config.overrides[EntityType.CONTACTS]["Spouse"].column == "spouse_name"

    def test_load_mapping_config_from_env(self, tmp_path):
        (tmp_path / DEFAULT_MAPPING_FILE).write_text(json.dumps({"version": "9"}))
        with patch.dict(os.environ, {"CRM_SYNC_CONFIG_DIR": str(tmp_path)}):
            assert load_mapping_config().version == "9"
