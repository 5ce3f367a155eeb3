"""Shared fixtures for the crm_sync test suite."""

from typing import Any

import pytest

from crm_sync.storage.db import SyncDatabase


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = SyncDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def custom_field():
    """Factory for ``custom_field_values`` entries in the CRM wire format."""

    def make(label: str, value_type: str | None = None, **slots: Any) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "custom_field_ref": {"id": f"cf-{label}", "label": label},
            "value_boolean": False,
            "contact_ref": None,
            "value_date_time": None,
            "value_number": None,
            "value_string": None,
        }
        if value_type is not None:
            entry["custom_field_ref"]["value_type"] = value_type
        entry.update(slots)
        return entry

    return make


@pytest.fixture
def mapped_db(db):
    """In-memory database with every default mapped column present."""
    from crm_sync.sync.mapper import FieldMapper
    from crm_sync.sync.mapping import EntityType

    mapper = FieldMapper()
    for entity_type in EntityType:
        db.ensure_columns(
            entity_type.table,
            {name: ct.sql_type for name, ct in mapper.columns(entity_type).items()},
        )
    return db
