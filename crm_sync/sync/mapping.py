"""
Static mapping tables from CRM records to local columns.

Two kinds of mappings are defined per entity type:

- Fixed fields: a source path inside the CRM record (``account_ref.display_name``)
  projected onto a column, with a column type and an optional transform.
- Custom-field columns: a CRM custom-field label (``"Rel Value"``) mapped to a
  column and a column type.

The tables are versioned with MAPPING_VERSION. Custom-field tables can be
extended or overridden at runtime with a mapping file (see
crm_sync.config.mapping_config).
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

# Bumped whenever a default table changes shape
MAPPING_VERSION = "1.0"


class EntityType(Enum):
    """CRM entity types synchronized by the engine."""

    CONTACTS = "contacts"
    MATTERS = "matters"
    TASKS = "tasks"

    @property
    def table(self) -> str:
        """Local table the entity type is stored in."""
        return _TABLES[self]

    @property
    def endpoint(self) -> str:
        """CRM collection path, relative to the API base URL."""
        return self.value

    @classmethod
    def parse(cls, value: "str | EntityType") -> "EntityType":
        """
        Look up an entity type by name.

        Accepts the local table name ``exchanges`` as an alias for matters.

        Raises:
            ValueError: If the name is unknown
        """
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name == "exchanges":
            return cls.MATTERS
        try:
            return cls(name)
        except ValueError:
            valid = ", ".join(e.value for e in cls)
            raise ValueError(
                f"Unknown entity type '{value}'. Expected one of: {valid}"
            ) from None


_TABLES = {
    EntityType.CONTACTS: "contacts",
    EntityType.MATTERS: "exchanges",
    EntityType.TASKS: "tasks",
}


class ColumnType(Enum):
    """Local column types. Values are the SQLite declared types."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    DATETIME = "datetime"
    BOOL = "bool"

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES[self]


_SQL_TYPES = {
    ColumnType.TEXT: "TEXT",
    ColumnType.NUMBER: "REAL",
    ColumnType.DATE: "TEXT",
    ColumnType.DATETIME: "TEXT",
    ColumnType.BOOL: "INTEGER",
}


@dataclass(frozen=True)
class FixedField:
    """
    A fixed CRM attribute projected onto a local column.

    Attributes:
        path: Dotted source path. A ``[]`` suffix on a segment collects that
              key across a list (``assigned_to_users[].display_name``).
        column: Local column name
        column_type: Type the value is coerced to
        transform: Optional callable applied to the raw value before coercion
    """

    path: str
    column: str
    column_type: ColumnType = ColumnType.TEXT
    transform: Optional[Callable[[Any], Any]] = None


@dataclass(frozen=True)
class ColumnMapping:
    """Target of a custom-field label."""

    column: str
    column_type: ColumnType = ColumnType.TEXT


# =============================================================================
# Value maps
# =============================================================================

MATTER_STATUS_MAP = {
    "open": "PENDING",
    "pending": "PENDING",
    "active": "45D",
    "in_progress": "180D",
    "completed": "COMPLETED",
    "closed": "COMPLETED",
    "terminated": "TERMINATED",
    "cancelled": "TERMINATED",
}

TASK_STATUS_MAP = {
    "pending": "PENDING",
    "not_started": "PENDING",
    "in_progress": "IN_PROGRESS",
    "completed": "COMPLETED",
    "cancelled": "CANCELLED",
    "on_hold": "ON_HOLD",
}

TASK_PRIORITY_MAP = {
    "low": "LOW",
    "normal": "MEDIUM",
    "medium": "MEDIUM",
    "high": "HIGH",
    "urgent": "URGENT",
}

# Statutory 1031 windows, counted from the matter open date
IDENTIFICATION_PERIOD = timedelta(days=45)
EXCHANGE_PERIOD = timedelta(days=180)


def _status_key(value: Any) -> str:
    return str(value).strip().lower().replace(" ", "_").replace("-", "_")


def map_matter_status(value: Any) -> Optional[str]:
    if value in (None, ""):
        return "PENDING"
    return MATTER_STATUS_MAP.get(_status_key(value), "PENDING")


def map_task_status(value: Any) -> Optional[str]:
    if value in (None, ""):
        return "PENDING"
    return TASK_STATUS_MAP.get(_status_key(value), "PENDING")


def map_task_priority(value: Any) -> Optional[str]:
    if value in (None, ""):
        return "MEDIUM"
    return TASK_PRIORITY_MAP.get(_status_key(value), "MEDIUM")


def join_list(value: Any) -> Optional[str]:
    """Join a list of names or tags into a comma-separated string."""
    if value in (None, ""):
        return None
    if isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value if v not in (None, "")]
        return ", ".join(items) if items else None
    return str(value)


def first_name_of(display_name: Any) -> Optional[str]:
    if not display_name:
        return None
    parts = str(display_name).split()
    return parts[0] if parts else None


def last_name_of(display_name: Any) -> Optional[str]:
    if not display_name:
        return None
    parts = str(display_name).split()
    return " ".join(parts[1:]) if len(parts) > 1 else None


# =============================================================================
# Fixed field tables
# =============================================================================

CONTACT_FIXED_FIELDS: tuple[FixedField, ...] = (
    FixedField("display_name", "display_name"),
    FixedField("first_name", "first_name"),
    FixedField("last_name", "last_name"),
    FixedField("email", "email"),
    FixedField("phone_mobile", "phone_mobile"),
    FixedField("phone_home", "phone_home"),
    FixedField("phone_work", "phone_work"),
    FixedField("account_ref.id", "account_external_id"),
    FixedField("account_ref.display_name", "account_name"),
    FixedField("is_primary_contact", "is_primary_contact", ColumnType.BOOL),
    FixedField("created_at", "crm_created_at", ColumnType.DATETIME),
    FixedField("updated_at", "crm_updated_at", ColumnType.DATETIME),
)

MATTER_FIXED_FIELDS: tuple[FixedField, ...] = (
    FixedField("display_name", "name"),
    FixedField("number", "matter_number"),
    FixedField("status", "status", transform=map_matter_status),
    FixedField("practice_area", "practice_area"),
    FixedField("account_ref.id", "account_external_id"),
    FixedField("account_ref.display_name", "client_name"),
    FixedField("opened_date", "opened_date", ColumnType.DATE),
    FixedField("closed_date", "closed_date", ColumnType.DATE),
    FixedField("rate", "rate"),
    FixedField("tags", "tags", transform=join_list),
    FixedField("assigned_to_users[].display_name", "assigned_to", transform=join_list),
    FixedField("created_at", "crm_created_at", ColumnType.DATETIME),
    FixedField("updated_at", "crm_updated_at", ColumnType.DATETIME),
)

TASK_FIXED_FIELDS: tuple[FixedField, ...] = (
    FixedField("subject", "title"),
    FixedField("notes", "description"),
    FixedField("status", "status", transform=map_task_status),
    FixedField("priority", "priority", transform=map_task_priority),
    FixedField("due_date", "due_date", ColumnType.DATE),
    FixedField("matter_ref.id", "matter_external_id"),
    FixedField("matter_ref.display_name", "matter_name"),
    FixedField("assigned_to_users[].display_name", "assigned_to", transform=join_list),
    FixedField("tags", "tags", transform=join_list),
    FixedField("created_at", "crm_created_at", ColumnType.DATETIME),
    FixedField("updated_at", "crm_updated_at", ColumnType.DATETIME),
)

FIXED_FIELDS: dict[EntityType, tuple[FixedField, ...]] = {
    EntityType.CONTACTS: CONTACT_FIXED_FIELDS,
    EntityType.MATTERS: MATTER_FIXED_FIELDS,
    EntityType.TASKS: TASK_FIXED_FIELDS,
}

# =============================================================================
# Custom field tables (label -> column)
# =============================================================================

_T = ColumnType.TEXT
_N = ColumnType.NUMBER
_D = ColumnType.DATE
_B = ColumnType.BOOL

CONTACT_CUSTOM_FIELDS: dict[str, ColumnMapping] = {
    "Referral Source": ColumnMapping("referral_source", _T),
    "Referral Source Email": ColumnMapping("referral_source_email", _T),
}

MATTER_CUSTOM_FIELDS: dict[str, ColumnMapping] = {
    "Type of Exchange": ColumnMapping("exchange_type", _T),
    "Rel Value": ColumnMapping("relinquished_value", _N),
    "Proceeds": ColumnMapping("proceeds", _N),
    "Identified?": ColumnMapping("identified", _B),
    "Property Type": ColumnMapping("property_type", _T),
    "Internal Credit To": ColumnMapping("internal_credit_to", _T),
    "Settlement Agent": ColumnMapping("settlement_agent", _T),
    "Client Vesting": ColumnMapping("client_vesting", _T),
    "Bank": ColumnMapping("bank", _T),
    "Day 45": ColumnMapping("day_45", _D),
    "Day 180": ColumnMapping("day_180", _D),
    "Close of Escrow Date": ColumnMapping("close_of_escrow_date", _D),
    "Reason for Cancellation": ColumnMapping("cancellation_reason", _T),
    # Relinquished property
    "Rel Property Address": ColumnMapping("rel_property_address", _T),
    "Rel Property City": ColumnMapping("rel_property_city", _T),
    "Rel Property State": ColumnMapping("rel_property_state", _T),
    "Rel Property Zip": ColumnMapping("rel_property_zip", _T),
    "Rel APN": ColumnMapping("rel_apn", _T),
    "Rel Escrow Number": ColumnMapping("rel_escrow_number", _T),
    "Rel Contract Date": ColumnMapping("rel_contract_date", _D),
    "Rel Purchase Contract Title": ColumnMapping("rel_purchase_contract_title", _T),
    "Buyer 1 Name": ColumnMapping("buyer_1_name", _T),
    "Buyer 2 Name": ColumnMapping("buyer_2_name", _T),
    # Replacement property
    "Rep 1 Value": ColumnMapping("rep_1_value", _N),
    "Rep 1 Property Address": ColumnMapping("rep_1_property_address", _T),
    "Rep 1 City": ColumnMapping("rep_1_city", _T),
    "Rep 1 State": ColumnMapping("rep_1_state", _T),
    "Rep 1 Zip": ColumnMapping("rep_1_zip", _T),
    "Rep 1 APN": ColumnMapping("rep_1_apn", _T),
    "Rep 1 Escrow Number": ColumnMapping("rep_1_escrow_number", _T),
    "Rep 1 Purchase Contract Date": ColumnMapping("rep_1_purchase_contract_date", _D),
    "Rep 1 Purchase Contract Title": ColumnMapping(
        "rep_1_purchase_contract_title", _T
    ),
    "Rep 1 Seller 1 Name": ColumnMapping("rep_1_seller_1_name", _T),
    "Rep 1 Seller 2 Name": ColumnMapping("rep_1_seller_2_name", _T),
}

TASK_CUSTOM_FIELDS: dict[str, ColumnMapping] = {}

CUSTOM_FIELDS: dict[EntityType, dict[str, ColumnMapping]] = {
    EntityType.CONTACTS: CONTACT_CUSTOM_FIELDS,
    EntityType.MATTERS: MATTER_CUSTOM_FIELDS,
    EntityType.TASKS: TASK_CUSTOM_FIELDS,
}

# Columns computed by the mapper rather than read from the record
DERIVED_COLUMNS: dict[EntityType, dict[str, ColumnType]] = {
    EntityType.CONTACTS: {},
    EntityType.MATTERS: {
        "identification_deadline": ColumnType.DATE,
        "completion_deadline": ColumnType.DATE,
    },
    EntityType.TASKS: {},
}


def column_types(
    entity_type: EntityType,
    custom_fields: Optional[dict[str, ColumnMapping]] = None,
) -> dict[str, ColumnType]:
    """
    All mapped columns of an entity type with their types.

    Args:
        entity_type: Entity type to describe
        custom_fields: Label table to use instead of the default one

    Returns:
        Dictionary of column name to ColumnType
    """
    columns: dict[str, ColumnType] = {}
    for fixed in FIXED_FIELDS[entity_type]:
        columns[fixed.column] = fixed.column_type
    columns.update(DERIVED_COLUMNS[entity_type])
    table = CUSTOM_FIELDS[entity_type] if custom_fields is None else custom_fields
    for mapping in table.values():
        columns.setdefault(mapping.column, mapping.column_type)
    return columns


__all__ = [
    "MAPPING_VERSION",
    "EntityType",
    "ColumnType",
    "FixedField",
    "ColumnMapping",
    "FIXED_FIELDS",
    "CUSTOM_FIELDS",
    "DERIVED_COLUMNS",
    "MATTER_STATUS_MAP",
    "TASK_STATUS_MAP",
    "TASK_PRIORITY_MAP",
    "IDENTIFICATION_PERIOD",
    "EXCHANGE_PERIOD",
    "map_matter_status",
    "map_task_status",
    "map_task_priority",
    "join_list",
    "first_name_of",
    "last_name_of",
    "column_types",
]
