"""
Field mapping from CRM records to local rows.

A CRM record is mapped in three independent steps:

1. project_fixed: fixed attributes (names, status, dates, references) are
   read through the entity's FixedField table. These columns always take the
   CRM's value.
2. project_custom: ``custom_field_values`` entries are parsed into tagged
   values, looked up by label and coerced to the column type. They only fill
   columns that are still empty locally (first write wins).
3. retain: the whole record is serialized to JSON for the ``raw_payload``
   column, so labels without a column are never lost.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from crm_sync.sync.fields import (
    BoolValue,
    DateValue,
    FieldValue,
    FieldValueError,
    NumberValue,
    ReferenceValue,
    StringValue,
    parse_datetime,
    parse_value,
)
from crm_sync.sync.mapping import (
    CUSTOM_FIELDS,
    EXCHANGE_PERIOD,
    FIXED_FIELDS,
    IDENTIFICATION_PERIOD,
    MAPPING_VERSION,
    ColumnMapping,
    ColumnType,
    EntityType,
    column_types,
    first_name_of,
    join_list,
    last_name_of,
)

logger = logging.getLogger(__name__)

_TRUE_STRINGS = frozenset({"true", "yes", "y", "1", "on"})
_FALSE_STRINGS = frozenset({"false", "no", "n", "0", "off"})


class MappingError(Exception):
    """Raised when a CRM record cannot be mapped to a local row."""

    pass


@dataclass
class MappedRecord:
    """
    A CRM record projected onto local columns.

    Attributes:
        entity_type: Entity type the record belongs to
        external_id: CRM id of the record
        fixed: Fixed columns, always written
        custom: Custom-field columns to fill (already filtered by first-write-wins)
        raw_payload: The CRM record serialized as JSON
        unmapped_labels: Custom-field labels that have no column
        preserved_labels: Mapped labels not written because the local
            column already had a value
        mapping_version: Version of the mapping tables used
    """

    entity_type: EntityType
    external_id: str
    fixed: dict[str, Any] = field(default_factory=dict)
    custom: dict[str, Any] = field(default_factory=dict)
    raw_payload: str = "{}"
    unmapped_labels: list[str] = field(default_factory=list)
    preserved_labels: list[str] = field(default_factory=list)
    mapping_version: str = MAPPING_VERSION

    def to_record(self, synced_at: Optional[str] = None) -> dict[str, Any]:
        """Build the column dictionary handed to the store's upsert()."""
        record: dict[str, Any] = {"external_id": self.external_id}
        record.update(self.fixed)
        record.update(self.custom)
        record["raw_payload"] = self.raw_payload
        record["mapping_version"] = self.mapping_version
        if synced_at is not None:
            record["last_synced_at"] = synced_at
        return record


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def resolve_path(record: Any, path: str) -> Any:
    """
    Read a dotted path from a nested record.

    A segment ending in ``[]`` collects the rest of the path across a list:
    ``assigned_to_users[].display_name`` returns a list of names.
    Missing keys resolve to None.
    """
    current = record
    segments = path.split(".")
    for index, segment in enumerate(segments):
        if current is None:
            return None
        if segment.endswith("[]"):
            items = current.get(segment[:-2]) if isinstance(current, dict) else None
            if not isinstance(items, list):
                return None
            rest = ".".join(segments[index + 1 :])
            if not rest:
                return items
            return [v for v in (resolve_path(i, rest) for i in items) if v is not None]
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
    return current


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError as e:
            raise FieldValueError(f"Invalid date: {value!r}") from e
    raise FieldValueError(f"Invalid date: {value!r}")


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def coerce(value: Any, column_type: ColumnType) -> Any:
    """
    Coerce a plain value to a column type.

    Empty values become None. Dates are stored as ISO dates, timestamps as
    ISO UTC timestamps and booleans as 0/1.

    Raises:
        FieldValueError: If the value cannot represent the column type
    """
    if _is_empty(value):
        return None

    if column_type is ColumnType.TEXT:
        if isinstance(value, dict):
            return value.get("display_name") or value.get("name")
        if isinstance(value, (list, tuple)):
            return join_list(value)
        if isinstance(value, float):
            return _format_number(value)
        return str(value).strip()

    if column_type is ColumnType.NUMBER:
        if isinstance(value, bool):
            raise FieldValueError(f"Invalid number: {value!r}")
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return float(str(value).replace(",", "").replace("$", "").strip())
        except ValueError as e:
            raise FieldValueError(f"Invalid number: {value!r}") from e

    if column_type is ColumnType.DATE:
        return _to_date(value).isoformat()

    if column_type is ColumnType.DATETIME:
        return parse_datetime(value).isoformat()

    if column_type is ColumnType.BOOL:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return int(bool(value))
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return 1
        if text in _FALSE_STRINGS:
            return 0
        raise FieldValueError(f"Invalid boolean: {value!r}")

    raise FieldValueError(f"Unsupported column type: {column_type}")


def coerce_field_value(value: FieldValue, column_type: ColumnType) -> Any:
    """Coerce a tagged custom-field value to a column type."""
    if isinstance(value, ReferenceValue):
        return coerce(value.display_name, column_type)
    if isinstance(value, DateValue):
        if column_type is ColumnType.TEXT:
            return value.value.date().isoformat()
        return coerce(value.value, column_type)
    if isinstance(value, BoolValue):
        if column_type is ColumnType.TEXT:
            return "Yes" if value.value else "No"
        return coerce(value.value, column_type)
    if isinstance(value, (NumberValue, StringValue)):
        return coerce(value.value, column_type)
    raise FieldValueError(f"Unsupported field value: {value!r}")


class FieldMapper:
    """
    Maps CRM records to local column dictionaries.

    Usage:
        mapper = FieldMapper()
        mapped = mapper.map_entity(EntityType.MATTERS, raw, existing=row)
        db.upsert("exchanges", "external_id", mapped.to_record())

    Attributes:
        custom_fields: Label table per entity type
        version: Mapping version stamped on written rows
    """

    def __init__(
        self,
        custom_fields: Optional[dict[EntityType, dict[str, ColumnMapping]]] = None,
        version: str = MAPPING_VERSION,
    ):
        """
        Initialize the mapper.

        Args:
            custom_fields: Label tables per entity type. Entity types not
                present use the default tables.
            version: Version string stamped on mapped records
        """
        self.custom_fields = {et: dict(CUSTOM_FIELDS[et]) for et in EntityType}
        if custom_fields:
            for entity_type, table in custom_fields.items():
                self.custom_fields[entity_type] = dict(table)
        self.version = version

    def columns(self, entity_type: EntityType) -> dict[str, ColumnType]:
        """All mapped columns of an entity type with their types."""
        return column_types(entity_type, self.custom_fields[entity_type])

    # =========================================================================
    # Step 1: fixed fields
    # =========================================================================

    def project_fixed(self, entity_type: EntityType, raw: dict[str, Any]) -> dict[str, Any]:
        """
        Project the fixed attributes of a record.

        Returns:
            Column dictionary including ``external_id``

        Raises:
            MappingError: If the record has no id or a field cannot be coerced
        """
        if not isinstance(raw, dict):
            raise MappingError(f"Record is not an object: {type(raw).__name__}")

        external_id = raw.get("id")
        if _is_empty(external_id):
            raise MappingError("Record has no id")

        projected: dict[str, Any] = {"external_id": str(external_id)}
        for fixed in FIXED_FIELDS[entity_type]:
            value = resolve_path(raw, fixed.path)
            if fixed.transform is not None:
                value = fixed.transform(value)
            try:
                projected[fixed.column] = coerce(value, fixed.column_type)
            except FieldValueError as e:
                raise MappingError(
                    f"Record {external_id}: field '{fixed.path}': {e}"
                ) from e

        if entity_type is EntityType.CONTACTS:
            self._fill_contact_names(projected)
        elif entity_type is EntityType.MATTERS:
            self._fill_matter_derived(projected)

        return projected

    @staticmethod
    def _fill_contact_names(projected: dict[str, Any]) -> None:
        display_name = projected.get("display_name")
        if display_name:
            if not projected.get("first_name"):
                projected["first_name"] = first_name_of(display_name)
            if not projected.get("last_name"):
                projected["last_name"] = last_name_of(display_name)
        else:
            parts = [projected.get("first_name"), projected.get("last_name")]
            joined = " ".join(p for p in parts if p)
            projected["display_name"] = joined or None

    @staticmethod
    def _fill_matter_derived(projected: dict[str, Any]) -> None:
        if not projected.get("name"):
            projected["name"] = projected.get("matter_number")

        opened = projected.get("opened_date")
        if opened:
            opened_date = date.fromisoformat(opened)
            projected["identification_deadline"] = (
                opened_date + IDENTIFICATION_PERIOD
            ).isoformat()
            projected["completion_deadline"] = (opened_date + EXCHANGE_PERIOD).isoformat()
        else:
            projected["identification_deadline"] = None
            projected["completion_deadline"] = None

    # =========================================================================
    # Step 2: custom fields
    # =========================================================================

    def project_custom(
        self,
        entity_type: EntityType,
        raw: dict[str, Any],
        existing: Optional[dict[str, Any]] = None,
    ) -> tuple[dict[str, Any], list[str], list[str]]:
        """
        Project custom-field values onto their columns.

        Only columns that are empty in ``existing`` are written. When a label
        occurs more than once, its first occurrence is used.

        Args:
            entity_type: Entity type of the record
            raw: CRM record
            existing: Current local row, if any

        Returns:
            Tuple of (columns to write, unmapped labels, preserved labels)

        Raises:
            MappingError: If a mapped value cannot be parsed or coerced
        """
        entries = raw.get("custom_field_values") or []
        if not isinstance(entries, list):
            raise MappingError("custom_field_values is not a list")

        table = self.custom_fields[entity_type]
        columns: dict[str, Any] = {}
        unmapped: list[str] = []
        preserved: list[str] = []
        seen: set[str] = set()

        for position, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise MappingError(
                    f"Record {raw.get('id')}: custom field entry {position} is not an object"
                )
            ref = entry.get("custom_field_ref") or {}
            if not isinstance(ref, dict):
                raise MappingError(
                    f"Record {raw.get('id')}: custom_field_ref of entry {position} "
                    "is not an object"
                )
            label = str(ref.get("label") or "").strip()
            if not label or label in seen:
                continue
            seen.add(label)

            mapping = table.get(label)
            if mapping is None:
                unmapped.append(label)
                continue

            try:
                value = parse_value(entry)
                if value is None:
                    continue
                coerced = coerce_field_value(value, mapping.column_type)
            except FieldValueError as e:
                raise MappingError(
                    f"Record {raw.get('id')}: custom field '{label}': {e}"
                ) from e

            if coerced is None or mapping.column in columns:
                continue

            if existing is not None and not _is_empty(existing.get(mapping.column)):
                preserved.append(label)
                continue

            columns[mapping.column] = coerced

        return columns, unmapped, preserved

    # =========================================================================
    # Step 3: retention
    # =========================================================================

    @staticmethod
    def retain(raw: dict[str, Any]) -> str:
        """Serialize the whole CRM record for the raw_payload column."""
        try:
            return json.dumps(raw, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            raise MappingError(f"Record cannot be serialized: {e}") from e

    def map_entity(
        self,
        entity_type: EntityType,
        raw: dict[str, Any],
        existing: Optional[dict[str, Any]] = None,
    ) -> MappedRecord:
        """
        Map a CRM record through all three steps.

        Args:
            entity_type: Entity type of the record
            raw: CRM record
            existing: Current local row, if any (drives first-write-wins)

        Raises:
            MappingError: If the record cannot be mapped
        """
        fixed = self.project_fixed(entity_type, raw)
        external_id = fixed.pop("external_id")
        custom, unmapped, preserved = self.project_custom(entity_type, raw, existing)

        if unmapped:
            logger.debug(
                f"{entity_type.value} {external_id}: unmapped labels kept in "
                f"raw payload: {', '.join(unmapped)}"
            )

        return MappedRecord(
            entity_type=entity_type,
            external_id=external_id,
            fixed=fixed,
            custom=custom,
            raw_payload=self.retain(raw),
            unmapped_labels=unmapped,
            preserved_labels=preserved,
            mapping_version=self.version,
        )
