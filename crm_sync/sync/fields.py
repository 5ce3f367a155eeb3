"""
Custom-field values as returned by the CRM.

Every entry of a record's ``custom_field_values`` array is parsed into one of
a small set of tagged value types so the mapper can coerce it to a column type
without caring about the wire layout.

Example wire entry::

    {
        "custom_field_ref": {"id": "c14c...", "label": "Rel Value",
                             "value_type": "Currency"},
        "value_boolean": false,
        "contact_ref": null,
        "value_date_time": null,
        "value_number": 212000,
        "value_string": null
    }

Note that ``value_boolean`` is ``false`` on every entry regardless of its
type, so the tag comes from ``value_type`` first and the populated value slot
second.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

# CRM value_type names grouped by the tag they parse to
STRING_TYPES = frozenset(
    {"TextBox", "TextEditor", "TextArea", "DropDownList", "Email", "Url", "Phone"}
)
NUMBER_TYPES = frozenset({"Currency", "Number", "Decimal", "Percentage", "Integer"})
DATE_TYPES = frozenset({"Date", "DateTime"})
BOOL_TYPES = frozenset({"Checkbox", "Boolean", "YesNo"})
REFERENCE_TYPES = frozenset({"Contact", "Matter", "Account"})


class FieldValueError(ValueError):
    """Raised when a custom-field entry cannot be parsed."""

    pass


@dataclass(frozen=True)
class StringValue:
    value: str


@dataclass(frozen=True)
class NumberValue:
    value: float


@dataclass(frozen=True)
class DateValue:
    value: datetime


@dataclass(frozen=True)
class BoolValue:
    value: bool


@dataclass(frozen=True)
class ReferenceValue:
    """A link to another CRM entity, e.g. a settlement agent contact."""

    external_id: Optional[str]
    display_name: Optional[str]


FieldValue = Union[StringValue, NumberValue, DateValue, BoolValue, ReferenceValue]


@dataclass(frozen=True)
class CustomField:
    """One parsed custom-field entry. ``value`` is None when the CRM sent no value."""

    label: str
    value_type: Optional[str]
    value: Optional[FieldValue]


def parse_datetime(value: Any) -> datetime:
    """
    Parse a CRM timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with ``Z`` or an offset, or date only) and
    datetime/date objects. Naive values are taken to be UTC.

    Raises:
        FieldValueError: If the value is not a recognizable timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise FieldValueError(f"Invalid timestamp: {value!r}") from e
    else:
        raise FieldValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_number(raw: Any) -> NumberValue:
    if isinstance(raw, bool):
        raise FieldValueError(f"Invalid number: {raw!r}")
    if isinstance(raw, (int, float)):
        return NumberValue(float(raw))
    if isinstance(raw, str):
        cleaned = raw.replace(",", "").replace("$", "").strip()
        try:
            return NumberValue(float(cleaned))
        except ValueError as e:
            raise FieldValueError(f"Invalid number: {raw!r}") from e
    raise FieldValueError(f"Invalid number: {raw!r}")


def _parse_reference(ref: Any) -> Optional[ReferenceValue]:
    if not ref:
        return None
    if not isinstance(ref, dict):
        raise FieldValueError(f"Invalid reference: {ref!r}")
    ref_id = ref.get("id")
    return ReferenceValue(
        external_id=str(ref_id) if ref_id is not None else None,
        display_name=ref.get("display_name"),
    )


def _infer_value(entry: dict[str, Any]) -> Optional[FieldValue]:
    """Pick a tag from whichever value slot is populated."""
    if entry.get("contact_ref"):
        return _parse_reference(entry["contact_ref"])
    if entry.get("value_string") not in (None, ""):
        return StringValue(str(entry["value_string"]))
    if entry.get("value_number") is not None:
        return _parse_number(entry["value_number"])
    if entry.get("value_date_time"):
        return DateValue(parse_datetime(entry["value_date_time"]))
    # value_boolean defaults to false on every entry, so only true is a signal
    if entry.get("value_boolean") is True:
        return BoolValue(True)
    return None


def parse_value(entry: dict[str, Any]) -> Optional[FieldValue]:
    """
    Parse the value slot of a custom-field entry into a tagged value.

    Args:
        entry: One element of ``custom_field_values``

    Returns:
        The tagged value, or None when the entry carries no value

    Raises:
        FieldValueError: If the entry is malformed or the populated slot
            cannot be parsed for its type
    """
    if not isinstance(entry, dict):
        raise FieldValueError(f"Custom field entry is not an object: {entry!r}")
    ref = entry.get("custom_field_ref") or {}
    if not isinstance(ref, dict):
        raise FieldValueError(f"custom_field_ref is not an object: {ref!r}")
    value_type = ref.get("value_type")

    if value_type in REFERENCE_TYPES:
        return _parse_reference(entry.get("contact_ref"))

    if value_type in STRING_TYPES:
        raw = entry.get("value_string")
        return StringValue(str(raw)) if raw not in (None, "") else None

    if value_type in NUMBER_TYPES:
        raw = entry.get("value_number")
        if raw is None:
            raw = entry.get("value_string")
        return _parse_number(raw) if raw not in (None, "") else None

    if value_type in DATE_TYPES:
        raw = entry.get("value_date_time")
        if raw in (None, ""):
            raw = entry.get("value_string")
        return DateValue(parse_datetime(raw)) if raw not in (None, "") else None

    if value_type in BOOL_TYPES:
        raw = entry.get("value_boolean")
        return BoolValue(bool(raw)) if raw is not None else None

    return _infer_value(entry)


def parse_custom_field(entry: dict[str, Any]) -> CustomField:
    """
    Parse one ``custom_field_values`` entry.

    Raises:
        FieldValueError: If the entry has no label or its value is malformed
    """
    if not isinstance(entry, dict):
        raise FieldValueError(f"Custom field entry is not an object: {entry!r}")

    ref = entry.get("custom_field_ref") or {}
    if not isinstance(ref, dict):
        raise FieldValueError(f"custom_field_ref is not an object: {ref!r}")
    label = ref.get("label")
    if not label:
        raise FieldValueError("Custom field entry has no label")

    return CustomField(
        label=str(label).strip(),
        value_type=ref.get("value_type"),
        value=parse_value(entry),
    )


__all__ = [
    "StringValue",
    "NumberValue",
    "DateValue",
    "BoolValue",
    "ReferenceValue",
    "FieldValue",
    "CustomField",
    "FieldValueError",
    "parse_custom_field",
    "parse_value",
    "parse_datetime",
]
