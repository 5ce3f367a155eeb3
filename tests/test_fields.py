"""
Tests for custom-field value parsing.

Tests the tagged value types produced from CRM custom_field_values entries.
"""

from datetime import date, datetime, timezone

import pytest

from crm_sync.sync.fields import (
    BoolValue,
    CustomField,
    DateValue,
    FieldValueError,
    NumberValue,
    ReferenceValue,
    StringValue,
    parse_custom_field,
    parse_datetime,
    parse_value,
)


class TestParseDatetime:
    """Tests for parse_datetime."""

    def test_zulu_suffix(self):
        """Test a Z-suffixed timestamp is parsed as UTC."""
        result = parse_datetime("2026-03-01T10:30:00Z")
        assert result == datetime(2026, 3, 1, 10, 30, tzinfo=timezone.utc)

    def test_offset_is_converted_to_utc(self):
        """Test an offset timestamp is normalized to UTC."""
        result = parse_datetime("2026-03-01T10:30:00-08:00")
        assert result == datetime(2026, 3, 1, 18, 30, tzinfo=timezone.utc)

    def test_naive_is_taken_as_utc(self):
        """Test naive timestamps are assumed to be UTC."""
        assert parse_datetime("2026-03-01T00:00:00").tzinfo == timezone.utc

    def test_date_only(self):
        """Test date-only strings and date objects."""
        expected = datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert parse_datetime("2026-03-01") == expected
        assert parse_datetime(date(2026, 3, 1)) == expected

    @pytest.mark.parametrize("value", ["not a date", "", None, 12])
    def test_invalid(self, value):
        """Test unrecognizable values raise FieldValueError."""
        with pytest.raises(FieldValueError):
            parse_datetime(value)


class TestParseValueByType:
    """Tests for parse_value when value_type is present."""

    def test_string_types(self, custom_field):
        """Test text-like types produce StringValue."""
        entry = custom_field("Bank", "TextBox", value_string="First Republic")
        assert parse_value(entry) == StringValue("First Republic")

    def test_dropdown_is_string(self, custom_field):
        """Test dropdowns are strings."""
        entry = custom_field("Type of Exchange", "DropDownList", value_string="Forward")
        assert parse_value(entry) == StringValue("Forward")

    def test_empty_string_is_none(self, custom_field):
        """Test an empty string slot carries no value."""
        assert parse_value(custom_field("Bank", "TextBox", value_string="")) is None

    def test_currency_number(self, custom_field):
        """Test currency values produce NumberValue."""
        entry = custom_field("Rel Value", "Currency", value_number=212000)
        assert parse_value(entry) == NumberValue(212000.0)

    def test_number_from_string_slot(self, custom_field):
        """Test a number sent in the string slot is parsed."""
        entry = custom_field("Proceeds", "Currency", value_string="$1,250.50")
        assert parse_value(entry) == NumberValue(1250.5)

    def test_invalid_number(self, custom_field):
        """Test garbage in a number field raises."""
        entry = custom_field("Proceeds", "Number", value_string="lots")
        with pytest.raises(FieldValueError):
            parse_value(entry)

    def test_date(self, custom_field):
        """Test date types produce DateValue."""
        entry = custom_field("Day 45", "Date", value_date_time="2026-04-15T00:00:00")
        value = parse_value(entry)
        assert isinstance(value, DateValue)
        assert value.value.date() == date(2026, 4, 15)

    def test_invalid_date(self, custom_field):
        """Test a malformed date raises."""
        entry = custom_field("Day 45", "Date", value_date_time="15/04/2026")
        with pytest.raises(FieldValueError):
            parse_value(entry)

    def test_checkbox(self, custom_field):
        """Test boolean types produce BoolValue, including false."""
        assert parse_value(
            custom_field("Identified?", "Checkbox", value_boolean=True)
        ) == BoolValue(True)
        assert parse_value(
            custom_field("Identified?", "Checkbox", value_boolean=False)
        ) == BoolValue(False)

    def test_contact_reference(self, custom_field):
        """Test contact references produce ReferenceValue."""
        entry = custom_field(
            "Settlement Agent",
            "Contact",
            contact_ref={"id": 991, "display_name": "Jane Escrow"},
        )
        assert parse_value(entry) == ReferenceValue("991", "Jane Escrow")

    def test_empty_reference(self, custom_field):
        """Test a reference type without a contact carries no value."""
        assert parse_value(custom_field("Settlement Agent", "Contact")) is None


class TestParseValueInferred:
    """Tests for parse_value when value_type is missing or unknown."""

    def test_infers_string(self, custom_field):
        """Test the string slot is picked when populated."""
        assert parse_value(custom_field("Notes", value_string="hi")) == StringValue("hi")

    def test_infers_number(self, custom_field):
        """Test the number slot is picked when populated."""
        assert parse_value(custom_field("Fee", value_number=12.5)) == NumberValue(12.5)

    def test_infers_zero(self, custom_field):
        """Test a zero number is a value, not empty."""
        assert parse_value(custom_field("Fee", value_number=0)) == NumberValue(0.0)

    def test_infers_date(self, custom_field):
        """Test the date slot is picked when populated."""
        value = parse_value(custom_field("When", value_date_time="2026-01-02T00:00:00Z"))
        assert isinstance(value, DateValue)

    def test_false_boolean_is_not_a_value(self, custom_field):
        """Test the always-present false boolean is not mistaken for a value."""
        assert parse_value(custom_field("Unknown")) is None

    def test_true_boolean_is_a_value(self, custom_field):
        """Test a true boolean is a value."""
        assert parse_value(custom_field("Flag", value_boolean=True)) == BoolValue(True)

    def test_unknown_type_falls_back_to_inference(self, custom_field):
        """Test an unrecognized value_type uses the populated slot."""
        entry = custom_field("Odd", "Hyperlink", value_string="x")
        assert parse_value(entry) == StringValue("x")


class TestParseCustomField:
    """Tests for parse_custom_field."""

    def test_parses_label_and_value(self, custom_field):
        """Test the label is trimmed and the value parsed."""
        entry = custom_field("  Bank ", "TextBox", value_string="Chase")
        assert parse_custom_field(entry) == CustomField(
            label="Bank", value_type="TextBox", value=StringValue("Chase")
        )

    def test_missing_label(self):
        """Test entries without a label raise."""
        with pytest.raises(FieldValueError, match="no label"):
            parse_custom_field({"custom_field_ref": {}, "value_string": "x"})

    def test_not_an_object(self):
        """Test non-dict entries raise."""
        with pytest.raises(FieldValueError):
            parse_custom_field(["Bank"])  # type: ignore[arg-type]

    def test_ref_not_an_object(self):
        """Test a custom_field_ref that is a bare string raises."""
        with pytest.raises(FieldValueError, match="custom_field_ref"):
            parse_custom_field({"custom_field_ref": "Bank", "value_string": "Chase"})

    def test_parse_value_rejects_malformed_entries(self):
        """Test parse_value raises instead of failing on attribute access."""
        with pytest.raises(FieldValueError, match="custom_field_ref"):
            parse_value({"custom_field_ref": ["Bank"], "value_string": "Chase"})
        with pytest.raises(FieldValueError, match="not an object"):
            parse_value("Bank")  # type: ignore[arg-type]
