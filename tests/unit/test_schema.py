from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from delivery_sync.domain.schema import (
    clean_fields,
    coerce_filter_value,
    known_fields,
    normalize_fields,
    to_camel,
    to_snake,
    to_view,
)
from delivery_sync.domain.status import RecordStatus, is_transition_allowed, parse_status
from delivery_sync.errors import ValidationError, format_errors

EXPECTED_COST = 1500.0


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("drNumber", "dr_number"),
        ("ref", "dr_number"),
        ("created_date", "delivery_date"),
        ("truckPlateNumber", "truck_plate_number"),
        ("completedDateTime", "completed_date_time"),
        ("dr_number", "dr_number"),
    ],
)
def test_to_snake_maps_aliases_and_camel_case(raw: str, expected: str) -> None:
    assert to_snake(raw) == expected


def test_to_view_is_camel_case() -> None:
    assert to_camel("truck_plate_number") == "truckPlateNumber"
    assert to_view({"dr_number": "DR-1", "customer_name": "Acme"}) == {
        "drNumber": "DR-1",
        "customerName": "Acme",
    }


def test_normalize_accepts_same_value_under_two_names() -> None:
    fields = normalize_fields({"ref": "DR-001", "drNumber": "DR-001"})

    assert fields == {"dr_number": "DR-001"}


def test_normalize_rejects_conflicting_aliases() -> None:
    with pytest.raises(ValidationError) as exc_info:
        normalize_fields({"drNumber": "DR-001", "dr_number": "DR-002"}, table="deliveries")

    assert exc_info.value.table == "deliveries"
    assert "dr_number" in exc_info.value.errors[0]


def test_normalize_rejects_unusable_field_names() -> None:
    with pytest.raises(ValidationError):
        normalize_fields({"bad name; drop": 1})


def test_clean_insert_requires_dr_number() -> None:
    with pytest.raises(ValidationError) as exc_info:
        clean_fields("deliveries", {"customerName": "Acme"})

    assert any(error.startswith("dr_number") for error in exc_info.value.errors)


def test_clean_insert_lifts_status_and_drops_server_fields() -> None:
    clean = clean_fields(
        "deliveries",
        {
            "ref": "DR-001",
            "status": "In Transit",
            "id": "ignored",
            "createdAt": "2024-01-01T00:00:00Z",
            "deliveryDate": "2024-03-05",
        },
    )

    assert clean.status == RecordStatus.IN_TRANSIT
    assert clean.fields == {"dr_number": "DR-001", "delivery_date": date(2024, 3, 5)}


def test_clean_blank_strings_become_null() -> None:
    clean = clean_fields("deliveries", {"drNumber": "DR-9", "origin": "  "})

    assert clean.fields["origin"] is None


def test_clean_validates_cost_items() -> None:
    clean = clean_fields(
        "deliveries",
        {
            "drNumber": "DR-1",
            "additionalCostItems": [{"description": "Toll", "amount": "1500", "category": "Toll"}],
        },
    )

    assert clean.fields["additional_cost_items"][0]["amount"] == EXPECTED_COST

    with pytest.raises(ValidationError):
        clean_fields(
            "deliveries",
            {"drNumber": "DR-1", "additionalCostItems": [{"description": "", "amount": 1}]},
        )


def test_clean_total_additional_costs() -> None:
    clean = clean_fields("deliveries", {"drNumber": "DR-1", "additionalCosts": "150.50", "distance": ""})

    assert clean.fields["additional_costs"] == Decimal("150.50")
    assert clean.fields["distance"] is None

    with pytest.raises(ValidationError):
        clean_fields("deliveries", {"drNumber": "DR-1", "additionalCosts": -1}, partial=True)


def test_filter_values_follow_column_types() -> None:
    assert coerce_filter_value("deliveries", "delivery_date", "2024-05-01") == date(2024, 5, 1)
    assert coerce_filter_value("deliveries", "status", "on schedule") == "OnSchedule"
    assert coerce_filter_value("deliveries", "signed_at", None) is None
    assert coerce_filter_value("routes", "anything", "as is") == "as is"
    with pytest.raises(ValidationError):
        coerce_filter_value("customers", "bookings_count", "many")


def test_known_fields_cover_modeled_tables_only() -> None:
    columns = known_fields("deliveries")

    assert {"dr_number", "status", "additional_costs", "created_at"} <= columns
    assert "timestamp" not in columns
    assert known_fields("routes") is None


def test_clean_partial_checks_only_given_fields() -> None:
    clean = clean_fields("deliveries", {"status": "Canceled"}, partial=True)

    assert clean.fields == {}
    assert clean.status == RecordStatus.CANCELED


def test_clean_partial_rejects_clearing_required_field() -> None:
    with pytest.raises(ValidationError) as exc_info:
        clean_fields("deliveries", {"drNumber": ""}, partial=True)

    assert exc_info.value.errors == ["dr_number: field is required"]


def test_clean_rejects_unknown_status() -> None:
    with pytest.raises(ValidationError) as exc_info:
        clean_fields("deliveries", {"drNumber": "DR-1", "status": "Lost"})

    assert "status must be one of" in exc_info.value.errors[0]


def test_customer_phone_and_email_rules() -> None:
    clean = clean_fields("customers", {"name": "Acme", "phone": "+63 917 123 4567", "email": "ops@acme.ph"})
    assert clean.fields["phone"] == "+63 917 123 4567"

    with pytest.raises(ValidationError) as exc_info:
        clean_fields("customers", {"name": "Acme", "phone": "call me", "email": "nope"})

    message = format_errors(exc_info.value)
    assert message.startswith("Validation errors:")
    assert "phone" in message
    assert "email" in message


def test_customer_status_is_an_ordinary_field() -> None:
    clean = clean_fields("customers", {"name": "Acme", "phone": "555", "status": "inactive"})

    assert clean.status is None
    assert clean.fields["status"] == "inactive"


def test_epod_signature_must_be_image_data() -> None:
    clean = clean_fields("epod_records", {"drNumber": "DR-1", "signatureData": "data:image/png;base64,AAAA"})
    assert clean.fields["signature_data"].startswith("data:image/")

    with pytest.raises(ValidationError):
        clean_fields("epod_records", {"drNumber": "DR-1", "signatureData": "not a signature!"})


def test_unknown_table_passes_fields_through() -> None:
    clean = clean_fields("audit_log", {"eventName": "login"})

    assert clean.fields == {"event_name": "login"}
    assert clean.status is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Active", RecordStatus.ACTIVE),
        ("completed", RecordStatus.COMPLETED),
        ("Cancelled", RecordStatus.CANCELED),
        ("On Schedule", RecordStatus.ON_SCHEDULE),
        ("", None),
        (None, None),
    ],
)
def test_parse_status(raw, expected) -> None:
    assert parse_status(raw) == expected


def test_only_completed_is_terminal() -> None:
    assert not is_transition_allowed(RecordStatus.COMPLETED, RecordStatus.ACTIVE)
    assert is_transition_allowed(RecordStatus.COMPLETED, RecordStatus.COMPLETED)
    assert is_transition_allowed(RecordStatus.CANCELED, RecordStatus.ACTIVE)
    assert is_transition_allowed(RecordStatus.ACTIVE, RecordStatus.COMPLETED)
    assert is_transition_allowed(None, RecordStatus.ACTIVE)
