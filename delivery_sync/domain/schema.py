"""
Field schemas and name normalization for the tracked tables.

All field names are stored in one canonical casing (snake_case). Incoming
payloads are normalized once at ingress; the camelCase view for the UI is
produced once at egress by `to_view`. Legacy alias names are folded into
their canonical field, and a payload carrying one attribute under two names
with different values is rejected.

Per-table field models are plain pydantic models. Inserts validate the whole
model; updates validate only the fields present in the patch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Mapping, Optional, Type

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic import model_validator

from delivery_sync.domain.status import RecordStatus, parse_status
from delivery_sync.errors import ValidationError

SERVER_MANAGED_FIELDS = frozenset({"id", "created_at", "updated_at"})

FIELD_ALIASES: Dict[str, str] = {
    "drNumber": "dr_number",
    "ref": "dr_number",
    "customerName": "customer_name",
    "vendorNumber": "vendor_number",
    "truckType": "truck_type",
    "truckPlateNumber": "truck_plate_number",
    "deliveryDate": "delivery_date",
    "created_date": "delivery_date",
    "additionalCosts": "additional_costs",
}

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")
_BASE64 = re.compile(r"^[A-Za-z0-9+/=]+$")


def to_snake(name: str) -> str:
    """Canonical field name for a raw (possibly legacy or camelCase) name."""
    name = name.strip()
    if name in FIELD_ALIASES:
        return FIELD_ALIASES[name]
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def is_identifier(name: str) -> bool:
    return bool(_IDENTIFIER.match(name))


def normalize_fields(fields: Mapping[str, Any], table: Optional[str] = None) -> Dict[str, Any]:
    """
    Return a copy of `fields` keyed by canonical snake_case names.

    Raises ValidationError for names that are not usable as column names and
    for attributes given under two spellings with different values.
    """
    normalized: Dict[str, Any] = {}
    seen_as: Dict[str, str] = {}
    errors: List[str] = []
    for raw_name, value in fields.items():
        name = to_snake(str(raw_name))
        if not is_identifier(name):
            errors.append(f"invalid field name {raw_name!r}")
            continue
        if name in normalized and normalized[name] != value:
            errors.append(
                f"{name} given as both {seen_as[name]!r} and {raw_name!r} with different values"
            )
            continue
        normalized[name] = value
        seen_as.setdefault(name, str(raw_name))
    if errors:
        raise ValidationError(errors, table=table)
    return normalized


def to_view(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """camelCase copy of canonical fields for display layers."""
    return {to_camel(name): value for name, value in fields.items()}


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


def _check_signature(value: str) -> str:
    if not (value.startswith("data:image/") or _BASE64.match(value)):
        raise ValueError("signature data must be a data URL or base64 string")
    return value


NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Phone = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, pattern=r"^[\d\s\-\+\(\)]+$"),
]
Email = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$")]
SignatureData = Annotated[str, AfterValidator(_check_signature)]


class _FieldModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    @model_validator(mode="before")
    @classmethod
    def _blank_strings_are_null(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: _blank_to_none(value) for key, value in data.items()}
        return data


class CostItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    description: NonBlank
    amount: float
    category: str = "Other"


class DeliveryFields(_FieldModel):
    dr_number: NonBlank
    customer_name: Optional[str] = None
    vendor_number: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    truck_type: Optional[str] = None
    truck_plate_number: Optional[str] = None
    distance: Optional[str] = None
    additional_costs: Optional[Decimal] = Field(None, ge=0)
    delivery_date: Optional[date] = None
    booked_date: Optional[date] = None
    completed_date_time: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    additional_cost_items: Optional[List[CostItem]] = None


class CustomerFields(_FieldModel):
    name: NonBlank
    phone: Phone
    contact_person: Optional[str] = None
    email: Optional[Email] = None
    address: Optional[str] = None
    account_type: Optional[Literal["Individual", "Corporate", "Government"]] = None
    status: Optional[Literal["active", "inactive", "suspended"]] = None
    bookings_count: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None
    last_delivery: Optional[str] = None


class EpodFields(_FieldModel):
    dr_number: NonBlank
    customer_name: Optional[str] = None
    customer_contact: Optional[str] = None
    truck_plate: Optional[str] = None
    delivery_route: Optional[str] = None
    signature_data: Optional[SignatureData] = None
    signed_at: Optional[datetime] = None


@dataclass(frozen=True)
class TableSchema:
    """
    What is known about one remote table.

    `status_field` names the lifecycle column lifted into Record.status; tables
    without one keep any "status" column as an ordinary field.
    """

    name: str
    model: Optional[Type[BaseModel]] = None
    status_field: Optional[str] = None


SCHEMAS: Dict[str, TableSchema] = {
    "deliveries": TableSchema("deliveries", DeliveryFields, status_field="status"),
    "customers": TableSchema("customers", CustomerFields),
    "epod_records": TableSchema("epod_records", EpodFields),
}


def get_schema(table: str) -> TableSchema:
    return SCHEMAS.get(table) or TableSchema(table)


@dataclass(frozen=True)
class CleanFields:
    """Validated, canonical payload ready for the remote store."""

    fields: Dict[str, Any]
    status: Optional[RecordStatus] = None


def _error_messages(exc: PydanticValidationError, prefix: str = "") -> List[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in (prefix, *err["loc"]) if part != "")
        messages.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return messages


@lru_cache(maxsize=None)
def _field_adapter(model: Type[BaseModel], name: str) -> TypeAdapter:
    info = model.model_fields[name]
    if info.metadata:
        return TypeAdapter(Annotated[(info.annotation, *info.metadata)])
    return TypeAdapter(info.annotation)


_SERVER_TIMESTAMP = TypeAdapter(datetime)


def known_fields(table: str) -> Optional[FrozenSet[str]]:
    """Canonical column names of a modeled table, or None for other tables."""
    schema = get_schema(table)
    if schema.model is None:
        return None
    names = set(schema.model.model_fields) | SERVER_MANAGED_FIELDS
    if schema.status_field:
        names.add(schema.status_field)
    return frozenset(names)


def coerce_filter_value(table: str, name: str, value: Any) -> Any:
    """
    Convert a filter operand (often a string from a URL or the command line)
    to the column's Python type, e.g. "2024-05-01" to a date for
    `delivery_date`. None and unknown columns pass through unchanged.
    """
    if value is None:
        return None
    schema = get_schema(table)
    try:
        if schema.status_field and name == schema.status_field:
            status = parse_status(value)
            return status.value if status is not None else None
        if name in ("created_at", "updated_at"):
            return _SERVER_TIMESTAMP.validate_python(value)
        if schema.model is None or name not in schema.model.model_fields:
            return value
        adapter = _field_adapter(schema.model, name)
        return adapter.dump_python(adapter.validate_python(value))
    except PydanticValidationError as exc:
        raise ValidationError(_error_messages(exc, prefix=name), table=table, cause=exc) from exc
    except ValueError as exc:
        raise ValidationError([f"{name}: {exc}"], table=table, cause=exc) from exc


def clean_fields(table: str, fields: Mapping[str, Any], *, partial: bool = False) -> CleanFields:
    """
    Normalize and validate a payload for `table`.

    Server-managed columns (id, created_at, updated_at) are dropped. With
    `partial=True` only the given fields are checked, as for an update patch;
    otherwise required fields must be present.
    """
    schema = get_schema(table)
    normalized = normalize_fields(fields, table=table)
    for name in SERVER_MANAGED_FIELDS:
        normalized.pop(name, None)

    errors: List[str] = []
    status: Optional[RecordStatus] = None
    if schema.status_field and schema.status_field in normalized:
        try:
            status = parse_status(normalized.pop(schema.status_field))
        except ValueError as exc:
            errors.append(str(exc))

    cleaned: Dict[str, Any] = {}
    if schema.model is None:
        cleaned = normalized
    elif partial:
        for name, value in normalized.items():
            if name not in schema.model.model_fields:
                cleaned[name] = value
                continue
            adapter = _field_adapter(schema.model, name)
            value = _blank_to_none(value)
            if value is None and schema.model.model_fields[name].is_required():
                errors.append(f"{name}: field is required")
                continue
            try:
                cleaned[name] = adapter.dump_python(adapter.validate_python(value))
            except PydanticValidationError as exc:
                errors.extend(_error_messages(exc, prefix=name))
    else:
        try:
            model = schema.model.model_validate(normalized)
            cleaned = model.model_dump(exclude_unset=True)
        except PydanticValidationError as exc:
            errors.extend(_error_messages(exc))

    if errors:
        raise ValidationError(errors, table=table)
    return CleanFields(fields=cleaned, status=status)


__all__ = [
    "SERVER_MANAGED_FIELDS",
    "FIELD_ALIASES",
    "TableSchema",
    "SCHEMAS",
    "CleanFields",
    "CostItem",
    "DeliveryFields",
    "CustomerFields",
    "EpodFields",
    "clean_fields",
    "coerce_filter_value",
    "get_schema",
    "is_identifier",
    "known_fields",
    "normalize_fields",
    "to_camel",
    "to_snake",
    "to_view",
]
