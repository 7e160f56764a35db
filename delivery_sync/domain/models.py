"""
Domain models for delivery-sync.

Defines the Record exchanged with callers, the immutable QueryFilter used both
as the RecordStore read argument and (serialized) as the cache key, and the
ChangeEvent / QueryResult value types.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, Literal, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from delivery_sync.domain.schema import to_snake, to_view
from delivery_sync.domain.status import RecordStatus

PredicateOp = Literal["eq", "neq", "gt", "gte", "lt", "lte", "in"]

# Columns that live on Record itself rather than in Record.fields.
RECORD_COLUMNS = ("id", "status", "created_at", "updated_at")


class Record(BaseModel):
    """
    One persisted (or about-to-be-persisted) business entity.
    """

    id: Optional[str] = Field(None, description="Remote-assigned identifier.")
    table: str = Field(..., description="Table the record belongs to.")
    fields: Dict[str, Any] = Field(default_factory=dict, description="Canonical domain fields.")
    status: Optional[RecordStatus] = Field(None, description="Lifecycle status, if tracked.")
    created_at: Optional[datetime] = Field(None, description="Server-assigned creation time.")
    updated_at: Optional[datetime] = Field(None, description="Server-assigned update time.")
    pending_op_id: Optional[str] = Field(
        None, description="Offline queue op id when the write has not reached the remote."
    )

    model_config = {
        "frozen": True,
        "populate_by_name": True,
    }

    @property
    def pending(self) -> bool:
        return self.pending_op_id is not None

    def value(self, name: str) -> Any:
        """Read a column, whether it is a Record attribute or a domain field."""
        if name in RECORD_COLUMNS:
            raw = getattr(self, name)
            return raw.value if isinstance(raw, RecordStatus) else raw
        return self.fields.get(name)

    def to_view(self) -> Dict[str, Any]:
        """camelCase representation for display layers."""
        view = to_view(self.fields)
        view["id"] = self.id
        if self.status is not None:
            view["status"] = self.status.value
        view["createdAt"] = self.created_at
        view["updatedAt"] = self.updated_at
        return view


class Predicate(BaseModel):
    field: str
    op: PredicateOp = "eq"
    value: Any = None

    model_config = {"frozen": True}

    @field_validator("field")
    @classmethod
    def _canonical_field(cls, value: str) -> str:
        return to_snake(value)

    @model_validator(mode="after")
    def _check_in_operand(self) -> "Predicate":
        if self.op == "in" and not isinstance(self.value, (list, tuple)):
            raise ValueError("'in' predicate requires a list of values")
        return self


class QueryFilter(BaseModel):
    """
    Immutable description of one read: table, predicates, ordering and a
    keyset cursor. Pagination is explicit: `next_page()` returns the filter
    for the page after a given batch of records.
    """

    table: str
    predicates: Tuple[Predicate, ...] = ()
    order_by: Optional[str] = None
    descending: bool = True
    limit: Optional[int] = Field(None, gt=0)
    cursor: Optional[Any] = None

    model_config = {"frozen": True}

    @field_validator("predicates")
    @classmethod
    def _sorted_predicates(cls, value: Tuple[Predicate, ...]) -> Tuple[Predicate, ...]:
        return tuple(sorted(value, key=lambda p: (p.field, p.op, repr(p.value))))

    @field_validator("order_by")
    @classmethod
    def _canonical_order(cls, value: Optional[str]) -> Optional[str]:
        return to_snake(value) if value else value

    @model_validator(mode="after")
    def _cursor_needs_order(self) -> "QueryFilter":
        if self.cursor is not None and self.order_by is None:
            raise ValueError("cursor requires order_by")
        return self

    @classmethod
    def build(
        cls,
        table: str,
        where: Optional[Mapping[str, Any]] = None,
        **options: Any,
    ) -> "QueryFilter":
        """Equality filter from a mapping, e.g. build("deliveries", {"ref": "DR-001"})."""
        predicates = tuple(Predicate(field=k, op="eq", value=v) for k, v in (where or {}).items())
        return cls(table=table, predicates=predicates, **options)

    def cache_key(self) -> str:
        """Deterministic serialization, prefixed by table for invalidation."""
        body = self.model_dump(mode="json", exclude={"table"})
        return f"{self.table}:{json.dumps(body, sort_keys=True, default=str)}"

    def next_page(self, records: Sequence[Record]) -> Optional["QueryFilter"]:
        """Filter for the following page, or None when `records` was the last page."""
        if self.order_by is None or self.limit is None:
            raise ValueError("pagination requires order_by and limit")
        if len(records) < self.limit:
            return None
        return self.model_copy(update={"cursor": records[-1].value(self.order_by)})


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    FAILURE = "FAILURE"


class ChangeOrigin(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    table: str
    record: Optional[Record] = None
    record_id: Optional[str] = None
    origin: ChangeOrigin = ChangeOrigin.REMOTE
    error: Optional[Exception] = None


@dataclass(frozen=True)
class QueryResult(Sequence[Record]):
    """
    Records returned by SyncCoordinator.get.

    `stale` is True when the remote could not be reached and the records are
    the last cached value for the query, possibly past their TTL.
    """

    records: Tuple[Record, ...] = field(default_factory=tuple)
    stale: bool = False
    from_cache: bool = False

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, index):  # type: ignore[override]
        return self.records[index]

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)


__all__ = [
    "RECORD_COLUMNS",
    "Record",
    "Predicate",
    "PredicateOp",
    "QueryFilter",
    "ChangeKind",
    "ChangeOrigin",
    "ChangeEvent",
    "QueryResult",
]
