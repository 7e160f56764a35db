"""
Domain package for delivery-sync.

Exports the record, filter and event types plus the lifecycle status enum.
Keep this package focused on data definitions and validation concerns.
"""

from delivery_sync.domain.models import (
    ChangeEvent,
    ChangeKind,
    ChangeOrigin,
    Predicate,
    QueryFilter,
    QueryResult,
    Record,
)
from delivery_sync.domain.status import RecordStatus

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "ChangeOrigin",
    "Predicate",
    "QueryFilter",
    "QueryResult",
    "Record",
    "RecordStatus",
]
