"""
Delivery lifecycle statuses and the transition rule.

`Completed` is terminal: once a record reaches it, its status can no longer
change. All other transitions are permitted (last write wins).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class RecordStatus(str, Enum):
    ACTIVE = "Active"
    IN_TRANSIT = "InTransit"
    ON_SCHEDULE = "OnSchedule"
    SOLD_UNDELIVERED = "SoldUndelivered"
    CANCELED = "Canceled"
    COMPLETED = "Completed"


TERMINAL_STATUSES = frozenset({RecordStatus.COMPLETED})

# Spellings found in legacy rows and exports.
_LEGACY_SPELLINGS: Dict[str, RecordStatus] = {
    "in transit": RecordStatus.IN_TRANSIT,
    "on schedule": RecordStatus.ON_SCHEDULE,
    "sold undelivered": RecordStatus.SOLD_UNDELIVERED,
    "cancelled": RecordStatus.CANCELED,
    "signed": RecordStatus.COMPLETED,
}


def parse_status(value: Any) -> Optional[RecordStatus]:
    """
    Map a raw status value onto RecordStatus.

    Returns None for None/empty input and raises ValueError for anything that
    is not a known status or legacy spelling.
    """
    if value is None or value == "":
        return None
    if isinstance(value, RecordStatus):
        return value
    text = str(value).strip()
    for status in RecordStatus:
        if text == status.value or text.lower() == status.value.lower():
            return status
    legacy = _LEGACY_SPELLINGS.get(text.lower())
    if legacy is None:
        allowed = ", ".join(s.value for s in RecordStatus)
        raise ValueError(f"status must be one of: {allowed} (got {value!r})")
    return legacy


def is_transition_allowed(current: Optional[RecordStatus], requested: Optional[RecordStatus]) -> bool:
    if current is None or requested is None:
        return True
    if current in TERMINAL_STATUSES:
        return requested == current
    return True


__all__ = ["RecordStatus", "TERMINAL_STATUSES", "parse_status", "is_transition_allowed"]
