"""
Legacy browser-storage import.

The old dashboard kept its data in browser localStorage under
`mci-active-deliveries`, `mci-delivery-history`, `mci-customers` and
`ePodRecords`, and could export them to one JSON file with the keys
`activeDeliveries`, `deliveryHistory`, `customers` and `epodRecords`. This
module loads either shape and writes every record through SyncCoordinator,
so the usual normalization and validation apply.

Customers are imported first (deliveries may reference them). Active and
historical deliveries are merged and de-duplicated by `dr_number`, first
occurrence wins. A failing record is counted and reported; it does not stop
the import.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from delivery_sync.coordinator import SyncCoordinator
from delivery_sync.domain.models import QueryFilter
from delivery_sync.domain.schema import known_fields, to_snake
from delivery_sync.errors import SyncError
from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)

LEGACY_KEYS = {
    "activeDeliveries": "mci-active-deliveries",
    "deliveryHistory": "mci-delivery-history",
    "customers": "mci-customers",
    "epodRecords": "ePodRecords",
}

# Integrity check tolerance: at least this share of the expected rows must exist.
MATCH_RATIO = 0.95

ProgressCallback = Callable[[str, int, int, str], None]


@dataclass
class LegacyExport:
    active_deliveries: List[Dict[str, Any]] = field(default_factory=list)
    delivery_history: List[Dict[str, Any]] = field(default_factory=list)
    customers: List[Dict[str, Any]] = field(default_factory=list)
    epod_records: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LegacyExport":
        """Accept both the exported key names and the raw localStorage keys."""

        def _items(name: str) -> List[Dict[str, Any]]:
            value = data.get(name, data.get(LEGACY_KEYS[name]))
            if value is None:
                return []
            if isinstance(value, str):
                value = json.loads(value)
            if not isinstance(value, list):
                raise ValueError(f"{name} must be a list, got {type(value).__name__}")
            return [dict(item) for item in value if isinstance(item, Mapping)]

        return cls(
            active_deliveries=_items("activeDeliveries"),
            delivery_history=_items("deliveryHistory"),
            customers=_items("customers"),
            epod_records=_items("epodRecords"),
        )

    @classmethod
    def load(cls, path: Path) -> "LegacyExport":
        return cls.from_mapping(json.loads(Path(path).read_text(encoding="utf-8")))

    def unique_deliveries(self) -> List[Dict[str, Any]]:
        return dedupe_deliveries([*self.active_deliveries, *self.delivery_history])


def _dr_number(item: Mapping[str, Any]) -> Optional[str]:
    for name, value in item.items():
        if to_snake(str(name)) == "dr_number" and value:
            return str(value).strip()
    return None


def dedupe_deliveries(deliveries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop deliveries without a DR number and repeats of an earlier DR number."""
    seen = set()
    unique = []
    for delivery in deliveries:
        dr_number = _dr_number(delivery)
        if not dr_number or dr_number in seen:
            continue
        seen.add(dr_number)
        unique.append(delivery)
    return unique


def _legacy_payload(table: str, item: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Fields of a legacy item that the remote table can store.

    Legacy ids are browser-local and are dropped, as are bookkeeping keys the
    old dashboard kept next to the data (`timestamp`, `created_by`, ...).
    """
    columns = known_fields(table)
    payload: Dict[str, Any] = {}
    dropped: List[str] = []
    for name, value in item.items():
        canonical = to_snake(str(name))
        if canonical in ("id", "_id") or (columns is not None and canonical not in columns):
            dropped.append(str(name))
            continue
        payload[name] = value
    if dropped:
        log.debug("Dropping legacy-only keys", extra={"table": table, "keys": dropped})
    return payload


@dataclass
class TableReport:
    success: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class MigrationReport:
    tables: Dict[str, TableReport] = field(default_factory=dict)
    duplicates_removed: int = 0

    @property
    def total_success(self) -> int:
        return sum(report.success for report in self.tables.values())

    @property
    def total_failed(self) -> int:
        return sum(report.failed for report in self.tables.values())


@dataclass
class TableCheck:
    expected: int
    actual: int

    @property
    def match(self) -> bool:
        return self.actual >= self.expected * MATCH_RATIO


async def _import_table(
    sync: SyncCoordinator,
    table: str,
    items: List[Dict[str, Any]],
    label: Callable[[Mapping[str, Any]], str],
    report: TableReport,
    progress: Optional[ProgressCallback],
) -> None:
    for index, item in enumerate(items, start=1):
        name = label(item)
        try:
            await sync.save(table, _legacy_payload(table, item))
        except SyncError as exc:
            report.failed += 1
            report.errors.append({"item": name, "error": str(exc)})
            log.warning("Import failed", extra={"table": table, "item": name, "error": str(exc)})
            continue
        report.success += 1
        if progress is not None:
            progress(table, index, len(items), name)


async def import_legacy(
    sync: SyncCoordinator,
    export: LegacyExport,
    progress: Optional[ProgressCallback] = None,
) -> MigrationReport:
    """Write every legacy record through `sync`, customers first."""
    deliveries = export.unique_deliveries()
    report = MigrationReport(
        tables={name: TableReport() for name in ("customers", "deliveries", "epod_records")},
        duplicates_removed=len(export.active_deliveries) + len(export.delivery_history) - len(deliveries),
    )
    log.info(
        "Starting legacy import",
        extra={
            "customers": len(export.customers),
            "deliveries": len(deliveries),
            "epod_records": len(export.epod_records),
            "duplicates_removed": report.duplicates_removed,
        },
    )
    await _import_table(
        sync,
        "customers",
        export.customers,
        lambda item: str(item.get("name") or item.get("id") or "?"),
        report.tables["customers"],
        progress,
    )
    await _import_table(
        sync,
        "deliveries",
        deliveries,
        lambda item: _dr_number(item) or "?",
        report.tables["deliveries"],
        progress,
    )
    await _import_table(
        sync,
        "epod_records",
        export.epod_records,
        lambda item: _dr_number(item) or "?",
        report.tables["epod_records"],
        progress,
    )
    log.info(
        "Legacy import finished",
        extra={"success": report.total_success, "failed": report.total_failed},
    )
    return report


async def _count(sync: SyncCoordinator, table: str, page_size: int = 500) -> int:
    total = 0
    page: Optional[QueryFilter] = QueryFilter(table=table, order_by="id", descending=False, limit=page_size)
    while page is not None:
        records = await sync.store.query(table, page)
        total += len(records)
        page = page.next_page(records)
    return total


async def verify_integrity(sync: SyncCoordinator, export: LegacyExport) -> Dict[str, TableCheck]:
    """Compare expected row counts from `export` with what the remote now holds."""
    expected = {
        "deliveries": len(export.unique_deliveries()),
        "customers": len(export.customers),
        "epod_records": len(export.epod_records),
    }
    checks = {table: TableCheck(count, await _count(sync, table)) for table, count in expected.items()}
    log.info(
        "Integrity check",
        extra={table: {"expected": c.expected, "actual": c.actual} for table, c in checks.items()},
    )
    return checks


__all__ = [
    "LEGACY_KEYS",
    "LegacyExport",
    "MigrationReport",
    "TableCheck",
    "TableReport",
    "dedupe_deliveries",
    "import_legacy",
    "verify_integrity",
]
