from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from delivery_sync.coordinator import DeadLetter
from delivery_sync.domain.models import Record
from delivery_sync.migration import MigrationReport, TableCheck
from delivery_sync.queue import QueuedWrite

# Preferred leading columns per table; remaining fields follow alphabetically.
_LEADING_COLUMNS: Dict[str, List[str]] = {
    "deliveries": ["drNumber", "status", "customerName", "origin", "destination", "deliveryDate"],
    "customers": ["name", "phone", "email", "accountType", "status"],
    "epod_records": ["drNumber", "customerName", "signedAt"],
}
_MAX_COLUMNS = 8


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, (list, tuple)):
        return f"[{len(value)} items]"
    text = str(value)
    return text if len(text) <= 40 else text[:37] + "..."


def print_records(
    table_name: str,
    records: Sequence[Record],
    *,
    stale: bool = False,
    console: Optional[Console] = None,
) -> None:
    """
    Render records as a rich table using their camelCase view.
    """
    console = console or Console()
    if not records:
        console.print(f"[yellow]No {table_name} records found.[/yellow]")
        return

    views = [record.to_view() for record in records]
    present = {name for view in views for name, value in view.items() if value is not None}
    columns = [c for c in _LEADING_COLUMNS.get(table_name, []) if c in present]
    extras = sorted(present - set(columns) - {"id", "createdAt", "updatedAt"})
    columns = ["id", *columns, *extras][:_MAX_COLUMNS]

    caption = "[red]stale: remote unreachable, showing last cached values[/red]" if stale else None
    table = Table(title=f"{table_name} ({len(records)})", box=box.ROUNDED, caption=caption)
    for column in columns:
        table.add_column(column, style="cyan" if column == "id" else None, overflow="fold")
    for view, record in zip(views, records):
        row = [_cell(view.get(column)) for column in columns]
        if record.pending:
            row[0] = f"[yellow]pending {record.pending_op_id[:8]}[/yellow]"
        table.add_row(*row)
    console.print(table)


def print_cache_stats(stats: Mapping[str, Any], console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Cache", box=box.SIMPLE)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="magenta")
    for name in ("size", "hits", "misses", "sets", "invalidations"):
        table.add_row(name, str(stats.get(name, 0)))
    table.add_row("hit_rate", f"{stats.get('hit_rate', 0.0):.2f}%")
    console.print(table)


def print_queue(
    ops: Iterable[QueuedWrite],
    dead_letters: Iterable[DeadLetter] = (),
    console: Optional[Console] = None,
) -> None:
    console = console or Console()
    ops = list(ops)
    dead_letters = list(dead_letters)
    if not ops and not dead_letters:
        console.print("[green]Offline queue is empty.[/green]")
        return

    table = Table(title=f"Offline queue ({len(ops)} pending)", box=box.ROUNDED)
    table.add_column("#", justify="right")
    table.add_column("Op", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Table")
    table.add_column("Record")
    table.add_column("Queued at", style="dim")
    for index, op in enumerate(ops, start=1):
        table.add_row(
            str(index),
            op.op_id,
            op.kind,
            op.table,
            op.record_id or "(new)",
            op.enqueued_at.isoformat(timespec="seconds"),
        )
    console.print(table)

    if dead_letters:
        failed = Table(title="Rejected writes", box=box.ROUNDED, style="red")
        failed.add_column("Op", no_wrap=True)
        failed.add_column("Table")
        failed.add_column("Record")
        failed.add_column("Error")
        for letter in dead_letters:
            failed.add_row(letter.op.op_id, letter.op.table, letter.op.record_id or "(new)", str(letter.error))
        console.print(failed)


def print_migration_report(
    report: MigrationReport,
    checks: Optional[Mapping[str, TableCheck]] = None,
    console: Optional[Console] = None,
) -> None:
    """
    Summarize a legacy import: per-table success/failure counts, the first
    errors of each table and, when given, the integrity check.
    """
    console = console or Console()
    table = Table(
        title="Legacy import",
        box=box.ROUNDED,
        caption=f"{report.duplicates_removed} duplicate deliveries skipped",
    )
    table.add_column("Table", style="cyan")
    table.add_column("Imported", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    if checks:
        table.add_column("Expected", justify="right")
        table.add_column("In remote", justify="right")
        table.add_column("Match")

    for name, result in report.tables.items():
        row = [name, str(result.success), str(result.failed)]
        if checks:
            check = checks.get(name)
            if check is None:
                row += ["-", "-", "-"]
            else:
                row += [
                    str(check.expected),
                    str(check.actual),
                    "[green]yes[/green]" if check.match else "[red]no[/red]",
                ]
        table.add_row(*row)
    console.print(table)

    for name, result in report.tables.items():
        for error in result.errors[:5]:
            console.print(f"[red]{name}[/red] {error['item']}: {error['error']}")
        if len(result.errors) > 5:
            console.print(f"[dim]... {len(result.errors) - 5} more {name} errors[/dim]")


__all__ = ["print_records", "print_cache_stats", "print_queue", "print_migration_report"]
