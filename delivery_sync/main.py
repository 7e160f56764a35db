from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from delivery_sync.config import get_settings
from delivery_sync.coordinator import SyncCoordinator
from delivery_sync.domain.models import ChangeEvent, ChangeKind, QueryFilter
from delivery_sync.errors import SyncError, ValidationError, format_errors
from delivery_sync.migration import LegacyExport, import_legacy, verify_integrity
from delivery_sync.queue import OfflineQueue
from delivery_sync.reporter import (
    print_cache_stats,
    print_migration_report,
    print_queue,
    print_records,
)
from delivery_sync.utils.logging import configure_logging

app = typer.Typer(help="Delivery sync CLI.")


def _setup() -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)


def _parse_where(where: List[str]) -> Dict[str, Any]:
    """Parse repeated `--where field=value` options."""
    parsed: Dict[str, Any] = {}
    for item in where:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"expected field=value, got {item!r}", param_hint="--where")
        parsed[name] = value
    return parsed


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except ValidationError as exc:
        typer.echo(format_errors(exc), err=True)
        raise typer.Exit(code=2)
    except SyncError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    if settings.backend == "postgres":
        remote = f"postgres {settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    else:
        remote = f"rest {settings.supabase_url or '(SUPABASE_URL unset)'}"
    typer.echo(
        f"backend={remote} | env={settings.app_env} | cache_ttl={settings.cache_ttl_seconds}s "
        f"timeout={settings.request_timeout_seconds}s queue={settings.offline_queue_path}"
    )


@app.command()
def get(
    table: str = typer.Argument(..., help="Table to read (deliveries, customers, epod_records, ...)."),
    where: List[str] = typer.Option([], "--where", "-w", help="Equality filter field=value; repeatable."),
    order_by: Optional[str] = typer.Option("created_at", "--order-by", help="Column to sort by."),
    ascending: bool = typer.Option(False, "--asc", help="Sort ascending instead of descending."),
    limit: Optional[int] = typer.Option(50, "--limit", "-n", help="Maximum rows to return."),
    as_json: bool = typer.Option(False, "--json", help="Print records as JSON instead of a table."),
) -> None:
    """
    Read records through the cache-first coordinator.
    """
    _setup()
    query = QueryFilter.build(table, _parse_where(where), order_by=order_by, descending=not ascending, limit=limit)

    async def _get() -> None:
        async with await SyncCoordinator.from_settings() as sync:
            result = await sync.get(table, query)
            if as_json:
                typer.echo(json.dumps([r.to_view() for r in result], indent=2, default=str))
            else:
                print_records(table, result, stale=result.stale)

    _run(_get())


@app.command()
def save(
    table: str = typer.Argument(..., help="Target table."),
    payload: str = typer.Argument(..., help='JSON object, e.g. \'{"ref": "DR-001", "status": "Active"}\'.'),
) -> None:
    """
    Insert (no "id") or update (with "id") one record.
    """
    _setup()
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise typer.BadParameter(f"payload is not valid JSON: {exc}", param_hint="PAYLOAD")
    if not isinstance(data, dict):
        raise typer.BadParameter("payload must be a JSON object", param_hint="PAYLOAD")

    async def _save() -> None:
        async with await SyncCoordinator.from_settings() as sync:
            record = await sync.save(table, data)
            if record.pending:
                typer.echo(f"Queued offline as {record.pending_op_id}.")
            print_records(table, [record])

    _run(_save())


@app.command()
def delete(
    table: str = typer.Argument(..., help="Target table."),
    record_id: str = typer.Argument(..., help="Record id."),
) -> None:
    """
    Delete one record by id.
    """
    _setup()

    async def _delete() -> None:
        async with await SyncCoordinator.from_settings() as sync:
            await sync.delete(table, record_id)
            queued = [op for op in sync.pending() if op.record_id == record_id and op.kind == "delete"]
            typer.echo(f"Queued delete as {queued[-1].op_id}." if queued else f"Deleted {table}/{record_id}.")

    _run(_delete())


@app.command()
def watch(
    tables: List[str] = typer.Argument(..., help="Tables to watch."),
) -> None:
    """
    Stream change events until interrupted.
    """
    _setup()

    def _print(event: ChangeEvent) -> None:
        if event.kind == ChangeKind.FAILURE:
            typer.secho(f"{event.table}: {event.error}", fg=typer.colors.RED, err=True)
            return
        view = event.record.to_view() if event.record else {}
        typer.echo(f"{event.kind.value:<6} {event.table} {event.record_id} {json.dumps(view, default=str)}")

    async def _watch() -> None:
        async with await SyncCoordinator.from_settings(monitor_connectivity=True) as sync:
            for table in tables:
                await sync.subscribe(table, _print)
            typer.echo(f"Watching {', '.join(tables)}. Press Ctrl+C to stop.")
            await asyncio.Event().wait()

    _run(_watch())


@app.command()
def queue(
    cancel: Optional[str] = typer.Option(None, "--cancel", help="Cancel the queued op with this id."),
) -> None:
    """
    Show (or cancel entries of) the persisted offline queue.
    """
    _setup()
    settings = get_settings()
    pending = OfflineQueue(settings.offline_queue_path, settings.offline_queue_max_size)
    if cancel:
        if not pending.cancel(cancel):
            typer.echo(f"No queued op {cancel}.", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Cancelled {cancel}.")
    print_queue(pending.list())


@app.command()
def drain() -> None:
    """
    Apply queued offline writes now.
    """
    _setup()

    async def _drain() -> None:
        async with await SyncCoordinator.from_settings() as sync:
            drained = await sync.drain_queue()
            typer.echo(f"Drained {drained} queued write(s).")
            print_queue(sync.pending(), sync.dead_letters)
            print_cache_stats(sync.cache.get_stats())

    _run(_drain())


@app.command()
def migrate(
    export_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Legacy JSON export."),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Compare row counts afterwards."),
) -> None:
    """
    Import a legacy browser-storage export into the remote store.
    """
    _setup()
    try:
        export = LegacyExport.load(export_file)
    except ValueError as exc:
        raise typer.BadParameter(f"cannot read export: {exc}", param_hint="EXPORT_FILE")

    def _progress(table: str, done: int, total: int, item: str) -> None:
        if done == total or done % 50 == 0:
            typer.echo(f"{table}: {done}/{total} ({item})")

    async def _migrate() -> None:
        async with await SyncCoordinator.from_settings() as sync:
            report = await import_legacy(sync, export, progress=_progress)
            checks = await verify_integrity(sync, export) if verify else None
            print_migration_report(report, checks)

    _run(_migrate())


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
