"""
RecordStore: typed CRUD facade over the remote table client.

The only component that talks to the remote client. Payloads are normalized
and validated here before any network call; remote rows are decoded into
Records on the way back. Retries use tenacity and apply to transient
NetworkError only:

- `query` / `get`: up to `query_max_attempts` attempts, exponential backoff
- writes: at most `write_max_attempts` attempts
- ConflictError, ValidationError, NotFoundError and OfflineError: never retried

Every remote call is bounded by `timeout`; expiry surfaces as NetworkError.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, TypeVar, Union

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from delivery_sync.config import Settings, get_settings
from delivery_sync.connectivity import ConnectivityMonitor
from delivery_sync.domain.models import (
    ChangeEvent,
    ChangeKind,
    Predicate,
    QueryFilter,
    Record,
)
from delivery_sync.domain.schema import (
    SERVER_MANAGED_FIELDS,
    CleanFields,
    clean_fields,
    coerce_filter_value,
    get_schema,
    to_snake,
)
from delivery_sync.domain.status import RecordStatus, parse_status
from delivery_sync.errors import NetworkError, OfflineError, SyncError, ValidationError
from delivery_sync.infrastructure.client import (
    ChangePayload,
    ErrorCallback,
    RemoteClient,
    TableClient,
    Unsubscribe,
)
from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")
_DATETIME = TypeAdapter(datetime)
Payload = Union[Mapping[str, Any], CleanFields]
EventCallback = Callable[[ChangeEvent], None]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, NetworkError) and not isinstance(exc, OfflineError)


class RecordStore:
    """
    Example
    -------
        store = RecordStore(client, monitor=ConnectivityMonitor())
        record = await store.insert("deliveries", {"drNumber": "DR-001"})
        rows = await store.query("deliveries", QueryFilter.build("deliveries", {"ref": "DR-001"}))
    """

    def __init__(
        self,
        client: RemoteClient,
        *,
        monitor: Optional[ConnectivityMonitor] = None,
        timeout: float = 10.0,
        query_max_attempts: int = 3,
        write_max_attempts: int = 2,
        backoff_base: float = 0.3,
        backoff_max: float = 5.0,
    ) -> None:
        self.client = client
        self.monitor = monitor or ConnectivityMonitor()
        self.timeout = timeout
        self.query_max_attempts = query_max_attempts
        self.write_max_attempts = write_max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @classmethod
    def from_settings(
        cls,
        client: RemoteClient,
        settings: Optional[Settings] = None,
        *,
        monitor: Optional[ConnectivityMonitor] = None,
    ) -> "RecordStore":
        settings = settings or get_settings()
        return cls(
            client,
            monitor=monitor,
            timeout=settings.request_timeout_seconds,
            query_max_attempts=settings.query_max_attempts,
            write_max_attempts=settings.write_max_attempts,
            backoff_base=settings.query_backoff_base_seconds,
        )

    # ----------------------------------------------------------------- ingress

    def prepare(self, table: str, fields: Mapping[str, Any], *, partial: bool = False) -> CleanFields:
        """
        Normalize and validate `fields` for `table`.

        Inserts (`partial=False`) into a table with a lifecycle status default
        to Active when no status is given.
        """
        clean = clean_fields(table, fields, partial=partial)
        if not partial and clean.status is None and get_schema(table).status_field:
            clean = CleanFields(fields=clean.fields, status=RecordStatus.ACTIVE)
        return clean

    def coerce_filter(self, query: QueryFilter) -> QueryFilter:
        """Copy of `query` with predicate operands and cursor in column types."""
        table = query.table
        predicates = []
        for predicate in query.predicates:
            if predicate.op == "in":
                value: Any = [coerce_filter_value(table, predicate.field, v) for v in predicate.value]
            else:
                value = coerce_filter_value(table, predicate.field, predicate.value)
            predicates.append(predicate.model_copy(update={"value": value}))
        cursor = query.cursor
        if cursor is not None and query.order_by:
            cursor = coerce_filter_value(table, query.order_by, cursor)
        return query.model_copy(update={"predicates": tuple(predicates), "cursor": cursor})

    def _payload(self, table: str, clean: CleanFields) -> Dict[str, Any]:
        payload = dict(clean.fields)
        status_field = get_schema(table).status_field
        if status_field and clean.status is not None:
            payload[status_field] = clean.status.value
        return payload

    # ------------------------------------------------------------------ egress

    def decode_row(self, table: str, row: Mapping[str, Any]) -> Record:
        """Build a Record from a remote row."""
        status_field = get_schema(table).status_field
        fields: Dict[str, Any] = {}
        status: Optional[RecordStatus] = None
        for raw_name, value in row.items():
            name = to_snake(str(raw_name))
            if name in SERVER_MANAGED_FIELDS:
                continue
            if status_field and name == status_field:
                try:
                    status = parse_status(value)
                except ValueError:
                    log.warning(
                        "Unknown status in remote row",
                        extra={"table": table, "id": row.get("id"), "status": value},
                    )
                continue
            fields[name] = value
        record_id = row.get("id")
        return Record(
            id=str(record_id) if record_id is not None else None,
            table=table,
            fields=fields,
            status=status,
            created_at=_as_datetime(row.get("created_at")),
            updated_at=_as_datetime(row.get("updated_at")),
        )

    def decode_change(self, table: str, payload: ChangePayload) -> ChangeEvent:
        kind = ChangeKind(str(payload.get("type", "")).upper())
        if kind == ChangeKind.DELETE:
            old = payload.get("old_record") or {}
            record_id = old.get("id")
            return ChangeEvent(
                kind=kind, table=table, record_id=str(record_id) if record_id is not None else None
            )
        record = self.decode_row(table, payload.get("record") or {})
        return ChangeEvent(kind=kind, table=table, record=record, record_id=record.id)

    # -------------------------------------------------------------- remote I/O

    def _ensure_online(self) -> None:
        if not self.monitor.is_online:
            raise OfflineError("remote store unreachable: connectivity reported offline")

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"{operation} timed out after {self.timeout}s", cause=exc) from exc

    async def _call(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        attempts: int,
    ) -> T:
        self._ensure_online()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_transient),
            before_sleep=lambda state: _log_retry_for(operation, state),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                self._ensure_online()
                return await self._bounded(operation, call())
        raise AssertionError("unreachable")  # pragma: no cover

    def _table(self, table: str) -> TableClient:
        if not table:
            raise ValidationError(["table name is required"])
        return self.client.table(table)

    async def insert(self, table: str, fields: Payload) -> Record:
        clean = fields if isinstance(fields, CleanFields) else self.prepare(table, fields)
        payload = self._payload(table, clean)
        client = self._table(table)
        row = await self._call(
            f"insert {table}", lambda: client.insert(payload), self.write_max_attempts
        )
        record = self.decode_row(table, row)
        log.debug("Inserted record", extra={"table": table, "id": record.id})
        return record

    async def update(self, table: str, record_id: str, fields: Payload) -> Record:
        if not record_id:
            raise ValidationError(["record id is required for update"], table=table)
        clean = fields if isinstance(fields, CleanFields) else self.prepare(table, fields, partial=True)
        payload = self._payload(table, clean)
        client = self._table(table)
        row = await self._call(
            f"update {table}", lambda: client.update(record_id, payload), self.write_max_attempts
        )
        return self.decode_row(table, row)

    async def delete(self, table: str, record_id: str) -> None:
        if not record_id:
            raise ValidationError(["record id is required for delete"], table=table)
        client = self._table(table)
        await self._call(f"delete {table}", lambda: client.delete(record_id), self.write_max_attempts)
        log.debug("Deleted record", extra={"table": table, "id": record_id})

    async def query(
        self,
        table: str,
        query: Optional[QueryFilter] = None,
        *,
        attempts: Optional[int] = None,
    ) -> Tuple[Record, ...]:
        """
        Read the records matching `query`. One page; see QueryFilter.next_page.

        Filter operands are converted to the column types first, so string
        values such as "2024-05-01" compare as dates; an operand that does not
        fit its column raises ValidationError before any network call.
        `attempts` overrides `query_max_attempts` for this call.
        """
        query = query or QueryFilter(table=table)
        if query.table != table:
            raise ValueError(f"filter is for table {query.table!r}, not {table!r}")
        query = self.coerce_filter(query)
        client = self._table(table)
        rows = await self._call(
            f"query {table}", lambda: client.select(query), attempts or self.query_max_attempts
        )
        return tuple(self.decode_row(table, row) for row in rows)

    async def get(self, table: str, record_id: str) -> Optional[Record]:
        query = QueryFilter(table=table, predicates=(Predicate(field="id", value=record_id),), limit=1)
        records = await self.query(table, query)
        return records[0] if records else None

    async def watch(self, table: str, on_event: EventCallback, on_error: ErrorCallback) -> Unsubscribe:
        """
        Open the remote change stream for `table`.

        Rows are decoded into ChangeEvents before `on_event` sees them. Not
        retried: reconnection belongs to the ChangeBus.
        """
        self._ensure_online()
        client = self._table(table)

        def _on_payload(payload: ChangePayload) -> None:
            try:
                event = self.decode_change(table, payload)
            except (ValueError, SyncError) as exc:
                log.warning(
                    "Skipping undecodable change payload",
                    extra={"table": table, "type": payload.get("type"), "error": str(exc)},
                )
                return
            on_event(event)

        return await self._bounded(f"watch {table}", client.on_change(_on_payload, on_error))


def _log_retry_for(operation: str, retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "Remote call failed, retrying",
        extra={"operation": operation, "attempt": retry_state.attempt_number, "error": str(exc)},
    )


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return _DATETIME.validate_python(value)
    except PydanticValidationError:
        return None


__all__ = ["RecordStore", "EventCallback", "Payload"]
