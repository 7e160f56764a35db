"""
SyncCoordinator: the public entry point of the sync layer.

    async with await SyncCoordinator.from_settings() as sync:
        record = await sync.save("deliveries", {"ref": "DR-001", "status": "Active"})
        rows = await sync.get("deliveries", {"ref": "DR-001"})

Reads are cache-first. Writes go through RecordStore, invalidate every cached
query of the table and are published to same-process subscribers.

Writes to one (table, id) are serialized FIFO. A write that has started runs
to completion even if its caller is cancelled; a caller cancelled while still
waiting for its turn never writes.

While the connectivity monitor reports offline, and for as long as earlier
offline writes are still pending, writes go to the OfflineQueue and come back
as Records with `pending_op_id` set. The queue drains in order when the
monitor reports online.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    TypeVar,
    Union,
)

from delivery_sync.cache import Cache, table_prefix
from delivery_sync.changes import ChangeBus, Subscription
from delivery_sync.config import Settings, get_settings
from delivery_sync.connectivity import ConnectivityMonitor
from delivery_sync.domain.models import (
    ChangeEvent,
    ChangeKind,
    ChangeOrigin,
    QueryFilter,
    QueryResult,
    Record,
)
from delivery_sync.domain.schema import CleanFields, get_schema
from delivery_sync.domain.status import is_transition_allowed
from delivery_sync.errors import (
    InvalidTransition,
    NetworkError,
    NotFoundError,
    OfflineError,
    SyncError,
    ValidationError,
)
from delivery_sync.infrastructure.client import RemoteClient
from delivery_sync.infrastructure.factory import create_remote_client
from delivery_sync.queue import OfflineQueue, QueuedWrite
from delivery_sync.store import EventCallback, RecordStore
from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")
FilterLike = Union[QueryFilter, Mapping[str, Any], None]
RecordLike = Union[Record, Mapping[str, Any]]


@dataclass
class DeadLetter:
    """A queued write the remote rejected for good."""

    op: QueuedWrite
    error: SyncError
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(eq=False)
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SyncCoordinator:
    def __init__(
        self,
        store: RecordStore,
        *,
        cache: Optional[Cache] = None,
        bus: Optional[ChangeBus] = None,
        queue: Optional[OfflineQueue] = None,
        owned_client: Optional[RemoteClient] = None,
    ) -> None:
        self.store = store
        self.monitor: ConnectivityMonitor = store.monitor
        self.cache = cache if cache is not None else Cache()
        self.bus = bus if bus is not None else ChangeBus(store)
        self.queue = queue if queue is not None else OfflineQueue()
        self._owned_client = owned_client
        self._locks: Dict[Tuple[str, str], _KeyLock] = {}
        self._table_versions: Dict[str, int] = {}
        self._refreshing: Set[str] = set()
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._drain_lock = asyncio.Lock()
        self._dead_letters: List[DeadLetter] = []
        self._monitor_task: Optional["asyncio.Task[None]"] = None
        self._closed = False
        self._remove_listener = self.monitor.add_listener(self._on_connectivity)

    @classmethod
    async def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        client: Optional[RemoteClient] = None,
        monitor: Optional[ConnectivityMonitor] = None,
        monitor_connectivity: bool = False,
    ) -> "SyncCoordinator":
        """
        Build a coordinator wired from Settings.

        Parameters
        ----------
        settings : Settings, optional
            Defaults to `get_settings()`.
        client : RemoteClient, optional
            Remote client to use. When omitted one is created from settings and
            closed by `close()`.
        monitor : ConnectivityMonitor, optional
            Shared connectivity signal; a new one (online) by default.
        monitor_connectivity : bool
            Start a background task pinging the remote every
            `connectivity_check_interval_seconds` to drive the monitor.
        """
        settings = settings or get_settings()
        owned = None
        if client is None:
            client = owned = await create_remote_client(settings)
        monitor = monitor or ConnectivityMonitor()
        store = RecordStore.from_settings(client, settings, monitor=monitor)
        coordinator = cls(
            store,
            cache=Cache(ttl=settings.cache_ttl_seconds),
            bus=ChangeBus.from_settings(store, settings, monitor=monitor),
            queue=OfflineQueue(settings.offline_queue_path, settings.offline_queue_max_size),
            owned_client=owned,
        )
        if monitor_connectivity:
            coordinator.start_monitoring(settings.connectivity_check_interval_seconds)
        return coordinator

    async def __aenter__(self) -> "SyncCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------ reads

    async def get(self, table: str, query: FilterLike = None) -> QueryResult:
        """
        Records of `table` matching `query`, cache first.

        When the remote cannot be read the last cached value is returned with
        `stale=True`. With such a value to fall back on only one attempt is
        made; the retried read runs as a background refresh (never while
        offline). With nothing cached the error propagates after the full
        retry budget.

        Returned records are copies; mutating them never changes the cache.
        """
        query = self._as_filter(table, query)
        key = query.cache_key()
        cached = self.cache.get(key)
        if cached is not None:
            return QueryResult(records=_detached(cached), from_cache=True)

        version = self._table_versions.get(table, 0)
        attempts = 1 if self.cache.get_stale(key) is not None else None
        try:
            records = await self.store.query(table, query, attempts=attempts)
        except NetworkError as exc:
            stale = self.cache.get_stale(key)
            if stale is None:
                raise
            log.warning(
                "Serving stale cached records",
                extra={"table": table, "key": key, "error": str(exc)},
            )
            if not isinstance(exc, OfflineError):
                self._schedule_refresh(table, query)
            return QueryResult(records=_detached(stale), stale=True, from_cache=True)

        self._remember(table, version, key, records)
        return QueryResult(records=records)

    def _remember(self, table: str, version: int, key: str, records: Tuple[Record, ...]) -> None:
        # A write landed while this read was in flight; its result may predate it.
        if self._table_versions.get(table, 0) == version:
            self.cache.set(key, _detached(records))

    def _schedule_refresh(self, table: str, query: QueryFilter) -> None:
        key = query.cache_key()
        if key in self._refreshing:
            return
        self._refreshing.add(key)
        self._spawn(self._refresh(table, query, key))

    async def _refresh(self, table: str, query: QueryFilter, key: str) -> None:
        version = self._table_versions.get(table, 0)
        try:
            records = await self.store.query(table, query)
        except SyncError as exc:
            log.warning("Background refresh failed", extra={"table": table, "key": key, "error": str(exc)})
            return
        finally:
            self._refreshing.discard(key)
        self._remember(table, version, key, records)
        log.debug("Background refresh succeeded", extra={"table": table, "records": len(records)})

    # ----------------------------------------------------------------- writes

    async def save(self, table: str, record: RecordLike) -> Record:
        """
        Insert (no id) or update (with id) one record.

        Raises
        ------
        ValidationError
            Before any network call, for malformed or missing fields.
        InvalidTransition
            When the status change is not allowed from the stored status.
        NotFoundError
            When updating an id that does not exist.
        ConflictError, NetworkError
            From the remote store.
        QueueFullError
            When offline and the offline queue is full.
        """
        record_id, fields = _split_record(record)
        clean = self.store.prepare(table, fields, partial=record_id is not None)

        if self._should_queue():
            return self._enqueue(
                QueuedWrite(
                    kind="save",
                    table=table,
                    record_id=record_id,
                    fields=clean.fields,
                    status=clean.status,
                )
            )
        return await self._exclusive(table, record_id, lambda: self._apply_save(table, record_id, clean))

    async def delete(self, table: str, record_id: str) -> None:
        if not record_id:
            raise ValidationError(["record id is required for delete"], table=table)
        if self._should_queue():
            self._enqueue(QueuedWrite(kind="delete", table=table, record_id=record_id))
            return
        await self._exclusive(table, record_id, lambda: self._apply_delete(table, record_id))

    async def _apply_save(self, table: str, record_id: Optional[str], clean: CleanFields) -> Record:
        if record_id is None:
            record = await self.store.insert(table, clean)
            kind = ChangeKind.INSERT
        else:
            await self._check_transition(table, record_id, clean)
            record = await self.store.update(table, record_id, clean)
            kind = ChangeKind.UPDATE
        self._written(ChangeEvent(kind=kind, table=table, record=record, record_id=record.id, origin=ChangeOrigin.LOCAL))
        return record

    async def _apply_delete(self, table: str, record_id: str) -> None:
        await self.store.delete(table, record_id)
        self._written(
            ChangeEvent(kind=ChangeKind.DELETE, table=table, record_id=record_id, origin=ChangeOrigin.LOCAL)
        )

    async def _check_transition(self, table: str, record_id: str, clean: CleanFields) -> None:
        if clean.status is None or not get_schema(table).status_field:
            return
        current = await self.store.get(table, record_id)
        if current is None:
            raise NotFoundError(table, record_id)
        if not is_transition_allowed(current.status, clean.status):
            raise InvalidTransition(
                table,
                record_id,
                current.status.value if current.status else "None",
                clean.status.value,
            )

    def _invalidate(self, table: str) -> None:
        self._table_versions[table] = self._table_versions.get(table, 0) + 1
        self.cache.invalidate(table_prefix(table))

    def _written(self, event: ChangeEvent) -> None:
        self._invalidate(event.table)
        self.bus.publish(event)

    async def _exclusive(
        self, table: str, record_id: Optional[str], operation: Callable[[], Awaitable[T]]
    ) -> T:
        if record_id is None:
            return await asyncio.shield(self._spawn(operation()))

        key = (table, record_id)
        entry = self._locks.setdefault(key, _KeyLock())
        entry.users += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._release_user(key, entry)
            raise
        return await asyncio.shield(self._spawn(self._locked(key, entry, operation)))

    async def _locked(self, key: Tuple[str, str], entry: _KeyLock, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            entry.lock.release()
            self._release_user(key, entry)

    def _release_user(self, key: Tuple[str, str], entry: _KeyLock) -> None:
        entry.users -= 1
        if entry.users == 0 and self._locks.get(key) is entry:
            del self._locks[key]

    # ---------------------------------------------------------- offline queue

    def _should_queue(self) -> bool:
        return not self.monitor.is_online or len(self.queue) > 0

    def _enqueue(self, op: QueuedWrite) -> Record:
        self.queue.append(op)
        if self.monitor.is_online:
            self._spawn(self.drain_queue())
        return Record(
            id=op.record_id,
            table=op.table,
            fields=op.fields,
            status=op.status,
            pending_op_id=op.op_id,
        )

    def pending(self) -> List[QueuedWrite]:
        return self.queue.list()

    def cancel_pending(self, op_id: str) -> bool:
        """Drop a queued write that has not been applied yet."""
        return self.queue.cancel(op_id)

    @property
    def dead_letters(self) -> List[DeadLetter]:
        return list(self._dead_letters)

    async def drain_queue(self) -> int:
        """
        Apply queued writes in order while online. Returns how many left the
        queue (applied or dead-lettered).
        """
        drained = 0
        async with self._drain_lock:
            while self.monitor.is_online:
                op = self.queue.peek()
                if op is None:
                    break
                try:
                    await self._apply_queued(op)
                except NetworkError as exc:
                    log.warning(
                        "Queue drain interrupted",
                        extra={"op_id": op.op_id, "table": op.table, "error": str(exc)},
                    )
                    break
                except NotFoundError as exc:
                    if op.kind == "delete":
                        self._invalidate(op.table)
                    else:
                        self._dead_letter(op, exc)
                except SyncError as exc:
                    self._dead_letter(op, exc)
                self.queue.pop(op.op_id)
                drained += 1
        if drained:
            log.info("Drained offline queue", extra={"drained": drained, "pending": len(self.queue)})
        return drained

    async def _apply_queued(self, op: QueuedWrite) -> None:
        if op.kind == "delete":
            await self._exclusive(op.table, op.record_id, lambda: self._apply_delete(op.table, op.record_id))
            return
        payload = dict(op.fields)
        status_field = get_schema(op.table).status_field
        if status_field and op.status is not None:
            payload[status_field] = op.status.value
        clean = self.store.prepare(op.table, payload, partial=op.record_id is not None)
        await self._exclusive(op.table, op.record_id, lambda: self._apply_save(op.table, op.record_id, clean))

    def _dead_letter(self, op: QueuedWrite, error: SyncError) -> None:
        self._dead_letters.append(DeadLetter(op=op, error=error))
        log.error(
            "Queued write rejected",
            extra={
                "op_id": op.op_id,
                "kind": op.kind,
                "table": op.table,
                "id": op.record_id,
                "error": str(error),
            },
        )

    def _on_connectivity(self, online: bool) -> None:
        if online and len(self.queue) and not self._closed:
            self._spawn(self.drain_queue())

    def start_monitoring(self, interval: float) -> None:
        if self._monitor_task is None:
            self._monitor_task = asyncio.create_task(self.monitor.watch(self.store.client.ping, interval))

    # ---------------------------------------------------------- subscriptions

    async def subscribe(self, table: str, callback: EventCallback) -> Subscription:
        return await self.bus.subscribe(table, callback)

    async def unsubscribe(self, subscription: Subscription) -> None:
        await self.bus.unsubscribe(subscription)

    # -------------------------------------------------------------- lifecycle

    def _spawn(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.debug("Background operation failed", extra={"error": str(task.exception())})

    async def wait_idle(self) -> None:
        """Wait for background refreshes, drains, detached writes and queue file writes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.queue.flush()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._remove_listener()
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None
        await self.wait_idle()
        await self.bus.shutdown()
        if self._owned_client is not None:
            await self._owned_client.close()
        log.debug("Coordinator closed", extra={"pending": len(self.queue)})

    def _as_filter(self, table: str, query: FilterLike) -> QueryFilter:
        if isinstance(query, QueryFilter):
            if query.table != table:
                raise ValueError(f"filter is for table {query.table!r}, not {table!r}")
            return query
        return QueryFilter.build(table, query)


def _split_record(record: RecordLike) -> Tuple[Optional[str], Dict[str, Any]]:
    if isinstance(record, Record):
        fields = dict(record.fields)
        if record.status is not None:
            fields["status"] = record.status.value
        return record.id, fields
    fields = dict(record)
    record_id = fields.pop("id", None)
    return (str(record_id) if record_id not in (None, "") else None), fields


def _detached(records: Tuple[Record, ...]) -> Tuple[Record, ...]:
    """Copies of `records` whose field dicts share nothing with the originals."""
    return tuple(record.model_copy(update={"fields": copy.deepcopy(record.fields)}) for record in records)


__all__ = ["SyncCoordinator", "DeadLetter", "FilterLike", "RecordLike"]
