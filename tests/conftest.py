"""
Pytest configuration for delivery-sync.

Provides fixtures for:
- An in-memory remote client with failure injection and a change stream
- RecordStore / ChangeBus / SyncCoordinator wired with zero backoff
- A controllable clock for cache expiry
- Database connection management for Postgres integration tests
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Generator,
    List,
    Mapping,
    Optional,
    Tuple,
)
from uuid import uuid4

import psycopg
import pytest
import pytest_asyncio

from delivery_sync.cache import Cache
from delivery_sync.changes import ChangeBus
from delivery_sync.config import Settings
from delivery_sync.connectivity import ConnectivityMonitor
from delivery_sync.coordinator import SyncCoordinator
from delivery_sync.domain.models import QueryFilter
from delivery_sync.errors import ConflictError, NetworkError, NotFoundError
from delivery_sync.infrastructure.client import ChangeCallback, ChangePayload, ErrorCallback, Row
from delivery_sync.queue import OfflineQueue
from delivery_sync.store import RecordStore

# Columns with a uniqueness constraint, per table.
UNIQUE_COLUMNS = {"deliveries": "dr_number"}

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeRemoteClient:
    """
    In-memory stand-in for the Supabase/Postgres remote.

    `fail(op, exc, times)` makes the next `times` calls of `op` (insert,
    update, delete, select, on_change) raise `exc`. `latency` adds a
    suspension before every operation. Every attempted call is recorded in
    `calls` as (op, table, argument).
    """

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Row]] = {}
        self.listeners: Dict[str, List[Tuple[ChangeCallback, ErrorCallback]]] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.latency = 0.0
        self.reachable = True
        self.closed = False
        self._failures: Dict[str, List[BaseException]] = {}
        self._tick = 0

    def table(self, name: str) -> "FakeTableClient":
        return FakeTableClient(self, name)

    async def ping(self) -> bool:
        return self.reachable

    async def close(self) -> None:
        self.closed = True

    def fail(self, op: str, exc: BaseException, times: int = 1) -> None:
        self._failures.setdefault(op, []).extend([exc] * times)

    def rows(self, table: str) -> List[Row]:
        return list(self.tables.get(table, {}).values())

    def count(self, op: str, table: Optional[str] = None) -> int:
        return sum(1 for name, tbl, _ in self.calls if name == op and (table is None or tbl == table))

    def seed(self, table: str, **fields: Any) -> Row:
        """Store a row directly, bypassing failures and change events."""
        stamp = self._timestamp()
        row = {"id": str(uuid4()), "created_at": stamp, "updated_at": stamp, **fields}
        self.tables.setdefault(table, {})[row["id"]] = row
        return dict(row)

    def subscriber_count(self, table: str) -> int:
        return len(self.listeners.get(table, []))

    def break_streams(self, table: str, exc: Optional[BaseException] = None) -> None:
        """Drop every change stream of `table`, reporting `exc` to each."""
        for _, on_error in self.listeners.pop(table, []):
            on_error(exc or NetworkError(f"{table}: stream dropped"))

    def _timestamp(self) -> datetime:
        self._tick += 1
        return _EPOCH + timedelta(milliseconds=self._tick)

    async def _enter(self, op: str, table: str, argument: Any = None) -> None:
        self.calls.append((op, table, argument))
        if self.latency:
            await asyncio.sleep(self.latency)
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    def _emit(self, table: str, payload: ChangePayload) -> None:
        for callback, _ in list(self.listeners.get(table, [])):
            callback(payload)


def _matches(row: Mapping[str, Any], query: QueryFilter) -> bool:
    for predicate in query.predicates:
        value = row.get(predicate.field)
        target = predicate.value
        if predicate.op == "eq":
            ok = value == target
        elif predicate.op == "neq":
            ok = value != target
        elif predicate.op == "in":
            ok = value in target
        elif value is None or target is None:
            ok = False
        elif predicate.op == "gt":
            ok = value > target
        elif predicate.op == "gte":
            ok = value >= target
        elif predicate.op == "lt":
            ok = value < target
        else:
            ok = value <= target
        if not ok:
            return False
    if query.order_by and query.cursor is not None:
        value = row.get(query.order_by)
        if value is None:
            return False
        return value < query.cursor if query.descending else value > query.cursor
    return True


class FakeTableClient:
    def __init__(self, remote: FakeRemoteClient, name: str) -> None:
        self.remote = remote
        self.name = name

    @property
    def _rows(self) -> Dict[str, Row]:
        return self.remote.tables.setdefault(self.name, {})

    async def insert(self, fields: Mapping[str, Any]) -> Row:
        await self.remote._enter("insert", self.name, dict(fields))
        unique = UNIQUE_COLUMNS.get(self.name)
        if unique and any(row.get(unique) == fields.get(unique) for row in self._rows.values()):
            raise ConflictError(f"{self.name}: duplicate {unique} {fields.get(unique)!r}")
        stamp = self.remote._timestamp()
        row = {"id": str(uuid4()), **fields, "created_at": stamp, "updated_at": stamp}
        self._rows[row["id"]] = row
        self.remote._emit(self.name, ChangePayload(type="INSERT", table=self.name, record=dict(row), old_record=None))
        return dict(row)

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Row:
        await self.remote._enter("update", self.name, (record_id, dict(fields)))
        row = self._rows.get(record_id)
        if row is None:
            raise NotFoundError(self.name, record_id)
        old = dict(row)
        row.update(fields)
        row["updated_at"] = self.remote._timestamp()
        self.remote._emit(self.name, ChangePayload(type="UPDATE", table=self.name, record=dict(row), old_record=old))
        return dict(row)

    async def delete(self, record_id: str) -> None:
        await self.remote._enter("delete", self.name, record_id)
        row = self._rows.pop(record_id, None)
        if row is None:
            raise NotFoundError(self.name, record_id)
        self.remote._emit(self.name, ChangePayload(type="DELETE", table=self.name, record=None, old_record=row))

    async def select(self, query: QueryFilter) -> List[Row]:
        await self.remote._enter("select", self.name, query)
        rows = [dict(row) for row in self._rows.values() if _matches(row, query)]
        if query.order_by:
            present = [row for row in rows if row.get(query.order_by) is not None]
            missing = [row for row in rows if row.get(query.order_by) is None]
            present.sort(key=lambda row: row[query.order_by], reverse=query.descending)
            rows = present + missing
        if query.limit is not None:
            rows = rows[: query.limit]
        return rows

    async def on_change(self, callback: ChangeCallback, on_error: ErrorCallback):
        await self.remote._enter("on_change", self.name)
        entry = (callback, on_error)
        self.remote.listeners.setdefault(self.name, []).append(entry)

        async def unsubscribe() -> None:
            listeners = self.remote.listeners.get(self.name, [])
            if entry in listeners:
                listeners.remove(entry)

        return unsubscribe


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _eventually(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Yield to the event loop until `condition()` holds."""
    return _eventually


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(remote: FakeRemoteClient, monitor: ConnectivityMonitor) -> RecordStore:
    return RecordStore(remote, monitor=monitor, timeout=1.0, backoff_base=0)


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by the ChangeBus reconnect loop."""
    return []


@pytest_asyncio.fixture
async def bus(store: RecordStore, sleeps: List[float]) -> AsyncIterator[ChangeBus]:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    change_bus = ChangeBus(store, sleep=fake_sleep)
    yield change_bus
    await change_bus.shutdown()


@pytest.fixture
def cache(clock: FakeClock) -> Cache:
    return Cache(ttl=60, clock=clock)


@pytest_asyncio.fixture
async def sync(store: RecordStore, cache: Cache, bus: ChangeBus) -> AsyncIterator[SyncCoordinator]:
    coordinator = SyncCoordinator(store, cache=cache, bus=bus, queue=OfflineQueue())
    yield coordinator
    await coordinator.close()


# --------------------------------------------------------------- integration


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        backend="postgres",
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "postgres"),
        log_level="DEBUG",
        offline_queue_path=None,
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.OperationalError:
        return False


@pytest.fixture(scope="session")
def db_connection(
    test_dsn: str, db_connection_available: bool
) -> Generator[psycopg.Connection, None, None]:
    """
    Provide a session-scoped database connection for integration tests.

    Skips tests if database is not available.
    """
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")

    conn = psycopg.connect(test_dsn)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture(scope="session")
def db_schema_initialized(db_connection: psycopg.Connection) -> bool:
    """
    Ensure the delivery tables and change triggers exist (db/init.sql is idempotent).
    """
    init_sql_path = os.path.join(os.path.dirname(__file__), os.pardir, "db", "init.sql")
    with open(init_sql_path, "r", encoding="utf-8") as f:
        sql = f.read()
    with db_connection.cursor() as cur:
        cur.execute(sql)
    db_connection.commit()
    return True


@pytest.fixture(scope="function")
def clean_tables(db_connection: psycopg.Connection, db_schema_initialized: bool):
    """
    Empty the delivery tables before and after each test function.
    """
    statement = "TRUNCATE TABLE public.deliveries, public.customers, public.epod_records;"
    with db_connection.cursor() as cur:
        cur.execute(statement)
    db_connection.commit()
    yield
    with db_connection.cursor() as cur:
        cur.execute(statement)
    db_connection.commit()
