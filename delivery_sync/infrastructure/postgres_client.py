"""
Direct Postgres implementation of the remote client contract.

Uses an asyncpg pool for table operations and one dedicated connection per
change subscription, listening on the `<table>_changes` channel fed by the
trigger in `db/init.sql`. asyncpg errors are translated into the sync error
taxonomy here so RecordStore never sees driver exceptions.
"""

from __future__ import annotations

import contextlib
import json
from typing import Any, Iterator, List, Mapping, Optional, Tuple

import asyncpg
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from delivery_sync.domain.models import QueryFilter
from delivery_sync.domain.schema import is_identifier
from delivery_sync.errors import (
    ConflictError,
    NetworkError,
    NotFoundError,
    SyncError,
    ValidationError,
)
from delivery_sync.infrastructure.client import (
    ChangeCallback,
    ChangePayload,
    ErrorCallback,
    Row,
    Unsubscribe,
)
from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)

_SQL_OPS = {"eq": "=", "neq": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}

_CONNECTION_ERRORS = (
    OSError,
    ConnectionError,
    TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
)
_INVALID_INPUT_ERRORS = (
    asyncpg.NotNullViolationError,
    asyncpg.CheckViolationError,
    asyncpg.ForeignKeyViolationError,
    asyncpg.DataError,
    asyncpg.UndefinedColumnError,
)


def quote_ident(name: str) -> str:
    if not is_identifier(name):
        raise ValidationError([f"invalid identifier {name!r}"])
    return f'"{name}"'


@contextlib.contextmanager
def translate_errors(table: str, record_id: Optional[str] = None) -> Iterator[None]:
    """Map asyncpg / socket failures onto the sync error taxonomy."""
    try:
        yield
    except asyncpg.UniqueViolationError as exc:
        raise ConflictError(f"{table}: {getattr(exc, 'detail', None) or exc}", cause=exc) from exc
    except _INVALID_INPUT_ERRORS as exc:
        raise ValidationError([str(exc)], table=table, cause=exc) from exc
    except _CONNECTION_ERRORS as exc:
        raise NetworkError(f"{table}: {exc.__class__.__name__}: {exc}", cause=exc) from exc
    except asyncpg.PostgresError as exc:
        raise SyncError(f"{table}: {exc}", cause=exc) from exc


def build_select_sql(schema: str, query: QueryFilter) -> Tuple[str, List[Any]]:
    """Translate a QueryFilter into a parameterized SELECT."""
    args: List[Any] = []
    clauses: List[str] = []
    for predicate in query.predicates:
        column = quote_ident(predicate.field)
        if predicate.op == "in":
            args.append(list(predicate.value))
            clauses.append(f"{column} = ANY(${len(args)})")
        elif predicate.value is None and predicate.op in ("eq", "neq"):
            clauses.append(f"{column} IS {'' if predicate.op == 'eq' else 'NOT '}NULL")
        else:
            args.append(predicate.value)
            clauses.append(f"{column} {_SQL_OPS[predicate.op]} ${len(args)}")

    if query.order_by and query.cursor is not None:
        args.append(query.cursor)
        op = "<" if query.descending else ">"
        clauses.append(f"{quote_ident(query.order_by)} {op} ${len(args)}")

    sql = f"SELECT * FROM {quote_ident(schema)}.{quote_ident(query.table)}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    if query.order_by:
        sql += f" ORDER BY {quote_ident(query.order_by)} {'DESC' if query.descending else 'ASC'}"
    if query.limit is not None:
        args.append(query.limit)
        sql += f" LIMIT ${len(args)}"
    return sql, args


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )


class PostgresTableClient:
    """Table-scoped operations over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool, dsn: str, schema: str, name: str) -> None:
        self._pool = pool
        self._dsn = dsn
        self.schema = schema
        self.name = name

    @property
    def _qualified(self) -> str:
        return f"{quote_ident(self.schema)}.{quote_ident(self.name)}"

    async def insert(self, fields: Mapping[str, Any]) -> Row:
        columns = [quote_ident(c) for c in fields]
        if columns:
            placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
            sql = (
                f"INSERT INTO {self._qualified} ({', '.join(columns)}) "
                f"VALUES ({placeholders}) RETURNING *"
            )
        else:
            sql = f"INSERT INTO {self._qualified} DEFAULT VALUES RETURNING *"
        with translate_errors(self.name):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(sql, *fields.values())
        return dict(row)

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Row:
        if fields:
            assignments = ", ".join(
                f"{quote_ident(c)} = ${i}" for i, c in enumerate(fields, start=1)
            )
            sql = (
                f"UPDATE {self._qualified} SET {assignments} "
                f"WHERE id = ${len(fields) + 1} RETURNING *"
            )
            args = [*fields.values(), record_id]
        else:
            sql = f"SELECT * FROM {self._qualified} WHERE id = $1"
            args = [record_id]
        with translate_errors(self.name, record_id):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(sql, *args)
        if row is None:
            raise NotFoundError(self.name, record_id)
        return dict(row)

    async def delete(self, record_id: str) -> None:
        sql = f"DELETE FROM {self._qualified} WHERE id = $1 RETURNING id"
        with translate_errors(self.name, record_id):
            async with self._pool.acquire() as conn:
                deleted = await conn.fetchval(sql, record_id)
        if deleted is None:
            raise NotFoundError(self.name, record_id)

    async def select(self, query: QueryFilter) -> List[Row]:
        sql, args = build_select_sql(self.schema, query)
        with translate_errors(self.name):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)
        return [dict(row) for row in rows]

    async def on_change(self, callback: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        channel = f"{self.name}_changes"
        with translate_errors(self.name):
            conn = await asyncpg.connect(self._dsn)

        def _listener(connection: Any, pid: int, channel_name: str, payload: str) -> None:
            try:
                data = json.loads(payload)
            except ValueError:
                log.warning(
                    "Discarding malformed change payload",
                    extra={"table": self.name, "payload": payload[:200]},
                )
                return
            callback(
                ChangePayload(
                    type=data.get("type", ""),
                    table=self.name,
                    record=data.get("record"),
                    old_record=data.get("old_record"),
                )
            )

        def _terminated(connection: Any) -> None:
            on_error(NetworkError(f"{self.name}: change stream connection closed"))

        conn.add_termination_listener(_terminated)
        with translate_errors(self.name):
            await conn.add_listener(channel, _listener)

        async def unsubscribe() -> None:
            conn.remove_termination_listener(_terminated)
            if conn.is_closed():
                return
            try:
                await conn.remove_listener(channel, _listener)
                await conn.close()
            except _CONNECTION_ERRORS:
                conn.terminate()  # connection already broken

        return unsubscribe


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((OSError, ConnectionError, asyncpg.CannotConnectNowError)),
    reraise=True,
)
async def create_pool(dsn: str, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """
    Create an asyncpg pool with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection errors.
    """
    return await asyncpg.create_pool(
        dsn, min_size=min_size, max_size=max_size, init=_init_connection
    )


class PostgresClient:
    """
    RemoteClient over a direct Postgres connection.

    Example
    -------
        client = await PostgresClient(dsn).open()
        row = await client.table("customers").insert({"name": "ACME", "phone": "555"})
        await client.close()
    """

    def __init__(self, dsn: str, *, schema: str = "public", min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.schema = schema
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def open(self) -> "PostgresClient":
        if self._pool is None:
            with translate_errors("pool"):
                self._pool = await create_pool(self.dsn, self._min_size, self._max_size)
        return self

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgresClient.open() must be awaited first")
        return self._pool

    def table(self, name: str) -> PostgresTableClient:
        return PostgresTableClient(self.pool, self.dsn, self.schema, name)

    async def ping(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except (*_CONNECTION_ERRORS, asyncpg.PostgresError):
            return False
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


__all__ = [
    "PostgresClient",
    "PostgresTableClient",
    "build_select_sql",
    "create_pool",
    "quote_ident",
    "translate_errors",
]
