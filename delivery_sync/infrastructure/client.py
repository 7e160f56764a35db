"""
Remote client contracts.

RecordStore depends only on these protocols. Concrete implementations
(Supabase REST via httpx, direct Postgres via asyncpg) live alongside and are
selected by `infrastructure.factory.create_remote_client`. Implementations
raise the typed errors from `delivery_sync.errors` (ConflictError,
NotFoundError, NetworkError, ValidationError), never raw library exceptions.
"""

from __future__ import annotations

from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    TypedDict,
    runtime_checkable,
)

from delivery_sync.domain.models import QueryFilter

Row = Dict[str, Any]


class ChangePayload(TypedDict, total=False):
    """
    One change notification, in the shape of a Supabase realtime payload.

    `type` is INSERT, UPDATE or DELETE. DELETE payloads carry the removed row
    (or at least its id) in `old_record`.
    """

    type: str
    table: str
    record: Optional[Row]
    old_record: Optional[Row]


ChangeCallback = Callable[[ChangePayload], None]
ErrorCallback = Callable[[BaseException], None]
Unsubscribe = Callable[[], Awaitable[None]]


@runtime_checkable
class TableClient(Protocol):
    """Table-scoped operations of the remote datastore."""

    name: str

    async def insert(self, fields: Mapping[str, Any]) -> Row:
        """Insert one row and return it as stored (with id and timestamps)."""
        ...

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Row:
        """Patch one row; raises NotFoundError when no row has `record_id`."""
        ...

    async def delete(self, record_id: str) -> None:
        """Delete one row; raises NotFoundError when no row has `record_id`."""
        ...

    async def select(self, query: QueryFilter) -> List[Row]:
        """Return the rows matching `query`."""
        ...

    async def on_change(self, callback: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        """
        Start the change stream for this table.

        `callback` is invoked on the event loop for each change, in the order
        received. `on_error` is invoked once if the stream breaks; the stream
        is dead afterwards and must be reopened by the caller.
        """
        ...


@runtime_checkable
class RemoteClient(Protocol):
    def table(self, name: str) -> TableClient:
        ...

    async def ping(self) -> bool:
        """Cheap reachability check used by the connectivity monitor."""
        ...

    async def close(self) -> None:
        ...


__all__ = [
    "Row",
    "ChangePayload",
    "ChangeCallback",
    "ErrorCallback",
    "Unsubscribe",
    "TableClient",
    "RemoteClient",
]
