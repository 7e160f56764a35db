"""
Supabase REST (PostgREST) implementation of the remote client contract.

Talks to `{SUPABASE_URL}/rest/v1/<table>` with httpx. Rows are returned with
`Prefer: return=representation` so every write hands back the stored row,
including the server-assigned id and timestamps.

PostgREST has no push channel, so `on_change` polls for rows whose
`updated_at` moved past the last seen value. That feed reports inserts and
updates only; deletes are not observable this way.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from pydantic_core import to_jsonable_python

from delivery_sync.domain.models import Predicate, QueryFilter
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

_UNIQUE_VIOLATION = "23505"
_NO_ROWS = "PGRST116"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _predicate_param(predicate: Predicate) -> Tuple[str, str]:
    if predicate.op == "in":
        items = ",".join(f'"{_format_value(v)}"' for v in predicate.value)
        return predicate.field, f"in.({items})"
    if predicate.value is None and predicate.op in ("eq", "neq"):
        return predicate.field, "is.null" if predicate.op == "eq" else "not.is.null"
    return predicate.field, f"{predicate.op}.{_format_value(predicate.value)}"


def build_select_params(query: QueryFilter) -> List[Tuple[str, str]]:
    """Translate a QueryFilter into PostgREST query parameters."""
    params: List[Tuple[str, str]] = [("select", "*")]
    params.extend(_predicate_param(p) for p in query.predicates)
    if query.order_by:
        direction = "desc" if query.descending else "asc"
        params.append(("order", f"{query.order_by}.{direction}"))
        if query.cursor is not None:
            op = "lt" if query.descending else "gt"
            params.append((query.order_by, f"{op}.{_format_value(query.cursor)}"))
    if query.limit is not None:
        params.append(("limit", str(query.limit)))
    return params


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    return body if isinstance(body, dict) else {"message": str(body)}


def raise_for_response(
    response: httpx.Response, table: str, record_id: Optional[str] = None
) -> None:
    """Translate a PostgREST error response into the sync error taxonomy."""
    if response.is_success:
        return
    body = _error_body(response)
    code = str(body.get("code") or "")
    message = body.get("message") or f"HTTP {response.status_code}"
    details = body.get("details")
    if details:
        message = f"{message} ({details})"
    cause = httpx.HTTPStatusError(message, request=response.request, response=response)

    if response.status_code == 409 or code == _UNIQUE_VIOLATION:
        raise ConflictError(f"{table}: {message}", cause=cause)
    if response.status_code == 404 or code == _NO_ROWS:
        raise NotFoundError(table, record_id, cause=cause)
    if response.status_code in (400, 422):
        raise ValidationError([message], table=table, cause=cause)
    if response.status_code >= 500:
        raise NetworkError(f"{table}: server error {response.status_code}: {message}", cause=cause)
    raise SyncError(f"{table}: request rejected ({response.status_code}): {message}", cause=cause)


class RestTableClient:
    """Table-scoped PostgREST operations."""

    def __init__(self, http: httpx.AsyncClient, name: str, poll_interval: float = 5.0) -> None:
        self._http = http
        self.name = name
        self.poll_interval = poll_interval

    async def _request(
        self,
        method: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        json: Any = None,
        record_id: Optional[str] = None,
    ) -> Any:
        try:
            response = await self._http.request(method, f"/{self.name}", params=params, json=json)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{self.name}: request timed out", cause=exc) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{self.name}: {exc.__class__.__name__}: {exc}", cause=exc) from exc
        raise_for_response(response, self.name, record_id)
        if not response.content:
            return None
        return response.json()

    async def insert(self, fields: Mapping[str, Any]) -> Row:
        rows = await self._request("POST", json=to_jsonable_python(dict(fields)))
        if not rows:
            raise SyncError(f"{self.name}: insert returned no row")
        return rows[0]

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Row:
        rows = await self._request(
            "PATCH",
            params=[("id", f"eq.{record_id}")],
            json=to_jsonable_python(dict(fields)),
            record_id=record_id,
        )
        if not rows:
            raise NotFoundError(self.name, record_id)
        return rows[0]

    async def delete(self, record_id: str) -> None:
        rows = await self._request(
            "DELETE", params=[("id", f"eq.{record_id}")], record_id=record_id
        )
        if not rows:
            raise NotFoundError(self.name, record_id)

    async def select(self, query: QueryFilter) -> List[Row]:
        return list(await self._request("GET", params=build_select_params(query)) or [])

    async def _latest_update(self) -> Optional[str]:
        params = [("select", "updated_at"), ("order", "updated_at.desc"), ("limit", "1")]
        rows = await self._request("GET", params=params)
        return rows[0]["updated_at"] if rows else None

    async def _poll(self, since: Optional[str], callback: ChangeCallback, on_error: ErrorCallback) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            params: List[Tuple[str, str]] = [("select", "*"), ("order", "updated_at.asc")]
            if since is not None:
                params.append(("updated_at", f"gt.{since}"))
            try:
                rows = await self._request("GET", params=params)
            except SyncError as exc:
                log.warning(
                    "Change poll failed", extra={"table": self.name, "error": str(exc)}
                )
                on_error(exc)
                return
            for row in rows or []:
                kind = "INSERT" if row.get("created_at") == row.get("updated_at") else "UPDATE"
                callback(ChangePayload(type=kind, table=self.name, record=row, old_record=None))
                since = row.get("updated_at") or since

    async def on_change(self, callback: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        since = await self._latest_update()
        task = asyncio.create_task(self._poll(since, callback, on_error))

        async def unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return unsubscribe


class SupabaseRestClient:
    """
    RemoteClient over the Supabase REST endpoint.

    Example
    -------
        client = SupabaseRestClient(url, key)
        rows = await client.table("deliveries").select(QueryFilter(table="deliveries"))
        await client.close()
    """

    def __init__(
        self,
        url: str,
        key: str,
        *,
        schema: str = "public",
        timeout: float = 10.0,
        poll_interval: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY are required for the REST backend")
        self.base_url = f"{url.rstrip('/')}/rest/v1"
        self.poll_interval = poll_interval
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
                "Accept-Profile": schema,
                "Content-Profile": schema,
            },
            timeout=timeout,
            transport=transport,
        )

    def table(self, name: str) -> RestTableClient:
        return RestTableClient(self._http, name, poll_interval=self.poll_interval)

    async def ping(self) -> bool:
        try:
            response = await self._http.get("/")
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    async def close(self) -> None:
        await self._http.aclose()


__all__ = ["SupabaseRestClient", "RestTableClient", "build_select_params", "raise_for_response"]
