"""
ChangeBus: per-table change subscriptions.

One remote change stream is shared by every local subscriber of a table.
Each table channel moves through

    DISCONNECTED -> CONNECTING -> SUBSCRIBED -> (ERROR | DISCONNECTED)

When a stream breaks (or the first connection fails) the channel enters
ERROR and reconnects with exponential backoff, `min(base * 2**(n-1), cap)`
seconds before attempt n. After `max_attempts` consecutive failures the
channel goes DISCONNECTED and every subscriber receives a FAILURE event
carrying PersistentSyncFailure. Subscribers stay registered; the cycle starts
over when connectivity is restored.

Callbacks run synchronously on the event loop in receipt order. A callback
that raises is logged and does not affect other subscribers.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from delivery_sync.config import Settings, get_settings
from delivery_sync.connectivity import ConnectivityMonitor
from delivery_sync.domain.models import ChangeEvent, ChangeKind
from delivery_sync.errors import PersistentSyncFailure, SyncError
from delivery_sync.infrastructure.client import Unsubscribe
from delivery_sync.store import EventCallback, RecordStore
from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    ERROR = "ERROR"


@dataclass(eq=False)
class Subscription:
    """One consumer's interest in a table's changes."""

    table: str
    callback: EventCallback
    active: bool = True
    id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(eq=False)
class _Channel:
    table: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    subscribers: List[Subscription] = field(default_factory=list)
    remote_unsubscribe: Optional[Unsubscribe] = None
    attempts: int = 0
    generation: int = 0
    last_error: Optional[BaseException] = None
    reconnect_task: Optional["asyncio.Task[None]"] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def reconnecting(self) -> bool:
        return self.reconnect_task is not None and not self.reconnect_task.done()


class ChangeBus:
    def __init__(
        self,
        store: RecordStore,
        *,
        monitor: Optional[ConnectivityMonitor] = None,
        max_attempts: int = 5,
        backoff_base: float = 2.0,
        backoff_cap: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._monitor = monitor or store.monitor
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._channels: Dict[str, _Channel] = {}
        self._remove_listener = self._monitor.add_listener(self._on_connectivity)

    @classmethod
    def from_settings(
        cls,
        store: RecordStore,
        settings: Optional[Settings] = None,
        *,
        monitor: Optional[ConnectivityMonitor] = None,
    ) -> "ChangeBus":
        settings = settings or get_settings()
        return cls(
            store,
            monitor=monitor,
            max_attempts=settings.realtime_max_reconnect_attempts,
            backoff_base=settings.realtime_backoff_base_seconds,
            backoff_cap=settings.realtime_backoff_cap_seconds,
        )

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_cap)

    def state(self, table: str) -> ConnectionState:
        channel = self._channels.get(table)
        return channel.state if channel else ConnectionState.DISCONNECTED

    # ------------------------------------------------------------ subscribers

    async def subscribe(self, table: str, callback: EventCallback) -> Subscription:
        """
        Register `callback` for changes on `table`.

        The first subscriber of a table opens the remote stream. A failed
        connection does not raise; the channel enters its reconnect cycle.
        """
        subscription = Subscription(table=table, callback=callback)
        channel = self._channels.setdefault(table, _Channel(table))
        channel.subscribers.append(subscription)
        log.debug(
            "Subscribed",
            extra={"table": table, "subscription": subscription.id, "subscribers": len(channel.subscribers)},
        )
        if channel.state == ConnectionState.DISCONNECTED and not channel.reconnecting:
            if not await self._connect(channel):
                self._start_reconnect(channel)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        channel = self._channels.get(subscription.table)
        if channel is None or subscription not in channel.subscribers:
            return
        channel.subscribers.remove(subscription)
        if not channel.subscribers:
            await self._teardown(channel)
            self._channels.pop(channel.table, None)

    def publish(self, event: ChangeEvent) -> None:
        """Fan `event` out to the local subscribers of its table."""
        channel = self._channels.get(event.table)
        if channel is not None:
            self._dispatch(channel, event)

    async def shutdown(self) -> None:
        self._remove_listener()
        for channel in list(self._channels.values()):
            for subscription in channel.subscribers:
                subscription.active = False
            channel.subscribers.clear()
            await self._teardown(channel)
        self._channels.clear()

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            table: {
                "state": channel.state.value,
                "subscribers": len(channel.subscribers),
                "attempts": channel.attempts,
            }
            for table, channel in self._channels.items()
        }

    # ---------------------------------------------------------------- channel

    def _dispatch(self, channel: _Channel, event: ChangeEvent) -> None:
        for subscription in list(channel.subscribers):
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
            except Exception:  # noqa: BLE001 - subscriber failures stay isolated
                log.exception(
                    "Change subscriber failed",
                    extra={"table": channel.table, "subscription": subscription.id},
                )

    async def _connect(self, channel: _Channel) -> bool:
        async with channel.lock:
            if channel.state == ConnectionState.SUBSCRIBED:
                return True
            channel.state = ConnectionState.CONNECTING
            channel.generation += 1
            generation = channel.generation
            try:
                unsubscribe = await self._store.watch(
                    channel.table,
                    lambda event: self._on_remote_event(channel, generation, event),
                    lambda exc: self._on_stream_error(channel, generation, exc),
                )
            except SyncError as exc:
                channel.state = ConnectionState.ERROR
                channel.last_error = exc
                log.warning(
                    "Change stream connection failed",
                    extra={"table": channel.table, "error": str(exc)},
                )
                return False

            if not channel.subscribers:
                await unsubscribe()
                channel.state = ConnectionState.DISCONNECTED
                return True
            channel.remote_unsubscribe = unsubscribe
            channel.state = ConnectionState.SUBSCRIBED
            channel.attempts = 0
            channel.last_error = None
            log.info("Change stream subscribed", extra={"table": channel.table})
            return True

    def _on_remote_event(self, channel: _Channel, generation: int, event: ChangeEvent) -> None:
        if generation == channel.generation and channel.state == ConnectionState.SUBSCRIBED:
            self._dispatch(channel, event)

    def _on_stream_error(self, channel: _Channel, generation: int, exc: BaseException) -> None:
        if generation != channel.generation or channel.state != ConnectionState.SUBSCRIBED:
            return
        log.warning("Change stream broke", extra={"table": channel.table, "error": str(exc)})
        channel.state = ConnectionState.ERROR
        channel.last_error = exc
        self._start_reconnect(channel)

    def _start_reconnect(self, channel: _Channel, *, immediate: bool = False) -> None:
        if channel.reconnecting or not channel.subscribers:
            return
        channel.reconnect_task = asyncio.create_task(self._reconnect(channel, immediate=immediate))

    async def _release_remote(self, channel: _Channel) -> None:
        unsubscribe, channel.remote_unsubscribe = channel.remote_unsubscribe, None
        if unsubscribe is None:
            return
        try:
            await unsubscribe()
        except SyncError as exc:
            log.debug("Releasing broken change stream failed", extra={"table": channel.table, "error": str(exc)})

    async def _reconnect(self, channel: _Channel, *, immediate: bool = False) -> None:
        await self._release_remote(channel)
        channel.attempts = 0
        while channel.subscribers:
            if channel.attempts >= self.max_attempts:
                self._fail(channel)
                return
            channel.attempts += 1
            if not (immediate and channel.attempts == 1):
                delay = self.backoff_delay(channel.attempts)
                log.info(
                    "Reconnecting change stream",
                    extra={"table": channel.table, "attempt": channel.attempts, "delay": delay},
                )
                await self._sleep(delay)
            if not channel.subscribers:
                return
            if await self._connect(channel):
                return

    def _fail(self, channel: _Channel) -> None:
        channel.state = ConnectionState.DISCONNECTED
        error = PersistentSyncFailure(channel.table, channel.attempts, cause=channel.last_error)
        log.error(
            "Change stream lost",
            extra={"table": channel.table, "attempts": channel.attempts, "error": str(channel.last_error)},
        )
        self._dispatch(
            channel,
            ChangeEvent(kind=ChangeKind.FAILURE, table=channel.table, error=error),
        )

    async def _teardown(self, channel: _Channel) -> None:
        task, channel.reconnect_task = channel.reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        channel.generation += 1
        await self._release_remote(channel)
        channel.state = ConnectionState.DISCONNECTED
        log.debug("Change stream closed", extra={"table": channel.table})

    def _on_connectivity(self, online: bool) -> None:
        if not online:
            return
        for channel in self._channels.values():
            if channel.state in (ConnectionState.ERROR, ConnectionState.DISCONNECTED):
                self._start_reconnect(channel, immediate=True)


__all__ = ["ChangeBus", "ConnectionState", "Subscription"]
