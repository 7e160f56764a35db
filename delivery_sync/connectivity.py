"""
Online/offline signal.

Connectivity is tracked explicitly rather than inferred from request
timeouts: the state changes through `set_online()` (called by an embedding
application) or through `watch()`, which pings the remote periodically.
Listeners run synchronously on the event loop whenever the state flips.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List

from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)

ConnectivityListener = Callable[[bool], None]
ReachabilityCheck = Callable[[], Awaitable[bool]]


class ConnectivityMonitor:
    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: List[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register `listener`; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        log.info("Connectivity changed", extra={"online": online})
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:  # noqa: BLE001 - one listener must not block the others
                log.exception("Connectivity listener failed")

    def mark_online(self) -> None:
        self.set_online(True)

    def mark_offline(self) -> None:
        self.set_online(False)

    async def watch(self, check: ReachabilityCheck, interval: float) -> None:
        """
        Check the remote every `interval` seconds until cancelled.

        Run it as a background task; a check that raises counts as offline.
        """
        while True:
            try:
                reachable = await check()
            except Exception as exc:  # noqa: BLE001 - any failure means unreachable
                log.debug("Connectivity check failed", extra={"error": str(exc)})
                reachable = False
            self.set_online(reachable)
            await asyncio.sleep(interval)


__all__ = ["ConnectivityMonitor", "ConnectivityListener", "ReachabilityCheck"]
