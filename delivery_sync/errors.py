"""
Error taxonomy for the delivery sync layer.

Every failure surfaced by RecordStore, ChangeBus or SyncCoordinator is one of
these types. Library errors (httpx, asyncpg) are translated at the client
boundary and attached as `cause` so callers can log the original failure.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class SyncError(Exception):
    """Base class for all typed sync errors."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class ValidationError(SyncError):
    """Malformed or missing fields, raised before any network call."""

    def __init__(
        self,
        errors: Iterable[str],
        *,
        table: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.errors: List[str] = list(errors)
        self.table = table
        prefix = f"{table}: " if table else ""
        super().__init__(prefix + "; ".join(self.errors), cause=cause)


class ConflictError(SyncError):
    """Uniqueness constraint violation. Never retried."""


class NotFoundError(SyncError):
    """The target record does not exist."""

    def __init__(
        self,
        table: str,
        record_id: Optional[str],
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.table = table
        self.record_id = record_id
        super().__init__(f"{table}: record {record_id!r} not found", cause=cause)


class NetworkError(SyncError):
    """Transient connectivity failure or timeout."""


class OfflineError(NetworkError):
    """The connectivity signal reports offline; no request was attempted."""


class InvalidTransition(SyncError):
    """Illegal status change (e.g. leaving a terminal status)."""

    def __init__(self, table: str, record_id: Optional[str], current: str, requested: str) -> None:
        self.table = table
        self.record_id = record_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"{table}: cannot move record {record_id!r} from {current} to {requested}"
        )


class PersistentSyncFailure(SyncError):
    """A change subscription exceeded its reconnection attempts."""

    def __init__(
        self, table: str, attempts: int, *, cause: Optional[BaseException] = None
    ) -> None:
        self.table = table
        self.attempts = attempts
        super().__init__(
            f"{table}: change stream lost after {attempts} reconnection attempts", cause=cause
        )


class QueueFullError(SyncError):
    """The offline write queue reached its configured bound."""


def format_errors(error: ValidationError) -> str:
    """Render validation errors as a single display string."""
    if not error.errors:
        return ""
    if len(error.errors) == 1:
        return error.errors[0]
    return "Validation errors:\n• " + "\n• ".join(error.errors)


__all__ = [
    "SyncError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "NetworkError",
    "OfflineError",
    "InvalidTransition",
    "PersistentSyncFailure",
    "QueueFullError",
    "format_errors",
]
