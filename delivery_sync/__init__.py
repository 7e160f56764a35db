"""
delivery-sync - data access and sync layer for the delivery dashboard.

Wraps the hosted Postgres (Supabase) tables behind one coordinator:

- RecordStore: validated CRUD with retries and timeouts
- Cache: short-lived in-memory query results
- ChangeBus: shared per-table change subscriptions with reconnection
- SyncCoordinator: cache-first reads, serialized writes, offline queue
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from delivery_sync.cache import Cache
from delivery_sync.changes import ChangeBus, ConnectionState, Subscription
from delivery_sync.config import Settings, get_settings
from delivery_sync.connectivity import ConnectivityMonitor
from delivery_sync.coordinator import DeadLetter, SyncCoordinator
from delivery_sync.domain import (
    ChangeEvent,
    ChangeKind,
    ChangeOrigin,
    Predicate,
    QueryFilter,
    QueryResult,
    Record,
    RecordStatus,
)
from delivery_sync.errors import (
    ConflictError,
    InvalidTransition,
    NetworkError,
    NotFoundError,
    OfflineError,
    PersistentSyncFailure,
    QueueFullError,
    SyncError,
    ValidationError,
    format_errors,
)
from delivery_sync.queue import OfflineQueue, QueuedWrite
from delivery_sync.store import RecordStore
from delivery_sync.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Components
    "Cache",
    "ChangeBus",
    "ConnectionState",
    "ConnectivityMonitor",
    "OfflineQueue",
    "QueuedWrite",
    "RecordStore",
    "Subscription",
    "SyncCoordinator",
    "DeadLetter",
    # Domain
    "ChangeEvent",
    "ChangeKind",
    "ChangeOrigin",
    "Predicate",
    "QueryFilter",
    "QueryResult",
    "Record",
    "RecordStatus",
    # Errors
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
    # Logging
    "configure_logging",
    "get_logger",
]
