"""
Offline write queue.

Writes accepted while the remote is unreachable wait here, in issue order,
until SyncCoordinator drains them. The queue is the only local persistence:
it is written to a JSON file (tagged with `schema_version`) after every
change so pending writes survive a restart. Business records are never
cached here beyond the payload of the pending write itself.
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from delivery_sync.domain.status import RecordStatus
from delivery_sync.errors import QueueFullError
from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)

QUEUE_SCHEMA_VERSION = 1


class QueuedWrite(BaseModel):
    """One pending write."""

    op_id: str = Field(default_factory=lambda: uuid4().hex)
    kind: Literal["save", "delete"]
    table: str
    record_id: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    status: Optional[RecordStatus] = None
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}

    @property
    def key(self) -> Optional[str]:
        return f"{self.table}:{self.record_id}" if self.record_id else None


class QueueSnapshot(BaseModel):
    schema_version: int = QUEUE_SCHEMA_VERSION
    ops: List[QueuedWrite] = Field(default_factory=list)


class OfflineQueue:
    """
    Ordered, bounded queue of QueuedWrite, optionally persisted to `path`.
    """

    def __init__(self, path: Optional[Path] = None, max_size: int = 500) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.path = Path(path) if path is not None else None
        self.max_size = max_size
        self._last_write: Optional["asyncio.Task[None]"] = None
        self._ops: List[QueuedWrite] = self._load()

    def _load(self) -> List[QueuedWrite]:
        if self.path is None or not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            version = raw.get("schema_version") if isinstance(raw, dict) else None
            if version != QUEUE_SCHEMA_VERSION:
                log.warning(
                    "Offline queue schema version mismatch; starting empty",
                    extra={
                        "path": str(self.path),
                        "found": version,
                        "expected": QUEUE_SCHEMA_VERSION,
                    },
                )
                return []
            snapshot = QueueSnapshot.model_validate(raw)
        except (PydanticValidationError, ValueError) as exc:
            backup = self.path.with_suffix(self.path.suffix + ".corrupt")
            self.path.replace(backup)
            log.error(
                "Offline queue file unreadable; moved aside",
                extra={"path": str(self.path), "backup": str(backup), "error": str(exc)},
            )
            return []
        if snapshot.ops:
            log.info("Restored offline queue", extra={"path": str(self.path), "pending": len(snapshot.ops)})
        return list(snapshot.ops)

    def _persist(self) -> None:
        """
        Write the current snapshot. Inside a running event loop the file write
        happens on a worker thread, chained after the previous write so the
        file always ends up holding the latest snapshot; `flush()` waits for it.
        """
        if self.path is None:
            return
        data = QueueSnapshot(ops=self._ops).model_dump_json(indent=2)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _write_snapshot(self.path, data)
            return
        previous = self._last_write if self._last_write is not None and not self._last_write.done() else None
        self._last_write = loop.create_task(self._write_after(previous, data))

    async def _write_after(self, previous: "Optional[asyncio.Task[None]]", data: str) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            await asyncio.to_thread(_write_snapshot, self.path, data)
        except OSError:
            # Ops stay in memory; the next change rewrites the whole snapshot.
            log.exception("Offline queue write failed", extra={"path": str(self.path)})

    async def flush(self) -> None:
        """Wait until every snapshot written so far is on disk."""
        if self._last_write is not None and not self._last_write.done():
            await self._last_write

    def append(self, op: QueuedWrite) -> QueuedWrite:
        if len(self._ops) >= self.max_size:
            raise QueueFullError(f"offline queue is full ({self.max_size} pending writes)")
        self._ops.append(op)
        self._persist()
        log.info(
            "Queued offline write",
            extra={"op_id": op.op_id, "kind": op.kind, "table": op.table, "id": op.record_id},
        )
        return op

    def peek(self) -> Optional[QueuedWrite]:
        return self._ops[0] if self._ops else None

    def pop(self, op_id: str) -> Optional[QueuedWrite]:
        """Remove the op with `op_id` after it has been applied (or dead-lettered)."""
        for index, op in enumerate(self._ops):
            if op.op_id == op_id:
                del self._ops[index]
                self._persist()
                return op
        return None

    def cancel(self, op_id: str) -> bool:
        removed = self.pop(op_id)
        if removed is not None:
            log.info("Cancelled queued write", extra={"op_id": op_id, "table": removed.table})
        return removed is not None

    def list(self) -> List[QueuedWrite]:
        return list(self._ops)

    def clear(self) -> None:
        self._ops.clear()
        self._persist()

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[QueuedWrite]:
        return iter(list(self._ops))


def _write_snapshot(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(data, encoding="utf-8")
    os.replace(tmp, path)


__all__ = ["OfflineQueue", "QueuedWrite", "QueueSnapshot", "QUEUE_SCHEMA_VERSION"]
