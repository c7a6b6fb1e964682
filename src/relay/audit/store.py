"""Audit entry model and storage backends.

``AuditStore`` is the append-only storage interface; ``InMemoryAuditStore``
keeps the most recent entries in a bounded ring buffer for the process
lifetime. A durable backend only needs to implement the same five methods.
"""

from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.relay.sync.schemas import SyncStatus


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class AuditEntry(BaseModel):
    """One sync attempt as recorded in the audit log.

    Attributes:
        entry_id: Unique identifier (auto-generated UUID4).
        timestamp: UTC time the entry was recorded.
        operation: Operation kind, e.g. ``ORDER_SYNC``.
        sanitized_input: Input data with sensitive values masked.
        outcome_status: Terminal status of the run.
        error_message: Error text for failed runs.
        correlation_ids: Storefront and CRM identifiers for the run.
        duration_ms: Wall-clock duration of the run.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    operation: str
    sanitized_input: dict[str, Any] = Field(default_factory=dict)
    outcome_status: SyncStatus
    error_message: Optional[str] = None
    correlation_ids: dict[str, Any] = Field(default_factory=dict)
    duration_ms: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome_status != SyncStatus.FAILED


class AuditStore(ABC):
    """Append-only audit storage."""

    @abstractmethod
    def append(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    def query_by_operation(self, operation: str) -> list[AuditEntry]:
        ...

    @abstractmethod
    def query_by_range(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[AuditEntry]:
        """Entries with ``start <= timestamp <= end``; open bounds when None."""
        ...

    @abstractmethod
    def recent(self, limit: int = 100) -> list[AuditEntry]:
        """The newest ``limit`` entries, oldest first."""
        ...

    @abstractmethod
    def all(self) -> list[AuditEntry]:
        ...


class InMemoryAuditStore(AuditStore):
    """Bounded in-process store. Oldest entries are evicted past ``capacity``."""

    def __init__(self, capacity: int = 10000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[AuditEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _snapshot(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def append(self, entry: AuditEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def query_by_operation(self, operation: str) -> list[AuditEntry]:
        return [e for e in self._snapshot() if e.operation == operation]

    def query_by_range(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[AuditEntry]:
        start, end = as_utc(start), as_utc(end)
        return [
            e
            for e in self._snapshot()
            if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
        ]

    def recent(self, limit: int = 100) -> list[AuditEntry]:
        entries = self._snapshot()
        return entries[-limit:] if limit > 0 else []

    def all(self) -> list[AuditEntry]:
        return self._snapshot()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
