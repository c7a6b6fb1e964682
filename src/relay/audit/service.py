"""Audit log service: records one entry per sync outcome.

``AuditLog.record`` never raises. Sensitive keys are masked recursively
before the input reaches the store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog

from src.relay.audit.store import AuditEntry, AuditStore
from src.relay.sync.schemas import SyncOutcome, SyncStatus

logger = structlog.get_logger(__name__)

MASK = "***"

_SENSITIVE_MARKERS = ("password", "token", "secret", "apikey", "api_key", "authorization")


def _is_sensitive(key: str) -> bool:
    lowered = key.lower().replace("-", "_")
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


def sanitize(data: Any) -> Any:
    """Return a copy of ``data`` with sensitive keys masked at any depth."""
    if isinstance(data, dict):
        return {
            key: MASK if isinstance(key, str) and _is_sensitive(key) else sanitize(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize(item) for item in data]
    return data


class AuditLog:
    """Writes and queries audit entries over an AuditStore."""

    def __init__(self, store: AuditStore) -> None:
        self._store = store

    @property
    def store(self) -> AuditStore:
        return self._store

    def record(
        self,
        outcome: SyncOutcome,
        input_data: Optional[dict[str, Any]] = None,
        duration_ms: Optional[float] = None,
    ) -> Optional[AuditEntry]:
        """Append an entry for ``outcome``.

        Returns:
            The stored entry, or None if the entry could not be written.
        """
        try:
            entry = AuditEntry(
                operation=outcome.operation.value,
                sanitized_input=sanitize(input_data or {}),
                outcome_status=outcome.status,
                error_message=outcome.error,
                correlation_ids=outcome.correlation_ids(),
                duration_ms=duration_ms,
            )
            self._store.append(entry)
        except Exception as exc:
            logger.error(
                "audit.record_failed",
                operation=outcome.operation.value,
                error=str(exc),
            )
            return None

        log = logger.warning if not entry.succeeded else logger.info
        log(
            "audit.recorded",
            entry_id=entry.entry_id,
            operation=entry.operation,
            status=entry.outcome_status.value,
            error=entry.error_message,
            correlation_ids=entry.correlation_ids,
        )
        return entry

    def recent(self, limit: int = 100) -> list[AuditEntry]:
        return self._store.recent(limit)

    def by_operation(self, operation: str) -> list[AuditEntry]:
        return self._store.query_by_operation(operation)

    def failed(self) -> list[AuditEntry]:
        return [e for e in self._store.all() if e.outcome_status == SyncStatus.FAILED]

    def report(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> dict[str, Any]:
        """Totals for the range, overall and grouped by operation."""
        entries = self._store.query_by_range(start, end)
        by_operation: dict[str, dict[str, int]] = {}
        for entry in entries:
            bucket = by_operation.setdefault(
                entry.operation, {"total": 0, "successful": 0, "failed": 0}
            )
            bucket["total"] += 1
            bucket["successful" if entry.succeeded else "failed"] += 1

        successful = sum(1 for e in entries if e.succeeded)
        return {
            "total": len(entries),
            "successful": successful,
            "failed": len(entries) - successful,
            "by_operation": by_operation,
            "entries": entries,
        }
