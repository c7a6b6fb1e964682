"""Append-only audit trail of sync runs."""

from src.relay.audit.service import AuditLog, sanitize
from src.relay.audit.store import AuditEntry, AuditStore, InMemoryAuditStore

__all__ = [
    "AuditEntry",
    "AuditLog",
    "AuditStore",
    "InMemoryAuditStore",
    "sanitize",
]
