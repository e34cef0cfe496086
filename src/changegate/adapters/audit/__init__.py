"""Audit logging adapters."""

from changegate.adapters.audit.sink import AuditFilter, AuditSink
from changegate.adapters.audit.stores import InMemoryAuditStore, JsonlAuditStore

__all__ = [
    "AuditFilter",
    "AuditSink",
    "InMemoryAuditStore",
    "JsonlAuditStore",
]
