"""Audit Sink - the single serialized append-only writer.

Every decision and outcome, success or failure, passes through here.
Writes from different groups interleave, but the lock guarantees none
are lost and each group's own entries keep their order. This is the
only process-wide mutable resource in the system.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from changegate.core.domain_types import AuditEntry
from changegate.core.interfaces import AuditStore

from .stores import InMemoryAuditStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class AuditFilter:
    """Criteria for querying the audit trail. Unset fields match anything.

    Attributes:
        group_id: Only entries for this group.
        stage: Only entries for this stage.
        outcome: Only entries with this outcome.
        actor: Only entries recorded for this actor.
        since: Only entries at or after this time.
        until: Only entries at or before this time.
    """

    group_id: str | None = None
    stage: str | None = None
    outcome: str | None = None
    actor: str | None = None
    since: datetime | None = None
    until: datetime | None = None

    def matches(self, entry: AuditEntry) -> bool:
        """Check whether an entry satisfies every set criterion."""
        if self.group_id is not None and entry.group_id != self.group_id:
            return False
        if self.stage is not None and entry.stage != self.stage:
            return False
        if self.outcome is not None and entry.outcome != self.outcome:
            return False
        if self.actor is not None and entry.actor != self.actor:
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp > self.until:
            return False
        return True


class AuditSink:
    """Serializes audit writes and assigns sequence numbers.

    Usage:
        sink = AuditSink(JsonlAuditStore(path))
        await sink.record(actor="alice", group_id=gid, stage="apply", outcome="applied")
    """

    def __init__(self, store: AuditStore | None = None) -> None:
        """Initialize the sink.

        Args:
            store: Persistence backend. Defaults to an in-memory store.
        """
        self.store = store or InMemoryAuditStore()
        self._lock = asyncio.Lock()
        self._sequence: int | None = None

    async def record(
        self,
        *,
        actor: str,
        group_id: str,
        stage: str,
        outcome: str,
        detail: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Append an entry.

        Args:
            actor: User or component responsible.
            group_id: Related change group or operation id.
            stage: Pipeline stage.
            outcome: Short result label.
            detail: Raw structured detail.

        Returns:
            The persisted entry.
        """
        async with self._lock:
            if self._sequence is None:
                self._sequence = len(await self.store.entries())
            entry = AuditEntry(
                sequence=self._sequence + 1,
                timestamp=datetime.now(UTC),
                actor=actor,
                group_id=group_id,
                stage=stage,
                outcome=outcome,
                detail=detail or {},
            )
            await self.store.append(entry)
            self._sequence = entry.sequence

        logger.debug(
            "audit_recorded",
            sequence=entry.sequence,
            group_id=group_id,
            stage=stage,
            outcome=outcome,
        )
        return entry

    async def query(self, audit_filter: AuditFilter | None = None) -> list[AuditEntry]:
        """Return entries matching the filter, in sequence order."""
        audit_filter = audit_filter or AuditFilter()
        entries = await self.store.entries()
        return [e for e in entries if audit_filter.matches(e)]
