"""Backup Manager - fail-closed backups before destructive SQL.

A high or critical database operation may only run after a backup has
been created AND verified. Provider errors, failed verification and
timeouts all raise BackupFailure; the operation is then aborted, never
allowed to proceed unbacked.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict

from changegate.core.exceptions import BackupFailure

if TYPE_CHECKING:
    from changegate.adapters.audit import AuditSink

logger = structlog.get_logger()


class BackupRequest(BaseModel):
    """What to back up before a guarded operation.

    Attributes:
        operation_id: The guarded operation this backup protects.
        database: Logical database / environment name.
        tables: Tables the operation touches (empty means whole database).
        requested_by: Actor requesting the backup.
    """

    model_config = ConfigDict(frozen=True)

    operation_id: str
    database: str
    tables: tuple[str, ...] = ()
    requested_by: str = "system"


class BackupRecord(BaseModel):
    """A completed backup.

    Attributes:
        backup_id: Unique backup identifier.
        created_at: Completion time (UTC).
        location: Where the backup was written.
        size_bytes: Size of the backup artifact.
        checksum: sha256 of the backup artifact.
        tables: Tables covered.
    """

    model_config = ConfigDict(frozen=True)

    backup_id: str
    created_at: datetime
    location: str
    size_bytes: int
    checksum: str
    tables: tuple[str, ...] = ()


@runtime_checkable
class BackupProvider(Protocol):
    """Interface for something that can snapshot a database."""

    async def create_backup(self, request: BackupRequest) -> BackupRecord:
        """Create a backup and return its record."""
        ...

    async def verify(self, record: BackupRecord) -> bool:
        """Check that a backup is complete and readable."""
        ...


@dataclass(frozen=True)
class BackupConfig:
    """Configuration for the backup manager.

    Attributes:
        timeout_seconds: Hard limit for creation plus verification.
    """

    timeout_seconds: float = 300.0


class BackupManager:
    """Forces a verified backup before a risky database operation.

    Usage:
        manager = BackupManager(SqliteBackupProvider(db, backups_dir), audit=sink)
        record = await manager.ensure_backup(request)  # Raises BackupFailure
    """

    def __init__(
        self,
        provider: BackupProvider,
        config: BackupConfig | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        """Initialize the backup manager.

        Args:
            provider: Backend that performs the backup.
            config: Limits. Uses defaults if not provided.
            audit: Optional audit sink for backup attempts.
        """
        self.provider = provider
        self.config = config or BackupConfig()
        self.audit = audit

    async def ensure_backup(self, request: BackupRequest) -> BackupRecord:
        """Create and verify a backup, blocking until done or timed out.

        Args:
            request: What to back up.

        Returns:
            The verified backup record.

        Raises:
            BackupFailure: On timeout, provider error or failed verification.
        """
        log = logger.bind(operation_id=request.operation_id, database=request.database)
        log.info("backup_started", tables=list(request.tables))

        try:
            record = await asyncio.wait_for(
                self._create_and_verify(request),
                timeout=self.config.timeout_seconds,
            )
        except (TimeoutError, asyncio.TimeoutError):
            reason = f"Backup timed out after {self.config.timeout_seconds}s"
            await self._record(request, "failed", {"reason": reason})
            log.error("backup_timeout", timeout_seconds=self.config.timeout_seconds)
            raise BackupFailure(reason) from None
        except BackupFailure as e:
            await self._record(request, "failed", {"reason": str(e)})
            log.error("backup_failed", error=str(e))
            raise
        except Exception as e:
            await self._record(request, "failed", {"reason": str(e)})
            log.error("backup_failed", error=str(e))
            raise BackupFailure(f"Backup provider error: {e}") from e

        await self._record(
            request,
            "verified",
            {
                "backup_id": record.backup_id,
                "location": record.location,
                "size_bytes": record.size_bytes,
                "checksum": record.checksum,
            },
        )
        log.info("backup_verified", backup_id=record.backup_id, size_bytes=record.size_bytes)
        return record

    async def _create_and_verify(self, request: BackupRequest) -> BackupRecord:
        record = await self.provider.create_backup(request)
        if record.size_bytes <= 0:
            raise BackupFailure(f"Backup {record.backup_id} is empty")
        if not await self.provider.verify(record):
            raise BackupFailure(f"Backup {record.backup_id} failed verification")
        return record

    async def _record(
        self, request: BackupRequest, outcome: str, detail: dict[str, object]
    ) -> None:
        if self.audit is None:
            return
        await self.audit.record(
            actor=request.requested_by,
            group_id=request.operation_id,
            stage="backup",
            outcome=outcome,
            detail={"database": request.database, "tables": list(request.tables), **detail},
        )
