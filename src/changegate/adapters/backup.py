"""SQLite backup provider.

Uses the sqlite3 online backup API, so the source database can stay
open and in use while it is copied. Verification re-opens the copy,
runs PRAGMA integrity_check and compares the sha256 checksum.
"""

from __future__ import annotations

import asyncio
import hashlib
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from changegate.safety.backup import BackupRecord, BackupRequest


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class SqliteBackupProvider:
    """Backs up a SQLite database file into a directory."""

    def __init__(self, database_path: Path, backup_dir: Path) -> None:
        """Initialize the provider.

        Args:
            database_path: Source SQLite database file.
            backup_dir: Directory receiving backup files.
        """
        self.database_path = database_path
        self.backup_dir = backup_dir

    async def create_backup(self, request: BackupRequest) -> BackupRecord:
        """Copy the whole database (tables listed for the record only)."""
        return await asyncio.to_thread(self._create, request)

    def _create(self, request: BackupRequest) -> BackupRecord:
        if not self.database_path.exists():
            raise FileNotFoundError(f"Database not found: {self.database_path}")

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        created_at = datetime.now(UTC)
        backup_id = f"backup_{created_at:%Y%m%dT%H%M%S}_{uuid4().hex[:8]}"
        target = self.backup_dir / f"{backup_id}.sqlite"

        source = sqlite3.connect(self.database_path)
        try:
            dest = sqlite3.connect(target)
            try:
                source.backup(dest)
            finally:
                dest.close()
        finally:
            source.close()

        return BackupRecord(
            backup_id=backup_id,
            created_at=created_at,
            location=str(target),
            size_bytes=target.stat().st_size,
            checksum=_sha256(target),
            tables=request.tables,
        )

    async def verify(self, record: BackupRecord) -> bool:
        """Check integrity, checksum and that listed tables are present."""
        return await asyncio.to_thread(self._verify, record)

    def _verify(self, record: BackupRecord) -> bool:
        path = Path(record.location)
        if not path.exists() or _sha256(path) != record.checksum:
            return False

        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        try:
            (status,) = conn.execute("PRAGMA integrity_check").fetchone()
            if status != "ok":
                return False
            names = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        finally:
            conn.close()

        return all(table in names for table in record.tables)
