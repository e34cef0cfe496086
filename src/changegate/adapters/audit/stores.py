"""Audit persistence backends.

Both stores are append-only: entries are never mutated or deleted.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

from changegate.core.domain_types import AuditEntry


class InMemoryAuditStore:
    """Keeps audit entries in process memory. Used in tests and demos."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._entries: list[AuditEntry] = []

    async def append(self, entry: AuditEntry) -> None:
        """Append an entry."""
        self._entries.append(entry)

    async def entries(self) -> list[AuditEntry]:
        """Return a copy of all entries in append order."""
        return list(self._entries)


class JsonlAuditStore:
    """Durable append-only JSON lines file.

    Each append is flushed and fsynced before returning so a crash
    never loses an acknowledged entry.
    """

    def __init__(self, path: Path) -> None:
        """Initialize the store.

        Args:
            path: Location of the JSONL file. Parent directories are created.
        """
        self.path = path

    @classmethod
    def default_for_workspace(cls, workspace_root: Path) -> JsonlAuditStore:
        """Return a store under <workspace>/.changegate/audit.jsonl."""
        return cls(path=workspace_root / ".changegate" / "audit.jsonl")

    async def append(self, entry: AuditEntry) -> None:
        """Append one entry as a JSON line."""
        line = entry.model_dump_json() + "\n"
        await asyncio.to_thread(self._append_line, line)

    def _append_line(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    async def entries(self) -> list[AuditEntry]:
        """Read back all entries in append order."""
        return await asyncio.to_thread(self._read_all)

    def _read_all(self) -> list[AuditEntry]:
        if not self.path.exists():
            return []
        entries = []
        with self.path.open(encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entries.append(AuditEntry.model_validate(json.loads(line)))
        return entries
