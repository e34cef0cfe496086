"""Write-ahead manifest for in-flight change groups.

Before the first write of a group the applier records which paths it is
about to touch, and after every snapshot it records the snapshot itself.
If the process dies mid-apply, the leftover manifest holds everything
needed to restore the tree on the next start. Manifests are removed as
soon as the group reaches a terminal state.
"""

from __future__ import annotations

import asyncio
import base64
import json
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from .domain_types import Snapshot

logger = structlog.get_logger()


@dataclass
class PendingManifest:
    """A group that was applying when its manifest was last written.

    Attributes:
        group_id: The change group.
        actor: Who requested the apply.
        paths: Paths the group touches, in declared order.
        snapshots: Snapshots captured so far, in capture order.
        started_at: When the apply began (UTC).
    """

    group_id: str
    actor: str
    paths: list[str]
    snapshots: list[Snapshot] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict with base64 content."""
        return {
            "group_id": self.group_id,
            "actor": self.actor,
            "paths": self.paths,
            "started_at": self.started_at.isoformat(),
            "snapshots": [
                {
                    "path": s.path,
                    "existed": s.existed,
                    "content": (
                        base64.b64encode(s.content).decode("ascii")
                        if s.content is not None
                        else None
                    ),
                }
                for s in self.snapshots
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingManifest:
        """Deserialize from the dict written by to_dict."""
        return cls(
            group_id=data["group_id"],
            actor=data.get("actor", "system"),
            paths=list(data.get("paths", [])),
            started_at=datetime.fromisoformat(data["started_at"]),
            snapshots=[
                Snapshot(
                    path=s["path"],
                    existed=s["existed"],
                    content=base64.b64decode(s["content"]) if s["content"] is not None else None,
                )
                for s in data.get("snapshots", [])
            ],
        )


class ManifestStore:
    """Durable JSON manifests, one file per applying group.

    Every write goes to a temp file, is fsynced and then renamed over
    the previous manifest, so a reader never sees a torn file.
    """

    def __init__(self, state_dir: Path) -> None:
        """Initialize the store.

        Args:
            state_dir: Directory holding manifest files. Created on demand.
        """
        self.state_dir = state_dir
        self._open: dict[str, PendingManifest] = {}

    @classmethod
    def default_for_workspace(cls, workspace_root: Path) -> ManifestStore:
        """Return a store under <workspace>/.changegate/manifests."""
        return cls(workspace_root / ".changegate" / "manifests")

    def _path(self, group_id: str) -> Path:
        return self.state_dir / f"{group_id}.json"

    async def begin(self, group_id: str, actor: str, paths: list[str]) -> None:
        """Record that a group is about to start writing."""
        manifest = PendingManifest(group_id=group_id, actor=actor, paths=list(paths))
        self._open[group_id] = manifest
        await self._flush(manifest)

    async def record_snapshot(self, group_id: str, snapshot: Snapshot) -> None:
        """Persist a snapshot before the corresponding write happens."""
        manifest = self._open[group_id]
        manifest.snapshots.append(snapshot)
        await self._flush(manifest)

    async def complete(self, group_id: str) -> None:
        """Drop the manifest of a group that reached a terminal state."""
        self._open.pop(group_id, None)
        await asyncio.to_thread(self._path(group_id).unlink, missing_ok=True)

    async def pending(self) -> list[PendingManifest]:
        """Return manifests left behind by an interrupted process."""
        return await asyncio.to_thread(self._read_all)

    async def _flush(self, manifest: PendingManifest) -> None:
        path = self._path(manifest.group_id)
        await asyncio.to_thread(self._write_atomic, path, manifest.to_dict())

    def _write_atomic(self, path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _read_all(self) -> list[PendingManifest]:
        if not self.state_dir.exists():
            return []
        manifests = []
        for path in sorted(self.state_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.error("manifest_unreadable", path=str(path))
                continue
            manifests.append(PendingManifest.from_dict(data))
        return manifests
