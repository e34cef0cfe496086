"""Unit tests for the write-ahead manifest store."""

from __future__ import annotations

import json
from pathlib import Path

from changegate.core.domain_types import Snapshot
from changegate.core.manifest import ManifestStore, PendingManifest


class TestPendingManifest:
    """Tests for PendingManifest serialization."""

    def test_binary_content_survives(self) -> None:
        """Test snapshot bytes are stored as base64 and read back exactly."""
        manifest = PendingManifest(
            group_id="g1",
            actor="alice",
            paths=["a.bin", "b.txt"],
            snapshots=[
                Snapshot(path="a.bin", existed=True, content=b"\x00\xff\n"),
                Snapshot(path="b.txt", existed=False),
            ],
        )

        restored = PendingManifest.from_dict(json.loads(json.dumps(manifest.to_dict())))

        assert restored.snapshots == manifest.snapshots
        assert restored.started_at == manifest.started_at
        assert restored.paths == ["a.bin", "b.txt"]


class TestManifestStore:
    """Tests for ManifestStore."""

    async def test_begin_and_record(self, tmp_path: Path) -> None:
        """Test a begun manifest is visible as pending with its snapshots."""
        store = ManifestStore(tmp_path / "manifests")
        await store.begin("g1", "alice", ["a.py"])
        await store.record_snapshot("g1", Snapshot(path="a.py", existed=True, content=b"old"))

        pending = await store.pending()

        assert len(pending) == 1
        assert pending[0].group_id == "g1"
        assert pending[0].actor == "alice"
        assert pending[0].snapshots == [Snapshot(path="a.py", existed=True, content=b"old")]

    async def test_complete_removes_file(self, tmp_path: Path) -> None:
        """Test completing a group deletes its manifest."""
        store = ManifestStore(tmp_path)
        await store.begin("g1", "alice", ["a.py"])
        await store.complete("g1")

        assert await store.pending() == []
        assert not (tmp_path / "g1.json").exists()

    async def test_complete_unknown_group(self, tmp_path: Path) -> None:
        """Test completing a group without a manifest is a no-op."""
        await ManifestStore(tmp_path).complete("never-started")

    async def test_no_directory_means_nothing_pending(self, tmp_path: Path) -> None:
        """Test a missing state directory yields no manifests."""
        assert await ManifestStore(tmp_path / "absent").pending() == []

    async def test_pending_survives_new_instance(self, tmp_path: Path) -> None:
        """Test manifests are read back by a fresh store after a restart."""
        await ManifestStore(tmp_path).begin("g1", "alice", ["a.py"])

        pending = await ManifestStore(tmp_path).pending()

        assert [m.group_id for m in pending] == ["g1"]

    async def test_unreadable_manifest_is_skipped(self, tmp_path: Path) -> None:
        """Test a corrupt file does not hide other manifests."""
        store = ManifestStore(tmp_path)
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        await store.begin("g2", "bob", ["b.py"])

        pending = await store.pending()

        assert [m.group_id for m in pending] == ["g2"]

    async def test_no_temp_files_left(self, tmp_path: Path) -> None:
        """Test atomic writes leave only the final manifest."""
        store = ManifestStore(tmp_path)
        await store.begin("g1", "alice", ["a.py"])
        await store.record_snapshot("g1", Snapshot(path="a.py", existed=False))

        assert sorted(p.name for p in tmp_path.iterdir()) == ["g1.json"]

    def test_default_location(self, tmp_path: Path) -> None:
        """Test the default store lives under the workspace state directory."""
        store = ManifestStore.default_for_workspace(tmp_path)
        assert store.state_dir == tmp_path / ".changegate" / "manifests"
