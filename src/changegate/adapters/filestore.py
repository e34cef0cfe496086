"""Local file store confined to a workspace root.

Paths are always workspace-relative; absolute paths and anything that
resolves outside the root are refused. Writes go through a temp file
and os.replace so a single file is never left half-written.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path, PurePosixPath

from changegate.core.exceptions import ChangeGateError


class WorkspaceViolation(ChangeGateError, ValueError):
    """A path is absolute or escapes the workspace root."""

    pass


class LocalFileStore:
    """FileStore over a directory on the local filesystem.

    Attributes:
        root: Resolved workspace root.
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize the store.

        Args:
            root: Workspace root directory.
        """
        path = Path(root).expanduser()
        self.root = path.resolve() if path.exists() else path.absolute()

    def normalize(self, path: str) -> str:
        """Return the canonical workspace-relative POSIX form of a path.

        Raises:
            WorkspaceViolation: If the path is absolute or escapes the root.
        """
        if not path or PurePosixPath(path).is_absolute() or Path(path).is_absolute():
            raise WorkspaceViolation(f"Absolute or empty paths are not allowed: {path!r}")

        candidate = (self.root / path).resolve()
        try:
            relative = candidate.relative_to(self.root)
        except ValueError as e:
            raise WorkspaceViolation(f"Path escapes workspace: {path}") from e
        if not relative.parts:
            raise WorkspaceViolation(f"Path resolves to the workspace root: {path}")
        return relative.as_posix()

    def resolve(self, path: str) -> Path:
        """Return the absolute location of a workspace path."""
        return self.root / self.normalize(path)

    async def read(self, path: str) -> bytes | None:
        """Read a file, None when absent."""
        target = self.resolve(path)
        return await asyncio.to_thread(self._read, target)

    @staticmethod
    def _read(target: Path) -> bytes | None:
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None

    async def write(self, path: str, content: bytes) -> None:
        """Write bytes atomically, creating parent directories."""
        target = self.resolve(path)
        await asyncio.to_thread(self._write, target, content)

    @staticmethod
    def _write(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.changegate.tmp")
        try:
            with tmp.open("wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        finally:
            tmp.unlink(missing_ok=True)

    async def delete(self, path: str) -> None:
        """Delete a file.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        target = self.resolve(path)
        await asyncio.to_thread(target.unlink)

    async def exists(self, path: str) -> bool:
        """Check whether a file exists."""
        target = self.resolve(path)
        return await asyncio.to_thread(target.exists)
