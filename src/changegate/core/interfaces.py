"""Protocol definitions for all external collaborators.

The core only depends on these protocols, never on concrete adapters.
Concrete implementations live in changegate.adapters.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .domain_types import Artifact, AuditEntry, Diagnostic, ValidationFinding


@runtime_checkable
class FileStore(Protocol):
    """Interface for the tracked file tree.

    The applier is the only writer of tracked files.
    """

    async def read(self, path: str) -> bytes | None:
        """Read a file.

        Args:
            path: Workspace-relative path.

        Returns:
            File bytes, or None when the path does not exist.
        """
        ...

    async def write(self, path: str, content: bytes) -> None:
        """Write bytes to a path, creating parent directories."""
        ...

    async def delete(self, path: str) -> None:
        """Delete a path.

        Raises:
            FileNotFoundError: If the path does not exist.
        """
        ...

    async def exists(self, path: str) -> bool:
        """Check whether a path exists."""
        ...

    def normalize(self, path: str) -> str:
        """Return the canonical key used for per-path locking."""
        ...


@runtime_checkable
class DiagnosticsProvider(Protocol):
    """Interface for post-apply verification (type/diagnostic checks)."""

    async def diagnose(self, paths: list[str]) -> list[Diagnostic]:
        """Return diagnostics for the given paths only."""
        ...


@runtime_checkable
class PackageRegistry(Protocol):
    """Interface for package existence lookups (PyPI, npm, ...)."""

    async def exists(self, name: str) -> bool:
        """Check whether a package is published under this name."""
        ...


@runtime_checkable
class RouteTable(Protocol):
    """Interface for known application routes."""

    async def exists(self, method: str, path: str) -> bool:
        """Check whether a route serves method + path."""
        ...


@runtime_checkable
class AuditStore(Protocol):
    """Durable append-only persistence for audit entries."""

    async def append(self, entry: AuditEntry) -> None:
        """Persist one entry. Entries are never mutated or deleted."""
        ...

    async def entries(self) -> list[AuditEntry]:
        """Return all entries in append order."""
        ...


@runtime_checkable
class Validator(Protocol):
    """A stateless content validator.

    Validators are pure functions of file content plus static metadata,
    so the pipeline may run them concurrently.
    """

    name: str

    async def validate(self, artifact: Artifact) -> list[ValidationFinding]:
        """Return findings for one artifact."""
        ...


@runtime_checkable
class AlertSink(Protocol):
    """Operator-facing alert channel for unrecoverable states."""

    async def alert(self, title: str, detail: dict[str, object]) -> None:
        """Raise a loud alert that needs manual remediation.

        Raises:
            AlertDeliveryError: If the alert did not reach its channel.
        """
        ...
