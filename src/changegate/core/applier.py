"""Atomic Applier - All-or-nothing multi-file writes with rollback.

Flow for one group, all under exclusive per-path locks:
1. Baseline diagnostics on the touched paths
2. Write-ahead manifest
3. For each change in declared order: snapshot, persist, write
4. Post-apply diagnostics; anything not in the baseline is a regression
5. Success -> applied. Any failure -> restore snapshots in reverse order

A restoration that fails does not stop the others. The group then ends
FAILED with partial_rollback set, which is escalated and raised as
RollbackFailure. This is the only state that needs a human.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from .domain_types import (
    ApplyResult,
    ApplyStatus,
    Diagnostic,
    FailureKind,
    FileChange,
    FileOp,
    Snapshot,
)
from .exceptions import ApplyIOFailure, PostCheckFailure, RollbackFailure
from .state import ChangeGroup, GroupStatus

if TYPE_CHECKING:
    from changegate.adapters.audit import AuditSink

    from .interfaces import AlertSink, DiagnosticsProvider, FileStore
    from .manifest import ManifestStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class ApplierConfig:
    """Configuration for the atomic applier.

    Attributes:
        post_check: Run diagnostics before and after writing.
        diagnostics_timeout_seconds: Limit for each diagnostics run.
    """

    post_check: bool = True
    diagnostics_timeout_seconds: float = 60.0


class PathLocks:
    """Exclusive locks keyed by normalized path.

    Locks for a group are always taken in sorted order, so two groups
    sharing paths can never deadlock.
    """

    def __init__(self) -> None:
        """Initialize with no locks."""
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[list[str]]:
        """Acquire every lock in sorted order; release in reverse on exit.

        A path's lock is dropped once no holder or waiter remains.
        """
        ordered = sorted(set(keys))
        for key in ordered:
            self._users[key] = self._users.get(key, 0) + 1
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                await lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        """Check whether a path is currently held by some group."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class AtomicApplier:
    """Applies change groups atomically.

    The applier is the only writer of tracked files.
    """

    def __init__(
        self,
        files: FileStore,
        audit: AuditSink,
        diagnostics: DiagnosticsProvider | None = None,
        manifests: ManifestStore | None = None,
        alerts: AlertSink | None = None,
        config: ApplierConfig | None = None,
    ) -> None:
        """Initialize the applier.

        Args:
            files: The tracked file tree.
            audit: Audit sink for outcomes.
            diagnostics: Post-apply verification. Skipped when None.
            manifests: Write-ahead manifest store. Skipped when None.
            alerts: Operator alert channel for partial rollbacks.
            config: Optional applier configuration.
        """
        self.files = files
        self.audit = audit
        self.diagnostics = diagnostics
        self.manifests = manifests
        self.alerts = alerts
        self.config = config or ApplierConfig()
        self.locks = PathLocks()

    async def apply(self, group: ChangeGroup, actor: str = "system") -> ApplyResult:
        """Apply every change of a group, or none of them.

        Args:
            group: A group already moved to APPLYING.
            actor: Who requested the apply.

        Returns:
            Terminal result: APPLIED or ROLLED_BACK.

        Raises:
            RollbackFailure: If one or more restorations failed.
        """
        log = logger.bind(group_id=group.id, actor=actor)
        keys = [self.files.normalize(path) for path in group.paths]

        async with self.locks.hold(keys) as held:
            log.info("apply_started", files=len(group.files), locks=held)
            try:
                return await self._apply_locked(group, actor, log)
            finally:
                # A group still APPLYING keeps its manifest for recover().
                if self.manifests is not None and group.status.is_terminal:
                    await self.manifests.complete(group.id)

    async def _apply_locked(
        self, group: ChangeGroup, actor: str, log: structlog.BoundLogger
    ) -> ApplyResult:
        snapshots: list[Snapshot] = []
        stage = "baseline"

        try:
            baseline = await self._diagnose(group)

            stage = "manifest"
            if self.manifests is not None:
                await self.manifests.begin(group.id, actor, group.paths)

            for change in group.files:
                stage = "snapshot"
                snapshot = await self._snapshot(change)
                if self.manifests is not None:
                    await self.manifests.record_snapshot(group.id, snapshot)
                snapshots.append(snapshot)

                stage = "write"
                await self._write(change, snapshot)

            stage = "post_check"
            after = await self._diagnose(group)
            known = {d.fingerprint() for d in baseline}
            regressions = [
                f"{d.location}: {d.message}" for d in after if d.fingerprint() not in known
            ]
            if regressions:
                raise PostCheckFailure(regressions)

        except Exception as e:
            return await self._roll_back(group, actor, snapshots, stage, e, log)
        except BaseException as e:
            # Cancellation: restore what was written, then propagate.
            log.warning("apply_interrupted", stage=stage, error=type(e).__name__)
            await self._roll_back(group, actor, snapshots, stage, e, log)
            raise

        group.transition(GroupStatus.APPLIED)
        applied = tuple(group.paths)
        await self.audit.record(
            actor=actor,
            group_id=group.id,
            stage="apply",
            outcome="applied",
            detail={"files": self._diff_summary(group.files, snapshots)},
        )
        log.info("apply_complete", applied_files=list(applied))
        return ApplyResult(group_id=group.id, status=ApplyStatus.APPLIED, applied_files=applied)

    async def _snapshot(self, change: FileChange) -> Snapshot:
        try:
            content = await self.files.read(change.path)
        except (OSError, ValueError) as e:
            raise ApplyIOFailure(change.path, f"snapshot failed: {e}") from e
        return Snapshot(path=change.path, existed=content is not None, content=content)

    async def _write(self, change: FileChange, snapshot: Snapshot) -> None:
        if change.op == FileOp.CREATE and snapshot.existed:
            raise ApplyIOFailure(change.path, "create target already exists")
        if change.op in (FileOp.MODIFY, FileOp.DELETE) and not snapshot.existed:
            raise ApplyIOFailure(change.path, f"{change.op.value} target does not exist")

        try:
            if change.op == FileOp.DELETE:
                await self.files.delete(change.path)
            else:
                await self.files.write(change.path, change.new_content)
        except (OSError, ValueError) as e:
            raise ApplyIOFailure(change.path, str(e)) from e

    async def _diagnose(self, group: ChangeGroup) -> list[Diagnostic]:
        if self.diagnostics is None or not self.config.post_check:
            return []
        paths = [c.path for c in group.files if c.op != FileOp.DELETE]
        if not paths:
            return []
        try:
            return await asyncio.wait_for(
                self.diagnostics.diagnose(paths),
                timeout=self.config.diagnostics_timeout_seconds,
            )
        except Exception as e:
            raise PostCheckFailure([f"diagnostics failed: {type(e).__name__}: {e}"]) from e

    async def restore(self, snapshots: list[Snapshot]) -> list[str]:
        """Restore snapshots in reverse capture order.

        Every snapshot is attempted even when an earlier one fails.

        Args:
            snapshots: Snapshots in capture order.

        Returns:
            Paths that could not be restored.
        """
        failed: list[str] = []
        for snapshot in reversed(snapshots):
            try:
                if snapshot.existed:
                    await self.files.write(snapshot.path, snapshot.content or b"")
                elif await self.files.exists(snapshot.path):
                    await self.files.delete(snapshot.path)
            except Exception as e:
                logger.error("restore_failed", path=snapshot.path, error=str(e))
                if snapshot.path not in failed:
                    failed.append(snapshot.path)
        return failed

    async def _roll_back(
        self,
        group: ChangeGroup,
        actor: str,
        snapshots: list[Snapshot],
        stage: str,
        error: BaseException,
        log: structlog.BoundLogger,
    ) -> ApplyResult:
        if isinstance(error, PostCheckFailure):
            failure = FailureKind.POST_CHECK_FAILURE
            reason = str(error)
        elif isinstance(error, ApplyIOFailure):
            failure = FailureKind.APPLY_IO_FAILURE
            reason = str(error)
        else:
            failure = FailureKind.UNEXPECTED_FAILURE
            name = type(error).__name__
            reason = f"{name}: {error}" if str(error) else name
        log.warning("apply_failed", stage=stage, failure=failure.value, error=reason)

        failed = await self.restore(snapshots)
        detail: dict[str, object] = {
            "failed_stage": stage,
            "failure": failure.value,
            "reason": reason,
            "restored": [s.path for s in reversed(snapshots) if s.path not in failed],
        }
        if isinstance(error, PostCheckFailure):
            detail["regressions"] = error.regressions

        if not failed:
            group.transition(GroupStatus.ROLLED_BACK)
            await self.audit.record(
                actor=actor,
                group_id=group.id,
                stage="rollback",
                outcome="rolled_back",
                detail=detail,
            )
            log.info("rollback_complete", restored=len(snapshots))
            return ApplyResult(
                group_id=group.id,
                status=ApplyStatus.ROLLED_BACK,
                rollback_reason=reason,
                failed_stage=stage,
                failure=failure,
            )

        group.transition(GroupStatus.FAILED)
        result = ApplyResult(
            group_id=group.id,
            status=ApplyStatus.FAILED,
            rollback_reason=reason,
            failed_stage=stage,
            failure=FailureKind.ROLLBACK_FAILURE,
            partial_rollback=True,
            failed_restorations=tuple(failed),
        )
        await self.audit.record(
            actor=actor,
            group_id=group.id,
            stage="rollback",
            outcome="partial",
            detail={**detail, "failed_restorations": failed},
        )
        await self.escalate(result)
        raise RollbackFailure(result)

    async def escalate(self, result: ApplyResult) -> None:
        """Raise an operator alert for a partial rollback."""
        logger.critical(
            "partial_rollback",
            group_id=result.group_id,
            failed_stage=result.failed_stage,
            failed_restorations=list(result.failed_restorations),
        )
        if self.alerts is None:
            return
        try:
            await self.alerts.alert(
                f"Partial rollback of change group {result.group_id}",
                {
                    "group_id": result.group_id,
                    "failed_stage": result.failed_stage,
                    "reason": result.rollback_reason,
                    "failed_restorations": list(result.failed_restorations),
                },
            )
        except Exception as e:
            logger.error("alert_delivery_failed", group_id=result.group_id, error=str(e))

    @staticmethod
    def _diff_summary(
        changes: tuple[FileChange, ...], snapshots: list[Snapshot]
    ) -> list[dict[str, object]]:
        return [
            {
                "path": change.path,
                "op": change.op.value,
                "bytes_before": len(snapshot.content) if snapshot.content is not None else None,
                "bytes_after": None if change.op == FileOp.DELETE else len(change.new_content),
            }
            for change, snapshot in zip(changes, snapshots, strict=True)
        ]
