"""Change Gate Service - The public façade.

Ties the pipeline, the approval gate, the applier and the audit sink
together behind the operations callers use: submit, inspect, approve or
reject, cancel, apply, query the audit trail and recover after a crash.
Every decision and outcome is written to the audit sink.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import structlog

from changegate.adapters.audit import AuditFilter, AuditSink

from .applier import AtomicApplier
from .approval import ApprovalGate, GateVerdict
from .domain_types import (
    ApplyResult,
    ApplyStatus,
    ApprovalDecision,
    AuditEntry,
    Decision,
    FailureKind,
    FileChange,
    Severity,
    TestRunSummary,
    ValidationReport,
)
from .exceptions import (
    ChangeGateError,
    GroupNotFoundError,
    InvalidTransitionError,
    RollbackFailure,
    ValidationFailure,
)
from .pipeline import ValidationPipeline
from .state import ChangeGroup, GroupStatus

logger = structlog.get_logger()


class ChangeGateService:
    """Entry point for submitting and applying change groups.

    Usage:
        service = ChangeGateService(pipeline, applier, audit)
        group_id = await service.submit_change_group(files, submitted_by="agent")
        result = await service.apply(group_id, actor="agent")
    """

    def __init__(
        self,
        pipeline: ValidationPipeline,
        applier: AtomicApplier,
        audit: AuditSink,
        gate: ApprovalGate | None = None,
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            pipeline: Validation pipeline.
            applier: Atomic applier (owns the file store).
            audit: Audit sink shared with the applier.
            gate: Approval gate. Defaults to the pipeline's threshold.
            retention: How long terminal groups stay queryable. Their
                history remains in the audit trail afterwards.
            clock: Current time source (UTC).
        """
        self.pipeline = pipeline
        self.applier = applier
        self.audit = audit
        self.gate = gate or ApprovalGate(threshold=pipeline.config.approval_threshold)
        self.retention = retention
        self.clock = clock or (lambda: datetime.now(UTC))
        self._groups: dict[str, ChangeGroup] = {}

    def get_group(self, group_id: str) -> ChangeGroup:
        """Look up a group.

        Raises:
            GroupNotFoundError: If no group has this id.
        """
        try:
            return self._groups[group_id]
        except KeyError:
            raise GroupNotFoundError(f"Change group not found: {group_id}") from None

    def list_groups(self) -> list[ChangeGroup]:
        """Return all known groups, oldest first."""
        self.evict_expired()
        return sorted(self._groups.values(), key=lambda g: g.created_at)

    def evict_expired(self) -> list[str]:
        """Forget terminal groups that finished more than `retention` ago.

        Returns:
            Ids of the evicted groups.
        """
        cutoff = self.clock() - self.retention
        expired = [
            group_id
            for group_id, group in self._groups.items()
            if group.finished_at is not None and group.finished_at < cutoff
        ]
        for group_id in expired:
            del self._groups[group_id]
        if expired:
            logger.debug("change_groups_evicted", count=len(expired))
        return expired

    async def submit_change_group(
        self,
        files: Sequence[FileChange],
        submitted_by: str = "system",
        test_results: TestRunSummary | None = None,
    ) -> str:
        """Register a group and validate it.

        Args:
            files: Ordered file changes.
            submitted_by: Submitting actor.
            test_results: Optional test metadata for the validators.

        Returns:
            The new group id.

        Raises:
            ValueError: If the group is empty or a path is invalid.
            ValidationFailure: If a validator crashed (the group is rejected).
        """
        self.evict_expired()
        if not files:
            raise ValueError("A change group needs at least one file")
        for change in files:
            self.applier.files.normalize(change.path)

        group = ChangeGroup(
            id=str(uuid4()),
            files=tuple(files),
            created_at=datetime.now(UTC),
            submitted_by=submitted_by,
            test_results=test_results,
        )
        self._groups[group.id] = group
        log = logger.bind(group_id=group.id, submitted_by=submitted_by)
        log.info("change_group_submitted", files=len(group.files))

        await self.audit.record(
            actor=submitted_by,
            group_id=group.id,
            stage="submission",
            outcome="created",
            detail={"files": [{"path": c.path, "op": c.op.value} for c in group.files]},
        )

        group.transition(GroupStatus.VALIDATING)
        try:
            report = await self.pipeline.run(group)
        except Exception as e:
            group.transition(GroupStatus.REJECTED)
            await self.audit.record(
                actor=submitted_by,
                group_id=group.id,
                stage="validation",
                outcome="error",
                detail={"error": f"{type(e).__name__}: {e}"},
            )
            log.error("validation_error", error=str(e))
            raise ValidationFailure(f"Validation of group {group.id} failed: {e}") from e

        group.report = report
        verdict = self.gate.evaluate(report)
        await self.audit.record(
            actor=submitted_by,
            group_id=group.id,
            stage="validation",
            outcome="passed" if verdict == GateVerdict.PASS else "approval_required",
            detail={
                "overall_severity": report.overall_severity.value,
                "requires_approval": report.requires_approval,
                "counts": {s.value: len(report.by_severity(s)) for s in Severity},
                "findings": [f.model_dump(mode="json") for f in report.findings],
            },
        )

        # A cancel may have arrived while the validators were running.
        if group.status == GroupStatus.VALIDATING:
            group.transition(
                GroupStatus.APPROVED if verdict == GateVerdict.PASS else GroupStatus.NEEDS_APPROVAL
            )
        return group.id

    def get_validation_report(self, group_id: str) -> ValidationReport:
        """Return the validation report of a group.

        Raises:
            GroupNotFoundError: If no group has this id.
            ChangeGateError: If the group has no report (validation crashed).
        """
        group = self.get_group(group_id)
        if group.report is None:
            raise ChangeGateError(f"Group {group_id} has no validation report")
        return group.report

    async def approve(self, group_id: str, approver: str) -> ApprovalDecision:
        """Record an approval.

        Raises:
            InvalidTransitionError: If the group is not awaiting a decision.
        """
        group = self.get_group(group_id)
        if group.status == GroupStatus.NEEDS_APPROVAL:
            group.transition(GroupStatus.APPROVED)
        elif group.status != GroupStatus.APPROVED:
            raise InvalidTransitionError(group_id, group.status.value, GroupStatus.APPROVED.value)

        decision = ApprovalDecision(
            group_id=group_id,
            approver=approver,
            decision=Decision.APPROVED,
            timestamp=datetime.now(UTC),
        )
        group.decision = decision
        await self.audit.record(
            actor=approver,
            group_id=group_id,
            stage="approval",
            outcome="approved",
            detail={"overall_severity": self._severity(group)},
        )
        logger.info("change_group_approved", group_id=group_id, approver=approver)
        return decision

    async def reject(self, group_id: str, approver: str, reason: str) -> ApprovalDecision:
        """Record a rejection. The group becomes terminal.

        Raises:
            InvalidTransitionError: If the group can no longer be rejected.
        """
        group = self.get_group(group_id)
        group.transition(GroupStatus.REJECTED)

        decision = ApprovalDecision(
            group_id=group_id,
            approver=approver,
            decision=Decision.REJECTED,
            timestamp=datetime.now(UTC),
            reason=reason,
        )
        group.decision = decision
        await self.audit.record(
            actor=approver,
            group_id=group_id,
            stage="approval",
            outcome="rejected",
            detail={"reason": reason, "overall_severity": self._severity(group)},
        )
        logger.info("change_group_rejected", group_id=group_id, approver=approver)
        return decision

    async def cancel(self, group_id: str, actor: str) -> GroupStatus:
        """Cancel a group.

        Before applying, the group is rejected immediately. While applying,
        the request is recorded and takes effect only once the group is
        terminal (it is never interrupted mid-write).

        Returns:
            The group status after the request.

        Raises:
            InvalidTransitionError: If the group is already terminal.
        """
        group = self.get_group(group_id)
        if group.status == GroupStatus.APPLYING:
            group.cancel_requested = True
            await self.audit.record(
                actor=actor, group_id=group_id, stage="cancellation", outcome="deferred"
            )
            logger.info("cancel_deferred", group_id=group_id)
            return group.status

        group.transition(GroupStatus.REJECTED)
        await self.audit.record(
            actor=actor, group_id=group_id, stage="cancellation", outcome="rejected"
        )
        logger.info("change_group_cancelled", group_id=group_id)
        return group.status

    async def apply(self, group_id: str, actor: str = "system") -> ApplyResult:
        """Apply a group if the gate allows it.

        Args:
            group_id: The change group.
            actor: Who requested the apply.

        Returns:
            APPROVAL_REQUIRED or REJECTED when the gate refuses, otherwise
            the terminal APPLIED / ROLLED_BACK result.

        Raises:
            GroupNotFoundError: If no group has this id.
            InvalidTransitionError: If the group was already applied,
                rolled back, failed or is applying.
            RollbackFailure: If a rollback could not restore every file.
        """
        group = self.get_group(group_id)
        log = logger.bind(group_id=group_id, actor=actor)

        try:
            self._check_gate(group)
        except ValidationFailure as e:
            await self.audit.record(
                actor=actor,
                group_id=group_id,
                stage="apply",
                outcome="rejected",
                detail={"reason": str(e)},
            )
            log.info("apply_refused", reason=str(e))
            return ApplyResult(
                group_id=group_id,
                status=ApplyStatus.REJECTED,
                rollback_reason=str(e),
                failed_stage="gate",
                failure=FailureKind.VALIDATION_FAILURE,
            )

        report = group.report
        if (
            report is None
            or group.status == GroupStatus.NEEDS_APPROVAL
            or self.gate.evaluate(report, group.decision) == GateVerdict.APPROVAL_REQUIRED
        ):
            severity = report.overall_severity.value if report else "unvalidated"
            reason = f"{severity} findings require an approved decision"
            await self.audit.record(
                actor=actor,
                group_id=group_id,
                stage="apply",
                outcome="approval_required",
                detail={"overall_severity": severity},
            )
            log.info("apply_awaiting_approval", overall_severity=severity)
            return ApplyResult(
                group_id=group_id,
                status=ApplyStatus.APPROVAL_REQUIRED,
                rollback_reason=reason,
                failed_stage="gate",
            )

        group.transition(GroupStatus.APPLYING)
        try:
            return await self.applier.apply(group, actor)
        except RollbackFailure:
            log.critical("rollback_failure_raised")
            raise
        finally:
            if group.cancel_requested:
                await self.audit.record(
                    actor=actor,
                    group_id=group_id,
                    stage="cancellation",
                    outcome="resolved",
                    detail={"final_status": group.status.value},
                )

    def _check_gate(self, group: ChangeGroup) -> None:
        """Raise ValidationFailure for rejected groups, InvalidTransitionError otherwise."""
        if group.status == GroupStatus.REJECTED:
            reason = group.decision.reason if group.decision and group.decision.reason else None
            raise ValidationFailure(reason or f"Group {group.id} was rejected")
        report = group.report
        verdict = self.gate.evaluate(report, group.decision) if report is not None else None
        if verdict == GateVerdict.REJECTED:
            raise ValidationFailure(f"Group {group.id} was rejected")
        if group.status not in (GroupStatus.APPROVED, GroupStatus.NEEDS_APPROVAL):
            raise InvalidTransitionError(group.id, group.status.value, GroupStatus.APPLYING.value)

    async def get_audit_trail(self, audit_filter: AuditFilter | None = None) -> list[AuditEntry]:
        """Return audit entries matching the filter."""
        return await self.audit.query(audit_filter)

    async def recover(self) -> list[ApplyResult]:
        """Roll back groups left mid-apply by a previous process.

        Every leftover manifest is processed; partial restorations are
        escalated, and the first one is raised once all are done.

        Returns:
            One ROLLED_BACK result per recovered group.

        Raises:
            RollbackFailure: If any recovered group could not be fully restored.
        """
        manifests = self.applier.manifests
        if manifests is None:
            return []

        results: list[ApplyResult] = []
        partial: list[ApplyResult] = []
        for pending in await manifests.pending():
            failed = await self.applier.restore(pending.snapshots)
            result = ApplyResult(
                group_id=pending.group_id,
                status=ApplyStatus.FAILED if failed else ApplyStatus.ROLLED_BACK,
                rollback_reason="interrupted apply recovered at startup",
                failed_stage="recovery",
                failure=FailureKind.ROLLBACK_FAILURE if failed else None,
                partial_rollback=bool(failed),
                failed_restorations=tuple(failed),
            )
            await self.audit.record(
                actor=pending.actor,
                group_id=pending.group_id,
                stage="recovery",
                outcome="partial" if failed else "rolled_back",
                detail={
                    "started_at": pending.started_at.isoformat(),
                    "paths": pending.paths,
                    "restored": [
                        s.path for s in reversed(pending.snapshots) if s.path not in failed
                    ],
                    "failed_restorations": failed,
                },
            )
            await manifests.complete(pending.group_id)
            if failed:
                await self.applier.escalate(result)
                partial.append(result)
            results.append(result)
            logger.info("group_recovered", group_id=pending.group_id, partial=bool(failed))

        if partial:
            raise RollbackFailure(partial[0])
        return results

    @staticmethod
    def _severity(group: ChangeGroup) -> str | None:
        return group.report.overall_severity.value if group.report else None
