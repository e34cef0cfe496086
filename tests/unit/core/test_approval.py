"""Unit tests for the approval gate."""

from __future__ import annotations

from datetime import UTC, datetime

from changegate.core.approval import ApprovalGate, GateVerdict
from changegate.core.domain_types import ApprovalDecision, Decision, Severity, ValidationReport


def _decision(decision: Decision, group_id: str = "group-001") -> ApprovalDecision:
    return ApprovalDecision(
        group_id=group_id,
        approver="alice",
        decision=decision,
        timestamp=datetime(2024, 1, 15, tzinfo=UTC),
    )


class TestApprovalGate:
    """Tests for ApprovalGate.evaluate."""

    def test_low_passes(self) -> None:
        """Test an empty report passes automatically."""
        assert ApprovalGate().evaluate(ValidationReport(group_id="g")) == GateVerdict.PASS

    def test_medium_passes(self, medium_report: ValidationReport) -> None:
        """Test medium proceeds without a decision."""
        assert ApprovalGate().evaluate(medium_report) == GateVerdict.PASS

    def test_critical_requires_approval(self, critical_report: ValidationReport) -> None:
        """Test critical never auto-passes."""
        assert ApprovalGate().evaluate(critical_report) == GateVerdict.APPROVAL_REQUIRED

    def test_critical_requires_approval_even_with_raised_threshold(
        self, critical_report: ValidationReport
    ) -> None:
        """Test critical needs a decision whatever the threshold."""
        report = critical_report.model_copy(update={"requires_approval": False})
        gate = ApprovalGate(threshold=Severity.CRITICAL)
        assert gate.evaluate(report) == GateVerdict.APPROVAL_REQUIRED

    def test_critical_with_approval_passes(self, critical_report: ValidationReport) -> None:
        """Test an approved decision unlocks a critical group."""
        verdict = ApprovalGate().evaluate(critical_report, _decision(Decision.APPROVED))
        assert verdict == GateVerdict.PASS

    def test_rejected_decision_blocks(self, medium_report: ValidationReport) -> None:
        """Test a rejection blocks even a medium group."""
        verdict = ApprovalGate().evaluate(medium_report, _decision(Decision.REJECTED))
        assert verdict == GateVerdict.REJECTED

    def test_decision_for_another_group_is_ignored(
        self, critical_report: ValidationReport
    ) -> None:
        """Test approvals only count for their own group."""
        verdict = ApprovalGate().evaluate(
            critical_report, _decision(Decision.APPROVED, group_id="other")
        )
        assert verdict == GateVerdict.APPROVAL_REQUIRED

    def test_high_requires_approval(self) -> None:
        """Test high at the default threshold needs a decision."""
        report = ValidationReport(
            group_id="g", overall_severity=Severity.HIGH, requires_approval=True
        )
        assert ApprovalGate().evaluate(report) == GateVerdict.APPROVAL_REQUIRED
