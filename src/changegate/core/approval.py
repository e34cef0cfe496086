"""Approval Gate - The single decision point between validation and apply."""

from __future__ import annotations

from enum import Enum

import structlog

from .domain_types import ApprovalDecision, Decision, Severity, ValidationReport

logger = structlog.get_logger()


class GateVerdict(str, Enum):
    """Outcome of evaluating a report against a decision."""

    PASS = "pass"
    APPROVAL_REQUIRED = "approval_required"
    REJECTED = "rejected"


class ApprovalGate:
    """Decides whether a validated group may proceed to apply.

    Rules:
    - A rejected decision always blocks
    - Critical never passes without an approved decision
    - At or above the threshold needs an approved decision
    - Below the threshold passes automatically (and is still recorded)
    """

    def __init__(self, threshold: Severity = Severity.HIGH) -> None:
        """Initialize the gate.

        Args:
            threshold: Lowest severity requiring a human decision. Critical
                always requires one, whatever this is set to.
        """
        self.threshold = threshold

    def needs_decision(self, report: ValidationReport) -> bool:
        """Check whether a report can only pass with an approved decision."""
        return (
            report.requires_approval
            or report.overall_severity >= self.threshold
            or report.overall_severity == Severity.CRITICAL
        )

    def evaluate(
        self, report: ValidationReport, decision: ApprovalDecision | None = None
    ) -> GateVerdict:
        """Evaluate a report.

        Args:
            report: Validation report for the group.
            decision: Recorded human decision, if any.

        Returns:
            The gate verdict.
        """
        if decision is not None and decision.group_id != report.group_id:
            decision = None

        if decision is not None and decision.decision == Decision.REJECTED:
            verdict = GateVerdict.REJECTED
        elif not self.needs_decision(report):
            verdict = GateVerdict.PASS
        elif decision is not None and decision.decision == Decision.APPROVED:
            verdict = GateVerdict.PASS
        else:
            verdict = GateVerdict.APPROVAL_REQUIRED

        logger.debug(
            "gate_evaluated",
            group_id=report.group_id,
            overall_severity=report.overall_severity.value,
            verdict=verdict.value,
        )
        return verdict
