"""Change group lifecycle.

A ChangeGroup is created by the submitting caller, validated by the
pipeline, gated by approval and consumed exactly once by the applier.
Its files are immutable; only the status moves, and only along the
edges in TRANSITIONS. Terminal states are permanent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .domain_types import ApprovalDecision, FileChange, TestRunSummary, ValidationReport
from .exceptions import InvalidTransitionError


class GroupStatus(str, Enum):
    """States of the change group state machine."""

    CREATED = "created"
    VALIDATING = "validating"
    NEEDS_APPROVAL = "needs_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLYING = "applying"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {GroupStatus.APPLIED, GroupStatus.ROLLED_BACK, GroupStatus.REJECTED, GroupStatus.FAILED}
)

TRANSITIONS: dict[GroupStatus, frozenset[GroupStatus]] = {
    GroupStatus.CREATED: frozenset({GroupStatus.VALIDATING, GroupStatus.REJECTED}),
    # Reports below the approval threshold pass straight to APPROVED.
    GroupStatus.VALIDATING: frozenset(
        {GroupStatus.NEEDS_APPROVAL, GroupStatus.APPROVED, GroupStatus.REJECTED}
    ),
    GroupStatus.NEEDS_APPROVAL: frozenset({GroupStatus.APPROVED, GroupStatus.REJECTED}),
    GroupStatus.APPROVED: frozenset({GroupStatus.APPLYING, GroupStatus.REJECTED}),
    GroupStatus.APPLYING: frozenset(
        {GroupStatus.APPLIED, GroupStatus.ROLLED_BACK, GroupStatus.FAILED}
    ),
    GroupStatus.APPLIED: frozenset(),
    GroupStatus.ROLLED_BACK: frozenset(),
    GroupStatus.REJECTED: frozenset(),
    GroupStatus.FAILED: frozenset(),
}


@dataclass
class ChangeGroup:
    """An atomic unit of one or more file edits submitted together.

    Attributes:
        id: Unique group identifier.
        files: Ordered file changes; applied in this order.
        created_at: Submission time (UTC).
        submitted_by: Actor that submitted the group.
        status: Current lifecycle state.
        test_results: Optional test metadata passed to validators.
        report: Validation report, set once validation completes.
        decision: Recorded human decision, if any.
        cancel_requested: Set when cancellation arrives during APPLYING.
        finished_at: When the group reached a terminal state (UTC).
    """

    id: str
    files: tuple[FileChange, ...]
    created_at: datetime
    submitted_by: str = "system"
    status: GroupStatus = GroupStatus.CREATED
    test_results: TestRunSummary | None = None
    report: ValidationReport | None = None
    decision: ApprovalDecision | None = None
    cancel_requested: bool = False
    history: list[GroupStatus] = field(default_factory=list)
    finished_at: datetime | None = None

    @property
    def paths(self) -> list[str]:
        """Paths touched by the group, in declared order."""
        return [change.path for change in self.files]

    def can_transition(self, target: GroupStatus) -> bool:
        """Check whether target is reachable from the current status."""
        return target in TRANSITIONS[self.status]

    def transition(self, target: GroupStatus) -> None:
        """Move to target, recording the previous status.

        Args:
            target: Next status.

        Raises:
            InvalidTransitionError: If the edge does not exist.
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.history.append(self.status)
        self.status = target
        if target.is_terminal:
            self.finished_at = datetime.now(UTC)
