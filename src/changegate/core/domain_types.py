"""Domain types - Immutable Pydantic models defining core domain objects.

This module contains the data structures shared by the validators, the
approval gate, the applier and the audit sink. All models are frozen
(immutable) so a report or decision can be handed between coroutines
without copying.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """Shared severity taxonomy for every validator.

    Members are ordered: LOW < MEDIUM < HIGH < CRITICAL.
    """

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Numeric rank used for ordering (higher is worse)."""
        return _SEVERITY_RANK[self]

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def highest(cls, severities: list[Severity]) -> Severity:
        """Return the worst severity, LOW for an empty list.

        Args:
            severities: Severities to compare.

        Returns:
            The maximum severity.
        """
        return max(severities, key=lambda s: s.rank, default=cls.LOW)


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class FileOp(str, Enum):
    """Kind of edit applied to a single path."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class FileChange(BaseModel):
    """One proposed file edit.

    The previous content is deliberately absent: it is captured at apply
    time, immediately before the write, because the file may change
    between submission and apply.

    Attributes:
        path: Workspace-relative path.
        new_content: Bytes to write. Ignored for deletes.
        op: Create, modify or delete.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    new_content: bytes = b""
    op: FileOp = FileOp.MODIFY


class Snapshot(BaseModel):
    """Pre-write state of one path, captured at apply time.

    Attributes:
        path: Workspace-relative path.
        existed: Whether the path existed before the write.
        content: Previous bytes, None when the path was absent.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    existed: bool
    content: bytes | None = None


class TestRunSummary(BaseModel):
    """Test run metadata submitted alongside a change group.

    Attributes:
        total: Number of tests collected.
        passed: Number of passing tests.
        failed: Number of failing tests.
        skipped: Number of skipped tests.
        durations_ms: Per-test durations, if reported.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True)

    total: int
    passed: int
    failed: int = 0
    skipped: int = 0
    durations_ms: tuple[float, ...] = ()


class Artifact(BaseModel):
    """A single file's proposed content as seen by the validators.

    Attributes:
        path: Workspace-relative path.
        content: Decoded text of the proposed content.
        test_results: Optional test metadata for the owning group.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    content: str
    test_results: TestRunSummary | None = None

    @property
    def suffix(self) -> str:
        """Lower-cased file extension including the dot."""
        name = self.path.rsplit("/", 1)[-1]
        return "." + name.rsplit(".", 1)[-1].lower() if "." in name else ""


class ValidationFinding(BaseModel):
    """A single issue reported by a validator.

    Attributes:
        severity: Shared severity level.
        kind: Machine-readable issue type (e.g. "hardcoded_secret").
        message: Human-readable description.
        source_validator: Name of the validator that produced it.
        location: Optional "path:line" reference.
        verified: False when an external lookup could not confirm it.
    """

    model_config = ConfigDict(frozen=True)

    severity: Severity
    kind: str
    message: str
    source_validator: str
    location: str | None = None
    verified: bool = True


class ValidationReport(BaseModel):
    """Merged findings for one change group.

    Contains no timestamps so that re-running the pipeline on unchanged
    input produces a byte-identical serialization.

    Attributes:
        group_id: The change group validated.
        findings: All findings in deterministic order.
        overall_severity: Maximum severity over findings (LOW if none).
        requires_approval: Whether a human decision is needed.
    """

    model_config = ConfigDict(frozen=True)

    group_id: str
    findings: tuple[ValidationFinding, ...] = ()
    overall_severity: Severity = Severity.LOW
    requires_approval: bool = False

    def by_severity(self, severity: Severity) -> list[ValidationFinding]:
        """Return findings of exactly the given severity."""
        return [f for f in self.findings if f.severity == severity]


class Decision(str, Enum):
    """Human decision on a change group."""

    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(BaseModel):
    """Human decision recorded against a change group.

    Attributes:
        group_id: The change group decided on.
        approver: Who made the decision.
        decision: Approved or rejected.
        timestamp: When the decision was made (UTC).
        reason: Optional explanation, required for rejections by the API.
    """

    model_config = ConfigDict(frozen=True)

    group_id: str
    approver: str
    decision: Decision
    timestamp: datetime
    reason: str | None = None


class AuditEntry(BaseModel):
    """Append-only record of a decision or outcome.

    Attributes:
        sequence: Monotonic position assigned by the audit sink.
        timestamp: When the entry was recorded (UTC).
        actor: User or system component responsible.
        group_id: Related change group, or the database operation id.
        stage: Pipeline stage (validation, approval, apply, rollback, ...).
        outcome: Short result label (passed, blocked, applied, ...).
        detail: Raw structured detail.
    """

    model_config = ConfigDict(frozen=True)

    sequence: int
    timestamp: datetime
    actor: str
    group_id: str
    stage: str
    outcome: str
    detail: dict[str, Any] = Field(default_factory=dict)


class ApplyStatus(str, Enum):
    """Outcome reported to the caller of apply()."""

    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    APPROVAL_REQUIRED = "approval_required"
    REJECTED = "rejected"


class FailureKind(str, Enum):
    """Error taxonomy carried in structured results."""

    VALIDATION_FAILURE = "validation_failure"
    APPLY_IO_FAILURE = "apply_io_failure"
    POST_CHECK_FAILURE = "post_check_failure"
    ROLLBACK_FAILURE = "rollback_failure"
    UNEXPECTED_FAILURE = "unexpected_failure"


class ApplyResult(BaseModel):
    """Structured outcome of an apply request.

    Attributes:
        group_id: The change group.
        status: Terminal status or gate state.
        applied_files: Paths written, in declared order (empty unless applied).
        rollback_reason: Why the group was rolled back or refused.
        failed_stage: Stage that failed (snapshot, write, post_check, ...).
        failure: Error taxonomy entry, if any.
        partial_rollback: True when some restorations failed.
        failed_restorations: Paths that could not be restored.
    """

    model_config = ConfigDict(frozen=True)

    group_id: str
    status: ApplyStatus
    applied_files: tuple[str, ...] = ()
    rollback_reason: str | None = None
    failed_stage: str | None = None
    failure: FailureKind | None = None
    partial_rollback: bool = False
    failed_restorations: tuple[str, ...] = ()


class Diagnostic(BaseModel):
    """One issue reported by a diagnostics provider.

    Attributes:
        severity: Provider-specific level ("error", "warning", ...).
        location: "path:line[:col]" reference.
        message: Description of the issue.
    """

    model_config = ConfigDict(frozen=True)

    severity: str
    location: str
    message: str

    @property
    def path(self) -> str:
        """Path part of the location."""
        return self.location.split(":", 1)[0]

    def fingerprint(self) -> tuple[str, str, str]:
        """Identity used when comparing against a baseline.

        Line numbers are excluded since edits shift them.
        """
        return (self.path, self.severity, self.message)
