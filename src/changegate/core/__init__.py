"""Core domain - Change groups, validation, approval and atomic apply.

ChangeGateService lives in changegate.core.service and is imported from
there, since it depends on the audit adapter.
"""

from .applier import ApplierConfig, AtomicApplier, PathLocks
from .approval import ApprovalGate, GateVerdict
from .domain_types import (
    ApplyResult,
    ApplyStatus,
    ApprovalDecision,
    Artifact,
    AuditEntry,
    Decision,
    Diagnostic,
    FailureKind,
    FileChange,
    FileOp,
    Severity,
    Snapshot,
    TestRunSummary,
    ValidationFinding,
    ValidationReport,
)
from .exceptions import (
    AlertDeliveryError,
    ApplyIOFailure,
    BackupFailure,
    ChangeGateError,
    CrossEnvironmentViolation,
    GroupNotFoundError,
    InvalidTransitionError,
    OperationBlocked,
    PostCheckFailure,
    RegistryLookupTimeout,
    RollbackFailure,
    ValidationFailure,
)
from .interfaces import (
    AlertSink,
    AuditStore,
    DiagnosticsProvider,
    FileStore,
    PackageRegistry,
    RouteTable,
    Validator,
)
from .manifest import ManifestStore, PendingManifest
from .pipeline import PipelineConfig, ValidationPipeline
from .state import TERMINAL_STATES, TRANSITIONS, ChangeGroup, GroupStatus

__all__ = [
    # Domain types
    "ApplyResult",
    "ApplyStatus",
    "ApprovalDecision",
    "Artifact",
    "AuditEntry",
    "Decision",
    "Diagnostic",
    "FailureKind",
    "FileChange",
    "FileOp",
    "Severity",
    "Snapshot",
    "TestRunSummary",
    "ValidationFinding",
    "ValidationReport",
    # Exceptions
    "AlertDeliveryError",
    "ApplyIOFailure",
    "BackupFailure",
    "ChangeGateError",
    "CrossEnvironmentViolation",
    "GroupNotFoundError",
    "InvalidTransitionError",
    "OperationBlocked",
    "PostCheckFailure",
    "RegistryLookupTimeout",
    "RollbackFailure",
    "ValidationFailure",
    # Interfaces
    "AlertSink",
    "AuditStore",
    "DiagnosticsProvider",
    "FileStore",
    "PackageRegistry",
    "RouteTable",
    "Validator",
    # State
    "ChangeGroup",
    "GroupStatus",
    "TERMINAL_STATES",
    "TRANSITIONS",
    # Components
    "ApplierConfig",
    "ApprovalGate",
    "AtomicApplier",
    "GateVerdict",
    "ManifestStore",
    "PathLocks",
    "PendingManifest",
    "PipelineConfig",
    "ValidationPipeline",
]
