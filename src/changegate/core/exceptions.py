"""Domain-specific exceptions.

All exceptions in the changegate system inherit from ChangeGateError,
making it easy to catch all system errors while still being able
to handle specific error types.

Only RollbackFailure is an operator-facing condition. Every other
failure is reported to the caller as a structured result and is safe
to retry by submitting a fresh change group.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .domain_types import ApplyResult


class ChangeGateError(Exception):
    """Base exception for all changegate errors.

    All custom exceptions in the system should inherit from this class
    to enable catching all changegate-specific errors with a single except clause.
    """

    pass


class GroupNotFoundError(ChangeGateError):
    """No change group is registered under the requested id."""

    pass


class InvalidTransitionError(ChangeGateError):
    """A change group was asked to move to a state it cannot reach.

    Terminal states are permanent, so this is also raised when a group
    is applied a second time.
    """

    def __init__(self, group_id: str, current: str, target: str) -> None:
        """Initialize InvalidTransitionError.

        Args:
            group_id: The change group.
            current: Its current status.
            target: The requested status.
        """
        super().__init__(f"Group {group_id} cannot move from {current} to {target}")
        self.group_id = group_id
        self.current = current
        self.target = target


class ValidationFailure(ChangeGateError):
    """The group was rejected at the gate.

    The caller must revise the change and submit a new group.
    """

    pass


class ApplyIOFailure(ChangeGateError):
    """A write or delete failed mid-transaction.

    Raised inside the applier for I/O errors and for op preconditions
    that no longer hold at apply time (e.g. a create whose target now
    exists). Always triggers a rollback.
    """

    def __init__(self, path: str, message: str) -> None:
        """Initialize ApplyIOFailure.

        Args:
            path: The file being written when the failure occurred.
            message: Error description.
        """
        super().__init__(f"{path}: {message}")
        self.path = path


class PostCheckFailure(ChangeGateError):
    """Diagnostics reported issues that were absent before the change.

    Attributes:
        regressions: Human readable descriptions of the new issues.
    """

    def __init__(self, regressions: list[str]) -> None:
        """Initialize PostCheckFailure.

        Args:
            regressions: New diagnostics introduced by the change.
        """
        super().__init__(f"{len(regressions)} new diagnostic(s) after apply")
        self.regressions = regressions


class RollbackFailure(ChangeGateError):
    """Restoring one or more files failed during rollback.

    This is the single unrecoverable state. It is FATAL and escalated
    to operators; it must never be retried automatically.

    Attributes:
        result: The terminal apply result, with partial_rollback set.
    """

    def __init__(self, result: ApplyResult) -> None:
        """Initialize RollbackFailure.

        Args:
            result: The failed apply result.
        """
        failed = ", ".join(result.failed_restorations)
        super().__init__(
            f"Partial rollback of group {result.group_id}; manual remediation needed for: {failed}"
        )
        self.result = result


class BackupFailure(ChangeGateError):
    """A required backup could not be created or verified.

    The guarded database operation is aborted (fail-closed); it is never
    allowed to proceed without a backup.
    """

    pass


class RegistryLookupTimeout(ChangeGateError):
    """An external registry or route lookup did not answer in time.

    Callers degrade the affected check to an "unverified" finding
    instead of failing the whole pipeline.
    """

    def __init__(self, target: str, attempts: int) -> None:
        """Initialize RegistryLookupTimeout.

        Args:
            target: What was being looked up.
            attempts: Number of attempts made.
        """
        super().__init__(f"Lookup of {target} failed after {attempts} attempt(s)")
        self.target = target
        self.attempts = attempts


class CrossEnvironmentViolation(ChangeGateError):
    """A development (or staging) context tried to reach production.

    Raised regardless of the statement's severity.
    """

    pass


class OperationBlocked(ChangeGateError):
    """A guarded database operation needs approval that was not given."""

    pass


class AlertDeliveryError(ChangeGateError):
    """An operator alert could not be delivered.

    Attributes:
        channel: Where the alert was going.
        status_code: HTTP status, when the channel answered at all.
    """

    def __init__(self, channel: str, reason: str, status_code: int | None = None) -> None:
        """Initialize AlertDeliveryError.

        Args:
            channel: Where the alert was going.
            reason: What went wrong.
            status_code: HTTP status of the rejected delivery.
        """
        super().__init__(f"Alert delivery to {channel} failed: {reason}")
        self.channel = channel
        self.status_code = status_code
