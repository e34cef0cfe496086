"""Unit tests for DatabaseGuardian."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from changegate.adapters.audit import AuditFilter, AuditSink
from changegate.core.domain_types import ApprovalDecision, Decision, Severity
from changegate.core.exceptions import BackupFailure, CrossEnvironmentViolation, OperationBlocked
from changegate.safety.backup import BackupManager, BackupRecord, BackupRequest
from changegate.safety.database_guardian import DatabaseGuardian, Environment, OperationContext


def _approval(operation_id: str, decision: Decision = Decision.APPROVED) -> ApprovalDecision:
    return ApprovalDecision(
        group_id=operation_id,
        approver="dba",
        decision=decision,
        timestamp=datetime(2024, 1, 15, tzinfo=UTC),
    )


class FakeBackupProvider:
    """Backup provider recording requests."""

    def __init__(self, verified: bool = True) -> None:
        self.verified = verified
        self.requests: list[BackupRequest] = []

    async def create_backup(self, request: BackupRequest) -> BackupRecord:
        self.requests.append(request)
        return BackupRecord(
            backup_id=f"backup-{len(self.requests)}",
            created_at=datetime(2024, 1, 15, tzinfo=UTC),
            location="/backups/b.sqlite",
            size_bytes=4096,
            checksum="abc",
            tables=request.tables,
        )

    async def verify(self, record: BackupRecord) -> bool:
        return self.verified


@pytest.fixture
def guardian(audit_sink: AuditSink) -> DatabaseGuardian:
    """Return a guardian with a working backup manager."""
    manager = BackupManager(FakeBackupProvider(), audit=audit_sink)
    return DatabaseGuardian(backup_manager=manager, audit=audit_sink)


class TestClassify:
    """Tests for DatabaseGuardian.classify."""

    @pytest.mark.parametrize(
        ("sql", "expected"),
        [
            ("DROP TABLE users", Severity.CRITICAL),
            ("drop table if exists sessions", Severity.CRITICAL),
            ("TRUNCATE TABLE logs", Severity.CRITICAL),
            ("DELETE FROM users", Severity.HIGH),
            ("DELETE FROM users WHERE 1=1", Severity.HIGH),
            ("DELETE FROM users WHERE TRUE", Severity.HIGH),
            ("DELETE FROM users WHERE id = 5", Severity.LOW),
            ("ALTER TABLE users ADD COLUMN age INT", Severity.HIGH),
            ("UPDATE users SET active = false", Severity.MEDIUM),
            ("UPDATE users SET active = false WHERE 1 = 1", Severity.MEDIUM),
            ("UPDATE users SET active = false WHERE id = 3", Severity.LOW),
            ("CREATE TABLE t (id INT)", Severity.MEDIUM),
            ("INSERT INTO logs (msg) VALUES ('hi')", Severity.LOW),
            ("SELECT * FROM users", Severity.LOW),
        ],
    )
    def test_examples(self, guardian: DatabaseGuardian, sql: str, expected: Severity) -> None:
        """Test representative statements."""
        assert guardian.classify(sql) == expected

    def test_multi_statement_takes_maximum(self, guardian: DatabaseGuardian) -> None:
        """Test the worst statement decides."""
        assert guardian.classify("SELECT 1; DROP TABLE users") == Severity.CRITICAL

    def test_unrecognised_is_high(self, guardian: DatabaseGuardian) -> None:
        """Test text that is not SQL is treated as risky."""
        assert guardian.classify("frobnicate the whole database now") == Severity.HIGH

    def test_empty_is_low(self, guardian: DatabaseGuardian) -> None:
        """Test empty text is harmless."""
        assert guardian.classify("   ") == Severity.LOW

    @pytest.mark.parametrize(
        ("severity", "expected"),
        [
            (Severity.LOW, False),
            (Severity.MEDIUM, False),
            (Severity.HIGH, True),
            (Severity.CRITICAL, True),
        ],
    )
    def test_requires_approval(
        self, guardian: DatabaseGuardian, severity: Severity, expected: bool
    ) -> None:
        """Test only high and critical need approval."""
        assert guardian.requires_approval(severity) is expected


class TestAssess:
    """Tests for DatabaseGuardian.assess."""

    def test_collects_tables(self, guardian: DatabaseGuardian) -> None:
        """Test referenced tables are listed sorted."""
        assessment = guardian.assess("SELECT * FROM orders JOIN accounts ON orders.a = accounts.id")
        assert assessment.tables == ("accounts", "orders")
        assert assessment.backup_required is False

    def test_protected_table_write_needs_backup(self, guardian: DatabaseGuardian) -> None:
        """Test a scoped write to a protected table still needs a backup."""
        assessment = guardian.assess("DELETE FROM payments WHERE id = 7")

        assert assessment.severity == Severity.LOW
        assert assessment.requires_approval is False
        assert assessment.backup_required is True
        assert "touches protected table(s): payments" in assessment.reasons

    def test_high_needs_backup(self, guardian: DatabaseGuardian) -> None:
        """Test high severity always needs a backup."""
        assessment = guardian.assess("DELETE FROM logs")
        assert assessment.backup_required is True
        assert assessment.requires_approval is True


class TestEnvironments:
    """Tests for cross-environment protection."""

    @pytest.mark.parametrize(
        ("target", "expected"),
        [
            ("postgres://app@db.prod.internal/app", Environment.PRODUCTION),
            ("mysql://live-db:3306/shop", Environment.PRODUCTION),
            ("staging-db.internal", Environment.STAGING),
            ("localhost:5432", None),
            ("product-catalog.internal", None),
        ],
    )
    def test_resolve_target(
        self, guardian: DatabaseGuardian, target: str, expected: Environment | None
    ) -> None:
        """Test targets are derived from the connection string."""
        assert guardian.resolve_target(OperationContext(connection_target=target)) == expected

    def test_explicit_target_wins(self, guardian: DatabaseGuardian) -> None:
        """Test an explicit target overrides the connection string."""
        context = OperationContext(
            target_environment=Environment.STAGING, connection_target="db.prod.internal"
        )
        assert guardian.resolve_target(context) == Environment.STAGING

    @pytest.mark.parametrize("invoking", [Environment.DEVELOPMENT, Environment.STAGING])
    def test_production_forbidden(self, guardian: DatabaseGuardian, invoking: Environment) -> None:
        """Test non-production contexts never reach production."""
        context = OperationContext(
            invoking_environment=invoking, target_environment=Environment.PRODUCTION
        )
        with pytest.raises(CrossEnvironmentViolation):
            guardian.cross_environment_check(context)

    def test_production_to_production_allowed(self, guardian: DatabaseGuardian) -> None:
        """Test production contexts may operate on production."""
        guardian.cross_environment_check(
            OperationContext(
                invoking_environment=Environment.PRODUCTION,
                target_environment=Environment.PRODUCTION,
            )
        )


class TestExecute:
    """Tests for DatabaseGuardian.execute."""

    async def test_low_runs_and_is_audited(
        self, guardian: DatabaseGuardian, audit_sink: AuditSink
    ) -> None:
        """Test a safe statement runs without approval or backup."""
        run = AsyncMock(return_value=[(1,)])
        context = OperationContext(actor="agent", operation_id="op-1")

        result = await guardian.execute("SELECT * FROM logs", context, run)

        assert result == [(1,)]
        run.assert_awaited_once_with("SELECT * FROM logs")
        entries = await audit_sink.query(AuditFilter(group_id="op-1"))
        assert [(e.stage, e.outcome) for e in entries] == [("database", "executed")]
        assert entries[0].detail["backup_id"] is None

    async def test_cross_environment_blocks_even_select(
        self, guardian: DatabaseGuardian, audit_sink: AuditSink
    ) -> None:
        """Test the environment check ignores severity."""
        run = AsyncMock()
        context = OperationContext(connection_target="db.prod.internal", operation_id="op-2")

        with pytest.raises(CrossEnvironmentViolation):
            await guardian.execute("SELECT 1", context, run)

        run.assert_not_awaited()
        entries = await audit_sink.query(AuditFilter(group_id="op-2"))
        assert entries[0].outcome == "blocked"
        assert entries[0].detail["target_environment"] == "production"

    async def test_critical_without_approval_is_blocked(
        self, guardian: DatabaseGuardian, audit_sink: AuditSink
    ) -> None:
        """Test DROP needs an approved decision."""
        run = AsyncMock()
        context = OperationContext(operation_id="op-3")

        with pytest.raises(OperationBlocked):
            await guardian.execute("DROP TABLE users", context, run)

        run.assert_not_awaited()
        entries = await audit_sink.query(AuditFilter(group_id="op-3", stage="database"))
        assert entries[0].outcome == "blocked"

    async def test_approval_for_other_operation_does_not_count(
        self, guardian: DatabaseGuardian
    ) -> None:
        """Test approvals are bound to their operation id."""
        with pytest.raises(OperationBlocked):
            await guardian.execute(
                "DROP TABLE users",
                OperationContext(operation_id="op-4"),
                AsyncMock(),
                approval=_approval("op-other"),
            )

    async def test_rejected_decision_blocks(self, guardian: DatabaseGuardian) -> None:
        """Test a rejection is not an approval."""
        with pytest.raises(OperationBlocked):
            await guardian.execute(
                "DELETE FROM logs",
                OperationContext(operation_id="op-5"),
                AsyncMock(),
                approval=_approval("op-5", Decision.REJECTED),
            )

    async def test_approved_critical_backs_up_first(
        self, guardian: DatabaseGuardian, audit_sink: AuditSink
    ) -> None:
        """Test an approved DROP runs after a verified backup."""
        run = AsyncMock(return_value=None)
        context = OperationContext(operation_id="op-6", actor="agent")

        await guardian.execute("DROP TABLE users", context, run, approval=_approval("op-6"))

        run.assert_awaited_once()
        entries = await audit_sink.query(AuditFilter(group_id="op-6"))
        assert [(e.stage, e.outcome) for e in entries] == [
            ("backup", "verified"),
            ("database", "executed"),
        ]
        assert entries[1].detail["backup_id"] == "backup-1"
        assert entries[1].detail["approver"] == "dba"

    async def test_backup_failure_aborts(self, audit_sink: AuditSink) -> None:
        """Test an unverifiable backup stops the operation."""
        manager = BackupManager(FakeBackupProvider(verified=False), audit=audit_sink)
        guardian = DatabaseGuardian(backup_manager=manager, audit=audit_sink)
        run = AsyncMock()

        with pytest.raises(BackupFailure):
            await guardian.execute(
                "DROP TABLE users",
                OperationContext(operation_id="op-7"),
                run,
                approval=_approval("op-7"),
            )

        run.assert_not_awaited()
        entries = await audit_sink.query(AuditFilter(group_id="op-7", stage="database"))
        assert entries[0].outcome == "blocked"

    async def test_missing_backup_manager_fails_closed(self, audit_sink: AuditSink) -> None:
        """Test a backup-required operation without a manager is refused."""
        guardian = DatabaseGuardian(audit=audit_sink)
        run = AsyncMock()

        with pytest.raises(BackupFailure):
            await guardian.execute(
                "DELETE FROM payments WHERE id = 1", OperationContext(operation_id="op-8"), run
            )

        run.assert_not_awaited()

    async def test_run_failure_is_audited(
        self, guardian: DatabaseGuardian, audit_sink: AuditSink
    ) -> None:
        """Test an execution error is recorded and re-raised."""
        run = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(RuntimeError):
            await guardian.execute("SELECT 1", OperationContext(operation_id="op-9"), run)

        entries = await audit_sink.query(AuditFilter(group_id="op-9"))
        assert entries[0].outcome == "failed"
        assert entries[0].detail["error"] == "connection reset"
