"""Database Guardian - Risk classification for database operations.

Every SQL statement an agent wants to run is classified before it is
allowed anywhere near a connection. Classification uses sqlglot for
proper parsing; regex rules are only a fallback for text sqlglot cannot
parse, and anything still unrecognised is treated as high risk.

SAFETY IS NON-NEGOTIABLE:
- DROP / TRUNCATE are critical and always need approval
- Mass deletes and schema changes are high and need approval
- High and critical operations need a verified backup first
- Development and staging contexts never reach production
- Every attempt is audited, including blocked and failed ones
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

import sqlglot
import structlog
from pydantic import BaseModel, ConfigDict
from sqlglot import exp
from sqlglot.errors import SqlglotError

from changegate.adapters.audit import AuditSink
from changegate.core.domain_types import ApprovalDecision, Decision, Severity
from changegate.core.exceptions import BackupFailure, CrossEnvironmentViolation, OperationBlocked

from .backup import BackupRecord, BackupRequest
from .rulebook import default_rulebook

if TYPE_CHECKING:
    from .backup import BackupManager

logger = structlog.get_logger()

T = TypeVar("T")

# Statements that change data or schema.
WRITE_STATEMENTS: tuple[type[exp.Expression], ...] = (
    exp.Delete,
    exp.Update,
    exp.Insert,
    exp.Drop,
    exp.Create,
    exp.TruncateTable,
)


class Environment(str, Enum):
    """Deployment environment of an invoking context or a target."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass(frozen=True)
class OperationContext:
    """Where a database operation comes from and where it goes.

    Attributes:
        invoking_environment: Environment the caller runs in.
        target_environment: Explicit target, if known.
        connection_target: Connection string or host, used to derive the
            target when it is not explicit.
        actor: Who requested the operation.
        operation_id: Identifier used for audit and backup records.
        dialect: sqlglot dialect to parse with.
    """

    invoking_environment: Environment = Environment.DEVELOPMENT
    target_environment: Environment | None = None
    connection_target: str | None = None
    actor: str = "system"
    operation_id: str = "adhoc"
    dialect: str | None = None


class RiskAssessment(BaseModel):
    """Classification of one SQL text.

    Attributes:
        sql: The classified text.
        severity: Maximum severity over all statements.
        requires_approval: True for high and critical.
        backup_required: True when a verified backup must exist first.
        tables: Tables referenced, sorted.
        reasons: Human readable explanations, one per statement.
        parsed: False when the regex fallback was used.
    """

    model_config = ConfigDict(frozen=True)

    sql: str
    severity: Severity
    requires_approval: bool
    backup_required: bool
    tables: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()
    parsed: bool = True


def _is_tautology(node: exp.Expression | None) -> bool:
    """Check whether a WHERE condition is always true (e.g. 1=1)."""
    if node is None:
        return False
    if isinstance(node, exp.Paren):
        return _is_tautology(node.this)
    if isinstance(node, exp.Boolean):
        return node.this is True
    if isinstance(node, exp.Literal) and node.is_number:
        try:
            return float(node.this) != 0
        except ValueError:
            return False
    if isinstance(node, exp.Or):
        return _is_tautology(node.left) or _is_tautology(node.right)
    if isinstance(node, exp.And):
        return _is_tautology(node.left) and _is_tautology(node.right)
    if isinstance(node, (exp.EQ, exp.GTE, exp.LTE)):
        return node.left.sql() == node.right.sql()
    return False


def _where_condition(statement: exp.Expression) -> exp.Expression | None:
    where = statement.args.get("where")
    if where is None:
        return None
    return where.this


class DatabaseGuardian:
    """Classifies, gates, backs up and audits database operations.

    Usage:
        guardian = DatabaseGuardian(backup_manager=manager, audit=sink)
        guardian.classify("DROP TABLE users")  # Severity.CRITICAL
        await guardian.execute(sql, context, run=connection.execute, approval=decision)
    """

    def __init__(
        self,
        rules: dict[str, Any] | None = None,
        backup_manager: BackupManager | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        """Initialize the guardian.

        Args:
            rules: Database rule set. Defaults to the packaged rules.
            backup_manager: Manager used for mandatory backups.
            audit: Audit sink. Defaults to an in-memory sink.
        """
        self.rules = rules or default_rulebook().load("database")
        self.backup_manager = backup_manager
        self.audit = audit or AuditSink()

        self._statements = {k: Severity(v) for k, v in self.rules["statements"].items()}
        self._commands = {k.upper(): Severity(v) for k, v in self.rules["commands"].items()}
        self._fallback = [
            (re.compile(rule["pattern"], re.IGNORECASE | re.DOTALL), Severity(rule["severity"]))
            for rule in self.rules["fallback_patterns"]
        ]
        self._unknown = Severity(self.rules["unknown_severity"])
        self._protected = {t.lower() for t in self.rules.get("protected_tables", [])}
        self._env_patterns = [
            (Environment(env), re.compile(pattern, re.IGNORECASE))
            for env, pattern in self.rules.get("environment_patterns", {}).items()
        ]
        self._forbidden = {
            Environment(src): {Environment(t) for t in targets}
            for src, targets in self.rules.get("forbidden_targets", {}).items()
        }

    def classify(self, sql: str, context: OperationContext | None = None) -> Severity:
        """Return the risk severity of a SQL text.

        Args:
            sql: One or more statements.
            context: Optional context (supplies the parse dialect).

        Returns:
            The maximum severity over all statements.

        Examples:
            >>> guardian.classify("DROP TABLE users")
            <Severity.CRITICAL: 'critical'>
            >>> guardian.classify("SELECT * FROM users")
            <Severity.LOW: 'low'>
        """
        return self.assess(sql, context).severity

    def requires_approval(self, severity: Severity) -> bool:
        """High and critical operations need a human approval."""
        return severity >= Severity.HIGH

    def assess(self, sql: str, context: OperationContext | None = None) -> RiskAssessment:
        """Classify a SQL text and work out what it needs before running.

        Args:
            sql: One or more statements.
            context: Optional context (supplies the parse dialect).

        Returns:
            The full risk assessment.
        """
        if not sql or not sql.strip():
            return RiskAssessment(
                sql=sql or "",
                severity=Severity.LOW,
                requires_approval=False,
                backup_required=False,
                reasons=("empty statement",),
            )

        dialect = context.dialect if context else None
        try:
            statements = [s for s in sqlglot.parse(sql, read=dialect) if s is not None]
        except SqlglotError as e:
            logger.info("sql_parse_fallback", error=str(e).splitlines()[0])
            return self._assess_fallback(sql)

        severities: list[Severity] = []
        reasons: list[str] = []
        tables: set[str] = set()
        writes = False

        for statement in statements:
            severity, reason = self._classify_statement(statement)
            severities.append(severity)
            reasons.append(reason)
            tables.update(t.name for t in statement.find_all(exp.Table) if t.name)
            if isinstance(statement, WRITE_STATEMENTS) or statement.key in ("alter", "altertable"):
                writes = True

        severity = Severity.highest(severities)
        protected = sorted(t for t in tables if t.lower() in self._protected)
        if protected and writes:
            reasons.append(f"touches protected table(s): {', '.join(protected)}")

        return RiskAssessment(
            sql=sql,
            severity=severity,
            requires_approval=self.requires_approval(severity),
            backup_required=severity >= Severity.HIGH or bool(protected and writes),
            tables=tuple(sorted(tables)),
            reasons=tuple(reasons),
        )

    def _classify_statement(self, statement: exp.Expression) -> tuple[Severity, str]:
        if isinstance(statement, exp.Delete):
            condition = _where_condition(statement)
            if condition is None:
                return Severity.HIGH, "DELETE without WHERE (mass delete)"
            if _is_tautology(condition):
                return Severity.HIGH, "DELETE with always-true WHERE (mass delete)"
            return Severity.LOW, "scoped DELETE"

        if isinstance(statement, exp.Update):
            condition = _where_condition(statement)
            if condition is None:
                return Severity.MEDIUM, "UPDATE without WHERE"
            if _is_tautology(condition):
                return Severity.MEDIUM, "UPDATE with always-true WHERE"
            return Severity.LOW, "scoped UPDATE"

        if isinstance(statement, exp.Command):
            keyword = str(statement.this).upper()
            severity = self._commands.get(keyword, self._unknown)
            return severity, f"{keyword} command"

        severity = self._statements.get(statement.key, self._unknown)
        return severity, f"{statement.key.upper()} statement"

    def _assess_fallback(self, sql: str) -> RiskAssessment:
        severities: list[Severity] = []
        reasons: list[str] = []
        for text in (part.strip() for part in sql.split(";")):
            if not text:
                continue
            for pattern, severity in self._fallback:
                if pattern.search(text):
                    severities.append(severity)
                    reasons.append(f"matched fallback rule {pattern.pattern!r}")
                    break
            else:
                severities.append(self._unknown)
                reasons.append("unrecognised statement")

        severity = Severity.highest(severities) if severities else self._unknown
        return RiskAssessment(
            sql=sql,
            severity=severity,
            requires_approval=self.requires_approval(severity),
            backup_required=severity >= Severity.HIGH,
            reasons=tuple(reasons),
            parsed=False,
        )

    def resolve_target(self, context: OperationContext) -> Environment | None:
        """Return the target environment, derived from the connection if implicit."""
        if context.target_environment is not None:
            return context.target_environment
        if context.connection_target:
            for env, pattern in self._env_patterns:
                if pattern.search(context.connection_target):
                    return env
        return None

    def cross_environment_check(self, context: OperationContext) -> None:
        """Refuse operations that cross into a forbidden environment.

        Applies regardless of the statement's severity.

        Raises:
            CrossEnvironmentViolation: If the target is forbidden for the
                invoking environment.
        """
        target = self.resolve_target(context)
        if target is None:
            return
        if target in self._forbidden.get(context.invoking_environment, set()):
            logger.warning(
                "cross_environment_blocked",
                operation_id=context.operation_id,
                invoking=context.invoking_environment.value,
                target=target.value,
            )
            raise CrossEnvironmentViolation(
                f"{context.invoking_environment.value} context may not operate on "
                f"{target.value} ({context.connection_target or 'explicit target'})"
            )

    async def create_backup(
        self, context: OperationContext, assessment: RiskAssessment
    ) -> BackupRecord:
        """Create a verified backup before a risky operation.

        Raises:
            BackupFailure: If no backup manager is configured, or the
                backup failed or timed out.
        """
        if self.backup_manager is None:
            raise BackupFailure("No backup manager configured for a backup-required operation")

        target = self.resolve_target(context)
        request = BackupRequest(
            operation_id=context.operation_id,
            database=context.connection_target or (target.value if target else "default"),
            tables=assessment.tables,
            requested_by=context.actor,
        )
        return await self.backup_manager.ensure_backup(request)

    async def log_operation(
        self,
        context: OperationContext,
        assessment: RiskAssessment,
        outcome: str,
        **detail: Any,
    ) -> None:
        """Append an audit entry for an operation attempt."""
        target = self.resolve_target(context)
        await self.audit.record(
            actor=context.actor,
            group_id=context.operation_id,
            stage="database",
            outcome=outcome,
            detail={
                "sql": assessment.sql,
                "severity": assessment.severity.value,
                "invoking_environment": context.invoking_environment.value,
                "target_environment": target.value if target else None,
                "tables": list(assessment.tables),
                "reasons": list(assessment.reasons),
                **detail,
            },
        )

    async def execute(
        self,
        sql: str,
        context: OperationContext,
        run: Callable[[str], Awaitable[T]],
        approval: ApprovalDecision | None = None,
    ) -> T:
        """Run a SQL text through every guard, then execute it.

        Args:
            sql: Statements to run.
            context: Where the operation comes from and goes to.
            run: Coroutine function that actually executes the SQL.
            approval: Human decision for this operation id, if any.

        Returns:
            Whatever run returns.

        Raises:
            CrossEnvironmentViolation: Forbidden environment crossing.
            OperationBlocked: Approval required but not given.
            BackupFailure: Backup required but not created and verified.
        """
        log = logger.bind(operation_id=context.operation_id, actor=context.actor)
        assessment = self.assess(sql, context)
        log.info("database_operation_assessed", severity=assessment.severity.value)

        try:
            self.cross_environment_check(context)
        except CrossEnvironmentViolation as e:
            await self.log_operation(context, assessment, "blocked", reason=str(e))
            raise

        if assessment.requires_approval and not self._is_approved(context, approval):
            reason = f"{assessment.severity.value} operation requires an approved decision"
            await self.log_operation(context, assessment, "blocked", reason=reason)
            log.warning("database_operation_blocked", reason=reason)
            raise OperationBlocked(reason)

        backup_id = None
        if assessment.backup_required:
            try:
                record = await self.create_backup(context, assessment)
            except BackupFailure as e:
                await self.log_operation(context, assessment, "blocked", reason=str(e))
                raise
            backup_id = record.backup_id

        try:
            result = await run(sql)
        except Exception as e:
            await self.log_operation(
                context, assessment, "failed", error=str(e), backup_id=backup_id
            )
            log.error("database_operation_failed", error=str(e))
            raise

        await self.log_operation(
            context,
            assessment,
            "executed",
            backup_id=backup_id,
            approver=approval.approver if approval else None,
        )
        log.info("database_operation_executed", backup_id=backup_id)
        return result

    @staticmethod
    def _is_approved(context: OperationContext, approval: ApprovalDecision | None) -> bool:
        return (
            approval is not None
            and approval.decision == Decision.APPROVED
            and approval.group_id == context.operation_id
        )
