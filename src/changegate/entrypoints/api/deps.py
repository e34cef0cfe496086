"""Dependency injection and application lifespan management."""

from __future__ import annotations

import os
import shlex
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from fastapi import Request

from changegate.adapters.alerts import LoggingAlertSink, WebhookAlertSink, WebhookConfig
from changegate.adapters.audit import AuditSink, JsonlAuditStore
from changegate.adapters.diagnostics import CommandDiagnostics, SyntaxDiagnostics
from changegate.adapters.filestore import LocalFileStore
from changegate.adapters.registry import NpmRegistry, PyPIRegistry
from changegate.adapters.routes import StaticRouteTable
from changegate.core.applier import ApplierConfig, AtomicApplier
from changegate.core.domain_types import Severity
from changegate.core.interfaces import AlertSink, DiagnosticsProvider
from changegate.core.manifest import ManifestStore
from changegate.core.pipeline import PipelineConfig, ValidationPipeline
from changegate.core.service import ChangeGateService
from changegate.safety.hallucination import HallucinationDetector
from changegate.safety.lookup import LookupPolicy
from changegate.safety.security import SecurityValidator

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = structlog.get_logger()


class Settings:
    """Application settings loaded from environment."""

    def __init__(self) -> None:
        """Load settings from environment variables."""
        self.workspace = Path(os.getenv("CHANGEGATE_WORKSPACE", "."))
        state_dir = os.getenv("CHANGEGATE_STATE_DIR")
        self.state_dir = Path(state_dir) if state_dir else self.workspace / ".changegate"
        self.approval_threshold = Severity(os.getenv("CHANGEGATE_APPROVAL_THRESHOLD", "high"))

        # Registry lookups
        self.registry_lookups = os.getenv("CHANGEGATE_REGISTRY_LOOKUPS", "true").lower() == "true"
        self.lookup_attempts = int(os.getenv("CHANGEGATE_LOOKUP_ATTEMPTS", "2"))
        self.lookup_timeout_seconds = float(os.getenv("CHANGEGATE_LOOKUP_TIMEOUT", "2.0"))
        self.openapi_path = os.getenv("CHANGEGATE_OPENAPI_PATH")
        self.first_party = [
            name.strip()
            for name in os.getenv("CHANGEGATE_FIRST_PARTY", "").split(",")
            if name.strip()
        ]

        # Post-apply diagnostics
        self.diagnostics_command = os.getenv("CHANGEGATE_DIAGNOSTICS_COMMAND", "")
        self.diagnostics_timeout_seconds = float(os.getenv("CHANGEGATE_DIAGNOSTICS_TIMEOUT", "60"))

        # Alerts
        self.alert_webhook_url = os.getenv("CHANGEGATE_ALERT_WEBHOOK_URL", "")
        self.alert_webhook_secret = os.getenv("CHANGEGATE_ALERT_WEBHOOK_SECRET") or None


def build_service(settings: Settings) -> ChangeGateService:
    """Wire adapters into a ChangeGateService.

    Args:
        settings: Application settings.

    Returns:
        A ready service.
    """
    files = LocalFileStore(settings.workspace)
    audit = AuditSink(JsonlAuditStore(settings.state_dir / "audit.jsonl"))

    diagnostics: DiagnosticsProvider
    if settings.diagnostics_command:
        diagnostics = CommandDiagnostics(
            shlex.split(settings.diagnostics_command),
            cwd=files.root,
            timeout_seconds=settings.diagnostics_timeout_seconds,
        )
    else:
        diagnostics = SyntaxDiagnostics(files)

    alerts: AlertSink
    if settings.alert_webhook_url:
        alerts = WebhookAlertSink(
            WebhookConfig(url=settings.alert_webhook_url, secret=settings.alert_webhook_secret)
        )
    else:
        alerts = LoggingAlertSink()

    routes = StaticRouteTable.from_openapi(settings.openapi_path) if settings.openapi_path else None
    detector = HallucinationDetector(
        registry=PyPIRegistry() if settings.registry_lookups else None,
        npm_registry=NpmRegistry() if settings.registry_lookups else None,
        routes=routes,
        first_party=settings.first_party,
        policy=LookupPolicy(
            attempts=settings.lookup_attempts,
            timeout_seconds=settings.lookup_timeout_seconds,
        ),
    )

    pipeline = ValidationPipeline(
        [SecurityValidator(), detector],
        PipelineConfig(approval_threshold=settings.approval_threshold),
    )
    applier = AtomicApplier(
        files=files,
        audit=audit,
        diagnostics=diagnostics,
        manifests=ManifestStore(settings.state_dir / "manifests"),
        alerts=alerts,
        config=ApplierConfig(diagnostics_timeout_seconds=settings.diagnostics_timeout_seconds),
    )
    return ChangeGateService(pipeline=pipeline, applier=applier, audit=audit)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan - setup and teardown.

    This context manager handles:
    - Service wiring from settings
    - Recovery of groups interrupted by a previous process
    """
    settings = Settings()
    service = build_service(settings)

    recovered = await service.recover()
    if recovered:
        logger.warning("startup_recovery", groups=[r.group_id for r in recovered])

    app.state.settings = settings
    app.state.service = service
    logger.info("changegate_started", workspace=str(settings.workspace))

    yield

    logger.info("changegate_stopped")


def get_service(request: Request) -> ChangeGateService:
    """Get the change gate service from app state.

    Args:
        request: The current request.

    Returns:
        The configured service.
    """
    service: ChangeGateService = request.app.state.service
    return service
