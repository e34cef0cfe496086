"""Audit trail API routes."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from changegate.adapters.audit import AuditFilter
from changegate.core.domain_types import AuditEntry
from changegate.core.service import ChangeGateService
from changegate.entrypoints.api.deps import get_service

router = APIRouter(prefix="/audit", tags=["audit"])

ServiceDep = Annotated[ChangeGateService, Depends(get_service)]


class AuditTrailResponse(BaseModel):
    """Audit entries matching a query."""

    entries: list[AuditEntry]
    total: int


@router.get("", response_model=AuditTrailResponse)
async def get_audit_trail(
    service: ServiceDep,
    group_id: str | None = None,
    stage: str | None = None,
    outcome: str | None = None,
    actor: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 1000,
) -> AuditTrailResponse:
    """List audit entries in sequence order, filtered by the query parameters."""
    entries = await service.get_audit_trail(
        AuditFilter(
            group_id=group_id,
            stage=stage,
            outcome=outcome,
            actor=actor,
            since=since,
            until=until,
        )
    )
    return AuditTrailResponse(entries=entries[:limit], total=len(entries))
