"""Change group routes: submit, inspect, decide, cancel and apply."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from changegate.core.domain_types import (
    ApplyResult,
    ApprovalDecision,
    FileChange,
    FileOp,
    TestRunSummary,
    ValidationReport,
)
from changegate.core.exceptions import (
    ChangeGateError,
    GroupNotFoundError,
    InvalidTransitionError,
    RollbackFailure,
    ValidationFailure,
)
from changegate.core.service import ChangeGateService
from changegate.core.state import ChangeGroup
from changegate.entrypoints.api.deps import get_service

router = APIRouter(prefix="/change-groups", tags=["change-groups"])

ServiceDep = Annotated[ChangeGateService, Depends(get_service)]


class FileChangeRequest(BaseModel):
    """One proposed file edit."""

    path: str = Field(..., min_length=1)
    op: FileOp = FileOp.MODIFY
    content: str = ""
    encoding: Literal["utf-8", "base64"] = "utf-8"

    def to_domain(self) -> FileChange:
        """Decode the content into a FileChange."""
        if self.encoding == "base64":
            try:
                data = base64.b64decode(self.content, validate=True)
            except binascii.Error as e:
                raise ValueError(f"Invalid base64 content for {self.path}") from e
        else:
            data = self.content.encode("utf-8")
        return FileChange(path=self.path, new_content=data, op=self.op)


class SubmitRequest(BaseModel):
    """Request to submit a change group."""

    files: list[FileChangeRequest] = Field(..., min_length=1)
    submitted_by: str = Field("system", min_length=1)
    test_results: TestRunSummary | None = None


class ApproveRequest(BaseModel):
    """Request to approve a change group."""

    approver: str = Field(..., min_length=1)


class RejectRequest(BaseModel):
    """Request to reject a change group."""

    approver: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=1000)


class ActorRequest(BaseModel):
    """Request body naming the acting user."""

    actor: str = Field("system", min_length=1)


class ChangeGroupResponse(BaseModel):
    """A change group and its current state."""

    id: str
    status: str
    submitted_by: str
    created_at: datetime
    paths: list[str]
    report: ValidationReport | None = None
    decision: ApprovalDecision | None = None
    cancel_requested: bool = False

    @classmethod
    def from_group(cls, group: ChangeGroup) -> ChangeGroupResponse:
        """Build a response from a ChangeGroup."""
        return cls(
            id=group.id,
            status=group.status.value,
            submitted_by=group.submitted_by,
            created_at=group.created_at,
            paths=group.paths,
            report=group.report,
            decision=group.decision,
            cancel_requested=group.cancel_requested,
        )


class ChangeGroupListResponse(BaseModel):
    """List of change groups."""

    groups: list[ChangeGroupResponse]
    total: int


class CancelResponse(BaseModel):
    """Result of a cancellation request."""

    group_id: str
    status: str


def _get_group(service: ChangeGateService, group_id: str) -> ChangeGroup:
    try:
        return service.get_group(group_id)
    except GroupNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.post("", response_model=ChangeGroupResponse, status_code=status.HTTP_201_CREATED)
async def submit_change_group(body: SubmitRequest, service: ServiceDep) -> ChangeGroupResponse:
    """Submit a change group; it is validated before this returns."""
    try:
        files = [f.to_domain() for f in body.files]
        group_id = await service.submit_change_group(
            files, submitted_by=body.submitted_by, test_results=body.test_results
        )
    except ValidationFailure as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    return ChangeGroupResponse.from_group(service.get_group(group_id))


@router.get("", response_model=ChangeGroupListResponse)
async def list_change_groups(service: ServiceDep) -> ChangeGroupListResponse:
    """List all change groups, oldest first."""
    groups = [ChangeGroupResponse.from_group(g) for g in service.list_groups()]
    return ChangeGroupListResponse(groups=groups, total=len(groups))


@router.get("/{group_id}", response_model=ChangeGroupResponse)
async def get_change_group(group_id: str, service: ServiceDep) -> ChangeGroupResponse:
    """Get a change group."""
    return ChangeGroupResponse.from_group(_get_group(service, group_id))


@router.get("/{group_id}/report", response_model=ValidationReport)
async def get_validation_report(group_id: str, service: ServiceDep) -> ValidationReport:
    """Get the validation report of a change group."""
    _get_group(service, group_id)
    try:
        return service.get_validation_report(group_id)
    except ChangeGateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@router.post("/{group_id}/approve", response_model=ApprovalDecision)
async def approve_change_group(
    group_id: str, body: ApproveRequest, service: ServiceDep
) -> ApprovalDecision:
    """Approve a change group awaiting a decision."""
    _get_group(service, group_id)
    try:
        return await service.approve(group_id, body.approver)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@router.post("/{group_id}/reject", response_model=ApprovalDecision)
async def reject_change_group(
    group_id: str, body: RejectRequest, service: ServiceDep
) -> ApprovalDecision:
    """Reject a change group. Rejection is final."""
    _get_group(service, group_id)
    try:
        return await service.reject(group_id, body.approver, body.reason)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@router.post("/{group_id}/cancel", response_model=CancelResponse)
async def cancel_change_group(
    group_id: str, body: ActorRequest, service: ServiceDep
) -> CancelResponse:
    """Cancel a change group (deferred while it is applying)."""
    _get_group(service, group_id)
    try:
        new_status = await service.cancel(group_id, body.actor)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return CancelResponse(group_id=group_id, status=new_status.value)


@router.post("/{group_id}/apply", response_model=ApplyResult)
async def apply_change_group(group_id: str, body: ActorRequest, service: ServiceDep) -> ApplyResult:
    """Apply a change group.

    Gate refusals (approval_required, rejected) and rollbacks are normal
    responses; only a partial rollback is a server error.
    """
    _get_group(service, group_id)
    try:
        return await service.apply(group_id, body.actor)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except RollbackFailure as e:
        raise HTTPException(
            status_code=500,
            detail={"error": str(e), "result": e.result.model_dump(mode="json")},
        ) from e
