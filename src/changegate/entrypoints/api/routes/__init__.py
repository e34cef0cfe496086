"""API route modules."""

from fastapi import APIRouter

from changegate.entrypoints.api.routes.audit import router as audit_router
from changegate.entrypoints.api.routes.change_groups import router as change_groups_router

# Create main API router
api_router = APIRouter()

api_router.include_router(change_groups_router)
api_router.include_router(audit_router)

__all__ = ["api_router"]
