"""FastAPI application definition."""

from __future__ import annotations

from fastapi import FastAPI

from changegate import __version__

from .deps import lifespan
from .routes import api_router

app = FastAPI(
    title="changegate",
    description="Safety gate and atomic apply for generated code changes",
    version=__version__,
    lifespan=lifespan,
    redirect_slashes=False,
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
