"""Response schemas for the webhook server's own endpoints."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str


class ReadinessResponse(BaseModel):
    ready: bool
    version: str
