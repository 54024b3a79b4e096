"""Liveness and readiness probes."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, HTTPException

from workload_identity.webhook.schemas import HealthResponse, ReadinessResponse

router = APIRouter(tags=["health"])

_ready_check: Callable[[], bool] | None = None
_version: str = "0.1.0"


def init_router(
    version: str,
    ready_check: Callable[[], bool] | None = None,
) -> None:
    global _ready_check, _version  # noqa: PLW0603
    _ready_check = ready_check
    _version = version


@router.get("/healthz", response_model=HealthResponse)
def healthz() -> HealthResponse:
    return HealthResponse(version=_version)


@router.get("/readyz", response_model=ReadinessResponse)
def readyz() -> ReadinessResponse:
    if _ready_check is not None and not _ready_check():
        raise HTTPException(status_code=503, detail="not ready")
    return ReadinessResponse(ready=True, version=_version)
