"""Liveness and health endpoints."""
from __future__ import annotations

import time

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from src.shared.constants import SERVICE_NAME, VERSION
from src.shared.models.common import HealthStatus

router = APIRouter(tags=["health"])


@router.get("/ping", response_class=PlainTextResponse)
async def ping() -> str:
    return "pong"


@router.get("/api/health", response_model=HealthStatus)
async def health(request: Request) -> HealthStatus:
    """Health check endpoint."""
    registry = getattr(request.app.state, "registry", None)
    degraded = registry is None or registry.degraded
    start_time = getattr(request.app.state, "start_time", time.time())
    builds = getattr(request.app.state, "builds", None)

    return HealthStatus(
        status="degraded" if degraded else "healthy",
        service_name=SERVICE_NAME,
        version=VERSION,
        registry="degraded" if degraded else "loaded",
        uptime_seconds=time.time() - start_time,
        details={"active_builds": builds.active_builds if builds else []},
    )
