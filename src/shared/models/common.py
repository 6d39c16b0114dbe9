"""Common Pydantic v2 data models shared across services."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthStatus(BaseModel):
    """Health status of the service."""
    status: str = Field(
        default="healthy",
        pattern=r"^(healthy|degraded|unhealthy)$"
    )
    service_name: str
    version: str
    registry: str = Field(
        default="loaded",
        pattern=r"^(loaded|degraded)$"
    )
    uptime_seconds: float
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"from_attributes": True}
