"""Health check endpoints."""

from datetime import UTC, datetime
from typing import Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(
        description="Overall health status"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Current server timestamp (UTC)",
    )
    version: str = Field(description="Service version")
    checks: dict[str, bool] = Field(
        default_factory=dict,
        description="Individual component health checks",
    )
    active_sessions: int = Field(default=0, description="Live chat sessions")


class ReadinessStatus(BaseModel):
    """Readiness check response model."""

    ready: bool = Field(description="Whether the service is ready to accept requests")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Current server timestamp (UTC)",
    )
    checks: dict[str, bool] = Field(
        default_factory=dict,
        description="Individual readiness checks",
    )


def _storage_ready(request: Request) -> bool:
    return bool(getattr(request.app.state, "storage_initialized", False))


@router.get(
    "/health",
    response_model=HealthStatus,
    summary="Health Check",
    description="Check if the service is running and whether storage is available",
)
async def health_check(request: Request) -> HealthStatus:
    """Health check endpoint for liveness probes."""
    checks = {"api": True, "storage": _storage_ready(request)}
    registry = getattr(request.app.state, "registry", None)

    return HealthStatus(
        status="healthy" if all(checks.values()) else "degraded",
        version=getattr(request.app, "version", "0.1.0"),
        checks=checks,
        active_sessions=registry.active_count() if registry is not None else 0,
    )


@router.get(
    "/health/ready",
    response_model=ReadinessStatus,
    summary="Readiness Check",
    description="Check if the service is ready to accept requests",
)
async def readiness_check(request: Request) -> ReadinessStatus:
    """Readiness check endpoint for load balancers."""
    checks = {
        "api": True,
        "storage": _storage_ready(request),
        "registry": getattr(request.app.state, "registry", None) is not None,
    }
    return ReadinessStatus(ready=all(checks.values()), checks=checks)
