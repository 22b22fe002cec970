"""
Health endpoints at root level for container probes.

    GET /health         Status plus engine counters
    GET /health/live    Liveness probe (always 200)
    GET /health/ready   Readiness probe (503 until the engine is started)
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any, Literal

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from isx_spine import __version__
from isx_spine.api.deps import EngineDep

_START_TIME = time.monotonic()

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    service: str = "isx-spine"
    version: str = __version__
    uptime_s: float
    timestamp: str
    checks: dict[str, Any] = Field(default_factory=dict)


def _response(status: Literal["healthy", "degraded", "unhealthy"], checks: dict[str, Any]) -> HealthResponse:
    return HealthResponse(
        status=status,
        uptime_s=round(time.monotonic() - _START_TIME, 1),
        timestamp=datetime.now(UTC).isoformat(),
        checks=checks,
    )


@router.get("/health", response_model=HealthResponse)
async def health(engine: EngineDep) -> JSONResponse:
    metrics = engine.manager.metrics()
    checks = {
        "operations_total": metrics["total"],
        "operations_active": metrics["active"],
        "connections": engine.hub.connection_count,
        "event_backlog": engine.bus.pending,
        "step_types": len(engine.registry),
    }
    body = _response("healthy" if engine.bus.pending < 10_000 else "degraded", checks)
    return JSONResponse(content=body.model_dump())


@router.get("/health/live", response_model=HealthResponse)
async def liveness() -> JSONResponse:
    return JSONResponse(content=_response("healthy", {}).model_dump())


@router.get("/health/ready", response_model=HealthResponse)
async def readiness(engine: EngineDep) -> JSONResponse:
    ready = engine.started
    body = _response("healthy" if ready else "unhealthy", {"engine_started": ready})
    return JSONResponse(content=body.model_dump(), status_code=200 if ready else 503)
