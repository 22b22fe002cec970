"""
Operations router - start, inspect, stop and delete operations.

Endpoints:
    POST   /operations                       Start an operation (202)
    GET    /operations                       List operations (newest first)
    GET    /operations/types                 Operation-type catalog
    GET    /operations/metrics               Counts by status
    POST   /operations/stop-all              Stop every active operation
    GET    /operations/{operation_id}        Full operation snapshot
    POST   /operations/{operation_id}/stop   Stop one operation (?force=true)
    DELETE /operations/{operation_id}        Remove a finished operation

Engine errors (``ValidationError``, ``NotFoundError``, ``ConflictError``)
propagate to the app's exception handlers and become RFC 7807 responses.

Tags:
    api, operations, lifecycle

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Path, Query

from isx_spine.api.deps import EngineDep, Manager, RequestId
from isx_spine.api.schemas.common import PagedResponse, PageMeta, SuccessResponse
from isx_spine.api.schemas.operations import (
    DeleteResultSchema,
    OperationAcceptedSchema,
    OperationMetricsSchema,
    OperationTypeSchema,
    StopAllResultSchema,
    StopResultSchema,
)
from isx_spine.operations.models import OperationStatus
from isx_spine.operations.requests import OperationRequest
from isx_spine.streaming.messages import operation_channel

router = APIRouter(prefix="/operations")


def _elapsed(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


@router.post("", response_model=SuccessResponse[OperationAcceptedSchema], status_code=202)
async def start_operation(body: OperationRequest, manager: Manager, request_id: RequestId):
    """Validate and launch an operation; returns immediately with its id.

    Example:
        POST /api/v1/operations
        {"type": "full_pipeline", "mode": "accumulative", "from": "2025-01-01", "to": "2025-01-31"}

        Response (202):
        {"data": {"operation_id": "op_1a2b3c4d5e6f", "status": "pending", ...}}
    """
    start = time.perf_counter()
    if body.trace_id is None and request_id:
        body = body.model_copy(update={"trace_id": request_id})

    operation_id = await manager.start(body)
    op = manager.get_status(operation_id)
    return SuccessResponse(
        data=OperationAcceptedSchema(
            operation_id=operation_id,
            status=op.status.value,
            type=op.type,
            steps=[s.id for s in op.steps],
            trace_id=op.trace_id,
            channel=operation_channel(operation_id),
        ),
        elapsed_ms=_elapsed(start),
    )


@router.get("", response_model=PagedResponse[dict[str, Any]])
def list_operations(
    manager: Manager,
    status: OperationStatus | None = Query(None, description="Filter by status"),
    operation_type: str | None = Query(None, alias="type", description="Filter by operation type"),
    created_by: str | None = Query(None, description="Filter by creator"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List operation snapshots, newest first."""
    start = time.perf_counter()
    operations = manager.list(status=status, operation_type=operation_type, created_by=created_by)
    page = operations[offset : offset + limit]
    return PagedResponse(
        data=[op.to_dict() for op in page],
        page=PageMeta.from_result(total=len(operations), limit=limit, offset=offset),
        elapsed_ms=_elapsed(start),
    )


@router.get("/types", response_model=SuccessResponse[list[OperationTypeSchema]])
def list_operation_types(manager: Manager):
    """Operation types a client can start (templates first, then single steps)."""
    return SuccessResponse(data=[OperationTypeSchema(**t) for t in manager.operation_types()])


@router.get("/metrics", response_model=SuccessResponse[OperationMetricsSchema])
def operation_metrics(engine: EngineDep):
    """Operation counts by status plus open streaming connections."""
    counts = engine.manager.metrics()
    return SuccessResponse(data=OperationMetricsSchema(**counts, connections=engine.hub.connection_count))


@router.post("/stop-all", response_model=SuccessResponse[StopAllResultSchema])
async def stop_all_operations(manager: Manager, force: bool = Query(False)):
    """Stop every pending or running operation."""
    stopped = await manager.cancel_all(force=force)
    return SuccessResponse(data=StopAllResultSchema(stopped=stopped, force=force))


@router.get("/{operation_id}", response_model=SuccessResponse[dict[str, Any]])
def get_operation(manager: Manager, operation_id: str = Path(..., description="Operation id")):
    """Full operation snapshot (same shape as WebSocket snapshots)."""
    return SuccessResponse(data=manager.get_status(operation_id).to_dict())


@router.post("/{operation_id}/stop", response_model=SuccessResponse[StopResultSchema])
async def stop_operation(
    manager: Manager,
    operation_id: str = Path(..., description="Operation id"),
    force: bool = Query(False, description="Cancel immediately instead of at the next checkpoint"),
):
    """Stop an operation. Returns 409 if it already finished."""
    await manager.stop(operation_id, force=force)
    op = manager.get_status(operation_id)
    return SuccessResponse(data=StopResultSchema(operation_id=operation_id, status=op.status.value, force=force))


@router.delete("/{operation_id}", response_model=SuccessResponse[DeleteResultSchema])
async def delete_operation(manager: Manager, operation_id: str = Path(..., description="Operation id")):
    """Remove a finished operation. Returns 409 while it is still active."""
    await manager.delete(operation_id)
    return SuccessResponse(data=DeleteResultSchema(operation_id=operation_id))
