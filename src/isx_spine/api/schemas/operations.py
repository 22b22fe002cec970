"""Operation endpoint schemas.

Operation bodies themselves are returned as ``Operation.to_dict()`` so the
REST response, ``get_status`` and WebSocket snapshots share one shape.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class OperationAcceptedSchema(BaseModel):
    """Returned by ``POST /operations`` (202)."""

    operation_id: str = Field(description="Id to poll or subscribe to")
    status: str = Field(description="Status at acceptance (normally 'pending')")
    type: str
    steps: list[str] = Field(default_factory=list, description="Step ids in execution order")
    trace_id: str | None = None
    channel: str = Field(description="WebSocket channel carrying this operation's events")


class StopResultSchema(BaseModel):
    operation_id: str
    status: str = Field(description="Status right after the stop request")
    force: bool


class StopAllResultSchema(BaseModel):
    stopped: int = Field(description="Operations that were asked to stop")
    force: bool


class DeleteResultSchema(BaseModel):
    operation_id: str
    deleted: bool = True


class OperationTypeSchema(BaseModel):
    """Entry of the operation-type catalog shown by the UI."""

    id: str
    name: str
    description: str = ""
    category: str = "data"
    steps: list[str] = Field(default_factory=list)
    parameters: list[dict[str, Any]] = Field(default_factory=list)


class OperationMetricsSchema(BaseModel):
    total: int
    active: int
    by_status: dict[str, int]
    connections: int = 0


__all__ = [
    "DeleteResultSchema",
    "OperationAcceptedSchema",
    "OperationMetricsSchema",
    "OperationTypeSchema",
    "StopAllResultSchema",
    "StopResultSchema",
]
