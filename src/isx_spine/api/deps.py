"""
FastAPI dependency injection - shared engine components.

Usage in routers::

    from isx_spine.api.deps import Manager

    @router.get("/operations/{operation_id}")
    def get_operation(operation_id: str, manager: Manager):
        ...

Manifesto:
    Dependency injection keeps routers thin. The engine is created once
    per application and stored on ``app.state``; endpoints receive the
    component they need and nothing else.

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from isx_spine.core.settings import EngineSettings, get_settings
from isx_spine.engine import Engine
from isx_spine.operations.manager import OperationManager


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_manager(engine: Annotated[Engine, Depends(get_engine)]) -> OperationManager:
    return engine.manager


def get_request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


# ── Convenience type aliases ─────────────────────────────────────────────

Settings = Annotated[EngineSettings, Depends(get_settings)]
EngineDep = Annotated[Engine, Depends(get_engine)]
Manager = Annotated[OperationManager, Depends(get_manager)]
RequestId = Annotated[str | None, Depends(get_request_id)]

__all__ = ["EngineDep", "Manager", "RequestId", "Settings", "get_engine", "get_manager", "get_settings"]
