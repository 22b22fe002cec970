"""ISX Spine Core -- shared primitives for the operation engine.

Architecture::

    errors.py          Structured error hierarchy (SpineError, ExecutionError)
    logging.py         structlog configuration + context binding
    settings.py        EngineSettings (pydantic-settings, ISX_SPINE_ prefix)
    locks.py           ReadWriteLock for the operation registry
    events/            Event model, EventBus protocol, InMemoryEventBus
"""

from isx_spine.core.errors import (
    CancellationError,
    ConflictError,
    ErrorCategory,
    ErrorContext,
    ExecutionError,
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    SpineError,
    StepTimeoutError,
    ValidationError,
)

__all__ = [
    "CancellationError",
    "ConflictError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionError",
    "InternalError",
    "InvalidTransitionError",
    "NotFoundError",
    "SpineError",
    "StepTimeoutError",
    "ValidationError",
]
