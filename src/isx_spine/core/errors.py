"""
Structured error types for the operation engine.

Every failure the engine can report is a ``SpineError`` subclass carrying a
category, an explicit retry flag, structured context and an optional cause.
Manager-level errors (``ValidationError``, ``NotFoundError``,
``ConflictError``) are raised synchronously to callers; runner-level errors
(``ExecutionError``, ``CancellationError``, ``InternalError``) never escape
the runner and are surfaced through events and status snapshots.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure domain
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry operation/step ids for logging
    - **Error Chaining:** Preserve original exceptions as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                         SpineError                            │
        │   (category, retryable, error_code, context, cause)           │
        ├──────────────────────────────────────────────────────────────┤
        │  ValidationError    NotFoundError       ConflictError         │
        │  (VALIDATION)       (NOT_FOUND)         (CONFLICT)            │
        │                                                               │
        │  ExecutionError     CancellationError   InternalError         │
        │  (EXECUTION,        (CANCELLATION)      (INTERNAL)            │
        │   retryable=True)                                             │
        │       │                                                       │
        │  StepTimeoutError                                             │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = ExecutionError("scraper exited with status 2")
    >>> error.retryable
    True
    >>> error.with_context(operation_id="op_1", step="scraping").to_dict()["context"]
    {'operation_id': 'op_1', 'step': 'scraping'}

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"       # Malformed request
    NOT_FOUND = "NOT_FOUND"         # Unknown operation
    CONFLICT = "CONFLICT"           # Operation in the wrong state
    EXECUTION = "EXECUTION"         # Step executor failure
    TIMEOUT = "TIMEOUT"             # Step exceeded its timeout
    CANCELLATION = "CANCELLATION"   # Stopped by a caller
    INTERNAL = "INTERNAL"           # Bugs, unexpected exceptions


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        operation_id: Operation the error belongs to
        operation_type: Catalog type of the operation
        step: Step id within the operation
        attempt: 1-based attempt number of the failing invocation
        trace_id: Correlation id of the originating request
        metadata: Additional key-value pairs
    """

    operation_id: str | None = None
    operation_type: str | None = None
    step: str | None = None
    attempt: int | None = None
    trace_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation_id", "operation_type", "step", "attempt", "trace_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SpineError(Exception):
    """
    Base exception for all engine errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``default_code`` to give each failure domain sensible defaults; any of
    them can be overridden per instance.

    Attributes:
        message: Human-readable description
        category: ErrorCategory used for routing and HTTP mapping
        retryable: Whether retrying the same work may succeed
        error_code: Stable machine-readable code (``STEP_FAILED``, ...)
        context: ErrorContext with operation/step metadata
        cause: Underlying exception, also set as ``__cause__``
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    default_code: str = "INTERNAL"

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        error_code: str | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.error_code = error_code or self.default_code
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ExecutionError("exit 1").with_context(
                operation_id="op_abc", step="processing"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# MANAGER-LEVEL ERRORS (raised synchronously)
# =============================================================================


class ValidationError(SpineError):
    """Malformed request: empty step list, unknown step type, bad config.

    ``errors`` holds field-level details as ``{"field", "message", "code"}``
    dicts so the HTTP layer can render them next to form inputs.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False
    default_code = "VALIDATION_FAILED"

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.errors:
            result["errors"] = self.errors
        return result


class NotFoundError(SpineError):
    """Requested operation does not exist."""

    default_category = ErrorCategory.NOT_FOUND
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str, **kwargs: Any):
        super().__init__(f"{resource} '{identifier}' not found", **kwargs)
        self.resource = resource
        self.identifier = identifier


class ConflictError(SpineError):
    """Requested action is not allowed in the operation's current state."""

    default_category = ErrorCategory.CONFLICT
    default_code = "CONFLICT"

    def __init__(self, message: str, *, current_status: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.current_status = current_status


# =============================================================================
# RUNNER-LEVEL ERRORS (surfaced through events and snapshots)
# =============================================================================


class ExecutionError(SpineError):
    """A step executor reported a failure.

    Retryable by default; executors raise ``ExecutionError(...,
    retryable=False)`` for failures that retrying cannot fix.
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = True
    default_code = "STEP_FAILED"


class StepTimeoutError(ExecutionError):
    """A step ran longer than its configured timeout."""

    default_category = ErrorCategory.TIMEOUT
    default_code = "STEP_TIMEOUT"


class CancellationError(SpineError):
    """Raised inside a step when its operation has been stopped.

    Not a failure: the operation ends ``cancelled`` and is excluded from
    failure metrics.
    """

    default_category = ErrorCategory.CANCELLATION
    default_code = "CANCELLED"


class InternalError(SpineError):
    """Unexpected exception escaping a step executor.

    Keeps the formatted traceback of the original exception so it can be
    logged with full context before conversion via ``to_execution_error``.
    """

    default_category = ErrorCategory.INTERNAL
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        cause = self.cause
        self.traceback = (
            "".join(traceback.format_exception(type(cause), cause, cause.__traceback__))
            if cause is not None
            else ""
        )

    @classmethod
    def from_exception(cls, exc: BaseException) -> InternalError:
        return cls(f"{type(exc).__name__}: {exc}", cause=exc)

    def to_execution_error(self) -> ExecutionError:
        """Convert into the ordinary step failure the runner handles."""
        return ExecutionError(
            self.message,
            error_code=self.error_code,
            context=self.context,
            cause=self.cause,
        )


class InvalidTransitionError(ValueError):
    """Raised when an illegal status transition is attempted.

    Transition validation is strict. If a legitimate transition is blocked,
    add it to ``VALID_TRANSITIONS`` explicitly.
    """

    def __init__(self, current: str, target: str, enum_name: str = "OperationStatus") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check whether an error should be retried.

    ``SpineError`` instances answer through their ``retryable`` flag; other
    exceptions are treated as retryable because the runner converts them to
    ``ExecutionError``.
    """
    if isinstance(error, SpineError):
        return error.retryable
    return True


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SpineError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ExecutionError",
    "StepTimeoutError",
    "CancellationError",
    "InternalError",
    "InvalidTransitionError",
    "is_retryable",
]
