"""
Operation and Step data model with the shared status state machine.

An :class:`Operation` is one workflow run; its :class:`Step` list is fixed
at creation and executed by a single runner task. External readers never
see a live Operation: :meth:`Operation.copy` deep-copies under the
operation's own lock and :meth:`Operation.to_dict` renders the snapshot
wire form.

State transitions are enforced via ``VALID_TRANSITIONS``::

    PENDING  → RUNNING | CANCELLED
    RUNNING  → COMPLETED | FAILED | CANCELLED | PAUSED | RETRYING
    PAUSED   → RUNNING | CANCELLED
    RETRYING → RUNNING | FAILED | CANCELLED
    COMPLETED / FAILED / CANCELLED → (terminal)

``PAUSED`` and ``RETRYING`` are transient sub-states of ``RUNNING`` used
for UI signalling; they never allow moving backwards.

Tags:
    operations, data-model, state-machine, snapshot
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from isx_spine.core.errors import InvalidTransitionError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class OperationStatus(str, Enum):
    """Status shared by operations and steps."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[OperationStatus] = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
})

VALID_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({
        OperationStatus.RUNNING,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.RUNNING: frozenset({
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
        OperationStatus.CANCELLED,
        OperationStatus.PAUSED,
        OperationStatus.RETRYING,
    }),
    OperationStatus.PAUSED: frozenset({
        OperationStatus.RUNNING,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.RETRYING: frozenset({
        OperationStatus.RUNNING,
        OperationStatus.FAILED,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.COMPLETED: frozenset(),  # terminal
    OperationStatus.FAILED: frozenset(),  # terminal
    OperationStatus.CANCELLED: frozenset(),  # terminal
}


def validate_transition(current: OperationStatus, target: OperationStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_transition(OperationStatus.RUNNING, OperationStatus.COMPLETED)
        >>> validate_transition(OperationStatus.COMPLETED, OperationStatus.RUNNING)
        InvalidTransitionError: Invalid OperationStatus transition: completed → running
    """
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "OperationStatus")


class EventType(str, Enum):
    """Raw events published by the manager and runners."""

    # Internal bookkeeping (never forwarded to clients)
    OPERATION_CREATED = "operation:created"
    OPERATION_DELETED = "operation:deleted"

    # Operation lifecycle
    OPERATION_START = "operation:start"
    OPERATION_PROGRESS = "operation:progress"
    OPERATION_COMPLETE = "operation:complete"
    OPERATION_FAILED = "operation:failed"
    OPERATION_CANCELLED = "operation:cancelled"

    # Step lifecycle
    STEP_START = "step:start"
    STEP_PROGRESS = "step:progress"
    STEP_COMPLETE = "step:complete"
    STEP_FAILED = "step:failed"


TERMINAL_EVENTS: dict[OperationStatus, EventType] = {
    OperationStatus.COMPLETED: EventType.OPERATION_COMPLETE,
    OperationStatus.FAILED: EventType.OPERATION_FAILED,
    OperationStatus.CANCELLED: EventType.OPERATION_CANCELLED,
}


class Mode(str, Enum):
    """Run mode: ``full`` reprocesses everything, the others are incremental."""

    INITIAL = "initial"
    ACCUMULATIVE = "accumulative"
    FULL = "full"

    @property
    def incremental(self) -> bool:
        return self is not Mode.FULL


@dataclass
class OperationConfig:
    """Recognized per-operation options, fully resolved against settings."""

    mode: Mode = Mode.ACCUMULATIVE
    max_retries: int = 3
    parallel: bool = False
    max_workers: int = 1
    notify_on_complete: bool = False
    timeout_seconds: float | None = None
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_multiplier: float = 2.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "max_retries": self.max_retries,
            "parallel": self.parallel,
            "max_workers": self.max_workers,
            "notify_on_complete": self.notify_on_complete,
            "timeout_seconds": self.timeout_seconds,
            "retry_base_delay": self.retry_base_delay,
            "retry_max_delay": self.retry_max_delay,
            "retry_multiplier": self.retry_multiplier,
        }


@dataclass
class Step:
    """One stage of an operation.

    ``parameters`` is the resolved map handed to the executor (after the
    step type's parameter mapping). ``metadata`` is an open map for
    executor reporting; see the glossary keys in the README
    (``files_total``, ``files_processed``, ``current_file``, ...).
    """

    id: str
    name: str
    type: str
    order: int
    parameters: dict[str, Any] = field(default_factory=dict)
    status: OperationStatus = OperationStatus.PENDING
    optional: bool = False
    parallel_safe: bool = False
    depends_on: tuple[str, ...] = ()
    max_retries: int = 3
    timeout_seconds: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    attempts: int = 0
    last_error: str | None = None
    error_code: str | None = None
    progress: float = 0.0
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def transition(self, target: OperationStatus) -> None:
        validate_transition(self.status, target)
        self.status = target

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "order": self.order,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "optional": self.optional,
            "parallel_safe": self.parallel_safe,
            "depends_on": list(self.depends_on),
            "max_retries": self.max_retries,
            "retry_count": self.retry_count,
            "attempts": self.attempts,
            "parameters": copy.deepcopy(self.parameters),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "last_error": self.last_error,
            "error_code": self.error_code,
            "metadata": copy.deepcopy(self.metadata),
        }


@dataclass
class OperationMetrics:
    """Aggregate counters for one operation."""

    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    cancelled_steps: int = 0
    attempts: int = 0
    retries: int = 0

    def recount(self, steps: list[Step]) -> None:
        self.total_steps = len(steps)
        self.completed_steps = sum(1 for s in steps if s.status == OperationStatus.COMPLETED)
        self.failed_steps = sum(1 for s in steps if s.status == OperationStatus.FAILED)
        self.cancelled_steps = sum(1 for s in steps if s.status == OperationStatus.CANCELLED)
        self.attempts = sum(s.attempts for s in steps)
        self.retries = sum(s.retry_count for s in steps)

    def to_dict(self) -> dict[str, int]:
        return {
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "failed_steps": self.failed_steps,
            "cancelled_steps": self.cancelled_steps,
            "attempts": self.attempts,
            "retries": self.retries,
        }


@dataclass
class Operation:
    """One workflow run composed of ordered steps.

    Mutated only by its runner task (and by a forced stop, which takes the
    same per-operation lock). ``version`` increases on every mutation so
    consumers can discard stale snapshots.
    """

    id: str
    name: str
    type: str
    steps: list[Step]
    config: OperationConfig = field(default_factory=OperationConfig)
    created_by: str = "system"
    trace_id: str | None = None
    status: OperationStatus = OperationStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    current_step: str | None = None
    failed_step: str | None = None
    error: str | None = None
    error_code: str | None = None
    can_retry: bool = False
    message: str = ""
    metrics: OperationMetrics = field(default_factory=OperationMetrics)
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.metrics.recount(self.steps)
        if self.updated_at is None:
            self.updated_at = self.created_at

    # ── State ──────────────────────────────────────────────────────────

    @property
    def lock(self) -> threading.RLock:
        """Per-operation lock guarding mutation and copying."""
        return self._lock

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def progress(self) -> float:
        """Average step progress, 0–100."""
        if not self.steps:
            return 0.0
        return round(sum(s.progress for s in self.steps) / len(self.steps), 2)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def step(self, step_id: str) -> Step:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise KeyError(step_id)

    def transition(self, target: OperationStatus) -> None:
        validate_transition(self.status, target)
        self.status = target

    def touch(self) -> None:
        """Record a mutation."""
        self.version += 1
        self.updated_at = utcnow()
        self.metrics.recount(self.steps)

    def resolve_terminal_status(self) -> OperationStatus:
        """Terminal status implied by the steps.

        ``FAILED`` if any step failed, ``COMPLETED`` if every step
        completed, otherwise ``CANCELLED``.
        """
        if any(s.status == OperationStatus.FAILED for s in self.steps):
            return OperationStatus.FAILED
        if all(s.status == OperationStatus.COMPLETED for s in self.steps):
            return OperationStatus.COMPLETED
        return OperationStatus.CANCELLED

    def finalize(self, message: str = "") -> OperationStatus:
        """Cancel unfinished steps and move to the implied terminal status."""
        now = utcnow()
        for s in self.steps:
            if not s.is_terminal:
                s.transition(OperationStatus.CANCELLED)
                s.completed_at = s.completed_at or now
        status = self.resolve_terminal_status()
        self.transition(status)
        self.completed_at = now
        self.current_step = None
        if message:
            self.message = message
        self.touch()
        return status

    # ── Snapshots ──────────────────────────────────────────────────────

    def __deepcopy__(self, memo: dict[int, Any]) -> Operation:
        with self._lock:
            values = {
                f.name: copy.deepcopy(getattr(self, f.name), memo)
                for f in fields(self)
                if f.init
            }
        return Operation(**values)

    def copy(self) -> Operation:
        """Deep copy taken under the operation lock."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Snapshot wire form."""
        with self._lock:
            return {
                "id": self.id,
                "name": self.name,
                "type": self.type,
                "status": self.status.value,
                "mode": self.config.mode.value,
                "progress": self.progress,
                "current_step": self.current_step,
                "failed_step": self.failed_step,
                "error": self.error,
                "error_code": self.error_code,
                "can_retry": self.can_retry,
                "message": self.message,
                "created_by": self.created_by,
                "trace_id": self.trace_id,
                "created_at": _iso(self.created_at),
                "started_at": _iso(self.started_at),
                "updated_at": _iso(self.updated_at),
                "completed_at": _iso(self.completed_at),
                "duration_seconds": self.duration_seconds,
                "config": self.config.to_dict(),
                "metrics": self.metrics.to_dict(),
                "metadata": copy.deepcopy(self.metadata),
                "steps": [s.to_dict() for s in self.steps],
                "version": self.version,
            }

    def summary(self) -> dict[str, Any]:
        """Compact form for list views (no step details)."""
        data = self.to_dict()
        data.pop("steps")
        data["step_ids"] = [s.id for s in self.steps]
        return data


__all__ = [
    "EventType",
    "Mode",
    "Operation",
    "OperationConfig",
    "OperationMetrics",
    "OperationStatus",
    "Step",
    "TERMINAL_EVENTS",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
    "utcnow",
    "validate_transition",
]
