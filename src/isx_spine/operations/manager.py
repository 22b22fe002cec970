"""
OperationManager - creates, tracks and stops operations.

Manifesto:
    The manager is the only way in: it validates requests synchronously,
    owns the in-memory registry of operations, launches one runner task per
    operation and hands out copies, never live references. Errors about the
    request itself (validation, not found, conflict) are raised to the
    caller; everything that goes wrong during execution is reported
    asynchronously through events and ``get_status``.

Architecture:
    ::

        caller ──start(request)──▶ parse_request ─▶ _build ─▶ registry (RW lock)
                                                        │
                                                        ├─▶ bus: operation:created
                                                        └─▶ asyncio task: StepRunner.run()
        caller ──get_status(id)──▶ registry.read ─▶ Operation.copy()
        caller ──stop(id, force)─▶ pending/force: runner.force_cancel() (+ task.cancel())
                                   otherwise:     runner.request_cancel()
        caller ──delete(id)──────▶ terminal only ─▶ bus: operation:deleted
        engine ──prune(max_age)──▶ delete() for each expired terminal operation

    ``start``/``stop``/``delete`` must run on the event loop; ``get_status``
    and ``list`` are safe from any thread.

Tags:
    operations, manager, registry, lifecycle, fire-and-forget

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from isx_spine.core.errors import ConflictError, NotFoundError, ValidationError
from isx_spine.core.events import Event, EventBus
from isx_spine.core.locks import ReadWriteLock
from isx_spine.core.logging import get_logger
from isx_spine.core.settings import EngineSettings
from isx_spine.observability.metrics import EngineMetrics
from isx_spine.operations.context import CancellationToken
from isx_spine.operations.models import (
    EventType,
    Mode,
    Operation,
    OperationConfig,
    OperationStatus,
    Step,
    utcnow,
)
from isx_spine.operations.registry import OperationTemplate, StepRegistry
from isx_spine.operations.requests import OperationRequest, StepSpec, parse_request
from isx_spine.operations.runner import StepRunner

logger = get_logger(__name__)

EVENT_SOURCE = "operation-manager"


def new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex[:12]}"


class OperationManager:
    """Owns the operation registry and the runner tasks.

    Args:
        registry: Step types and operation templates
        bus: Event bus shared with the broadcaster
        settings: Engine defaults (retry timing, max steps, ...)
        metrics: Optional engine metrics

    Example::

        manager = OperationManager(registry, bus, settings=EngineSettings())
        op_id = await manager.start({"type": "full_pipeline", "from": "2025-01-01"})
        snapshot = manager.get_status(op_id)
        await manager.stop(op_id)
    """

    def __init__(
        self,
        registry: StepRegistry,
        bus: EventBus,
        *,
        settings: EngineSettings | None = None,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self.settings = settings or EngineSettings()
        self.metrics = metrics
        self._lock = ReadWriteLock()
        self._operations: dict[str, Operation] = {}
        self._runners: dict[str, StepRunner] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # =========================================================================
    # Start
    # =========================================================================

    async def start(self, request: OperationRequest | dict[str, Any]) -> str:
        """Validate, register and launch an operation. Returns its id immediately.

        Raises:
            ValidationError: Malformed request; nothing is created.
        """
        req = parse_request(request)
        operation = self._build(req)

        runner = StepRunner(
            operation,
            self.registry,
            self.bus,
            token=CancellationToken(),
            metrics=self.metrics,
            retry_jitter=self.settings.retry_jitter,
        )
        with self._lock.write():
            self._operations[operation.id] = operation
            self._runners[operation.id] = runner

        self.bus.publish_nowait(
            Event(
                event_type=EventType.OPERATION_CREATED.value,
                source=EVENT_SOURCE,
                payload={
                    "operation_id": operation.id,
                    "operation_type": operation.type,
                    "version": operation.version,
                    "snapshot": operation.to_dict(),
                },
                correlation_id=operation.trace_id,
            )
        )

        task = asyncio.get_running_loop().create_task(self._run(runner), name=f"operation:{operation.id}")
        self._tasks[operation.id] = task

        if self.metrics:
            self.metrics.record_start(operation.type)
        logger.info(
            "operation.accepted",
            operation_id=operation.id,
            operation_type=operation.type,
            steps=[s.id for s in operation.steps],
            created_by=operation.created_by,
            trace_id=operation.trace_id,
        )
        return operation.id

    async def _run(self, runner: StepRunner) -> None:
        op_id = runner.operation.id
        try:
            await runner.run()
        except asyncio.CancelledError:
            if not runner.operation.is_terminal:
                raise
        finally:
            self._tasks.pop(op_id, None)

    def _build(self, req: OperationRequest) -> Operation:
        """Turn a request into a pending Operation, or raise ValidationError."""
        cfg = req.config
        mode = cfg.mode or req.mode or Mode(self.settings.default_mode)
        template = self.registry.template(req.type) if req.type else None

        specs = list(req.steps)
        if not specs:
            if req.type is None:
                raise ValidationError(
                    "Request must name an operation type or list at least one step",
                    errors=[{"field": "steps", "message": "At least one step is required", "code": "REQUIRED"}],
                )
            if template is not None:
                specs = [StepSpec(type=step_type) for step_type in template.steps]
            elif req.type in self.registry:
                specs = [StepSpec(type=req.type)]
            else:
                raise ValidationError(
                    f"Unknown operation type '{req.type}'",
                    errors=[{"field": "type", "message": f"Unknown operation type '{req.type}'", "code": "UNKNOWN_TYPE"}],
                )

        errors: list[dict[str, Any]] = []
        if not specs:
            errors.append({"field": "steps", "message": "At least one step is required", "code": "REQUIRED"})
        if len(specs) > self.settings.max_steps:
            errors.append({
                "field": "steps",
                "message": f"At most {self.settings.max_steps} steps are allowed",
                "code": "TOO_MANY",
            })
        seen: set[str] = set()
        for index, spec in enumerate(specs):
            if spec.type not in self.registry:
                errors.append({
                    "field": f"steps.{index}.type",
                    "message": f"Unknown step type '{spec.type}'",
                    "code": "UNKNOWN_STEP_TYPE",
                })
            step_id = spec.id or spec.type
            if step_id in seen:
                errors.append({
                    "field": f"steps.{index}.id",
                    "message": f"Duplicate step id '{step_id}'",
                    "code": "DUPLICATE",
                })
            for dep_id in spec.depends_on:
                # Dependencies must name an earlier step in the list
                if dep_id not in seen:
                    errors.append({
                        "field": f"steps.{index}.depends_on",
                        "message": f"Step '{step_id}' depends on '{dep_id}', which is not an earlier step",
                        "code": "UNKNOWN_DEPENDENCY",
                    })
            seen.add(step_id)
        if errors:
            raise ValidationError(errors[0]["message"], errors=errors)

        config = OperationConfig(
            mode=mode,
            max_retries=cfg.max_retries if cfg.max_retries is not None else self.settings.default_max_retries,
            parallel=cfg.parallel,
            max_workers=cfg.max_workers or self.settings.default_max_workers,
            notify_on_complete=cfg.notify_on_complete,
            timeout_seconds=cfg.timeout_seconds or self.settings.default_step_timeout,
            retry_base_delay=(
                cfg.retry_base_delay if cfg.retry_base_delay is not None else self.settings.retry_base_delay
            ),
            retry_max_delay=cfg.retry_max_delay if cfg.retry_max_delay is not None else self.settings.retry_max_delay,
            retry_multiplier=cfg.retry_multiplier or self.settings.retry_multiplier,
        )

        generic = req.generic_fields(mode)
        steps = []
        for order, spec in enumerate(specs):
            definition = self.registry.get(spec.type)
            steps.append(
                Step(
                    id=spec.id or spec.type,
                    name=spec.name or definition.name,
                    type=spec.type,
                    order=order,
                    parameters=definition.parameter_map.apply(generic, spec.parameters),
                    optional=spec.optional if spec.optional is not None else definition.optional,
                    parallel_safe=spec.parallel_safe if spec.parallel_safe is not None else definition.parallel_safe,
                    depends_on=tuple(spec.depends_on),
                    max_retries=spec.max_retries if spec.max_retries is not None else config.max_retries,
                    timeout_seconds=spec.timeout_seconds or definition.timeout_seconds or config.timeout_seconds,
                )
            )

        operation_type = req.type or (specs[0].type if len(specs) == 1 else "custom")
        return Operation(
            id=new_operation_id(),
            name=req.name or self._default_name(operation_type, template),
            type=operation_type,
            steps=steps,
            config=config,
            created_by=req.created_by,
            trace_id=req.trace_id or uuid.uuid4().hex,
        )

    def _default_name(self, operation_type: str, template: OperationTemplate | None) -> str:
        if template is not None:
            return template.name
        if operation_type in self.registry:
            return self.registry.get(operation_type).name
        return operation_type.replace("_", " ").title()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_status(self, operation_id: str) -> Operation:
        """Deep copy of the operation.

        Raises:
            NotFoundError: Unknown id.
        """
        with self._lock.read():
            operation = self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError("Operation", operation_id)
        return operation.copy()

    def list(
        self,
        *,
        status: OperationStatus | str | None = None,
        operation_type: str | None = None,
        created_by: str | None = None,
        limit: int | None = None,
    ) -> list[Operation]:
        """Copies of matching operations, newest first."""
        wanted = OperationStatus(status) if status is not None else None
        with self._lock.read():
            operations = list(self._operations.values())

        result = [
            op.copy()
            for op in operations
            if (wanted is None or op.status == wanted)
            and (operation_type is None or op.type == operation_type)
            and (created_by is None or op.created_by == created_by)
        ]
        result.sort(key=lambda op: op.created_at, reverse=True)
        return result[:limit] if limit is not None else result

    def list_by_status(self, status: OperationStatus | str) -> list[Operation]:
        return self.list(status=status)

    def metrics(self) -> dict[str, Any]:
        """Counts by status plus totals."""
        with self._lock.read():
            statuses = [op.status for op in self._operations.values()]
        counts = Counter(s.value for s in statuses)
        return {
            "total": len(statuses),
            "active": sum(1 for s in statuses if not s.is_terminal),
            "by_status": {s.value: counts.get(s.value, 0) for s in OperationStatus},
        }

    def operation_types(self) -> list[dict[str, Any]]:
        """Catalog of startable operation types for the UI."""
        types = [template.to_dict() for template in self.registry.templates()]
        for definition in self.registry.definitions():
            types.append({
                "id": definition.type,
                "name": definition.name,
                "description": definition.description,
                "category": "step",
                "steps": [definition.type],
                "parameters": [],
            })
        return types

    # =========================================================================
    # Mutations
    # =========================================================================

    async def stop(self, operation_id: str, force: bool = False, *, reason: str | None = None) -> None:
        """Stop an operation.

        Pending operations and forced stops are cancelled immediately;
        otherwise the running step is asked to stop at its next checkpoint.

        Raises:
            NotFoundError: Unknown id.
            ConflictError: Operation already terminal.
        """
        with self._lock.read():
            operation = self._operations.get(operation_id)
            runner = self._runners.get(operation_id)
        if operation is None or runner is None:
            raise NotFoundError("Operation", operation_id)
        if operation.is_terminal:
            raise ConflictError(
                f"Operation '{operation_id}' is already {operation.status.value}",
                current_status=operation.status.value,
            )

        pending = operation.status == OperationStatus.PENDING
        if force or pending:
            with self._lock.write():
                runner.force_cancel(reason or ("force stopped" if force else "stopped before start"))
            # A pending runner sees the cancelled status and returns without invoking anything
            task = self._tasks.get(operation_id)
            if force and not pending and task is not None and not task.done():
                task.cancel()
        else:
            runner.request_cancel(reason or "stopped")

        logger.info("operation.stop_requested", operation_id=operation_id, force=force)

    async def cancel_all(self, force: bool = False) -> int:
        """Stop every non-terminal operation. Returns how many were stopped."""
        with self._lock.read():
            active = [op_id for op_id, op in self._operations.items() if not op.is_terminal]
        stopped = 0
        for op_id in active:
            try:
                await self.stop(op_id, force=force, reason="cancel all")
            except (ConflictError, NotFoundError):
                continue
            stopped += 1
        logger.info("operation.cancel_all", stopped=stopped, force=force)
        return stopped

    async def delete(self, operation_id: str) -> None:
        """Remove a terminal operation from the registry.

        Raises:
            NotFoundError: Unknown id.
            ConflictError: Operation not yet terminal.
        """
        with self._lock.write():
            operation = self._operations.get(operation_id)
            if operation is None:
                raise NotFoundError("Operation", operation_id)
            if not operation.is_terminal:
                raise ConflictError(
                    f"Operation '{operation_id}' is {operation.status.value}; stop it before deleting",
                    current_status=operation.status.value,
                )
            del self._operations[operation_id]
            self._runners.pop(operation_id, None)

        self.bus.publish_nowait(
            Event(
                event_type=EventType.OPERATION_DELETED.value,
                source=EVENT_SOURCE,
                payload={"operation_id": operation_id, "operation_type": operation.type},
                correlation_id=operation.trace_id,
            )
        )
        logger.info("operation.deleted", operation_id=operation_id)

    async def prune(self, max_age_seconds: float, *, now: datetime | None = None) -> list[str]:
        """Delete terminal operations that finished more than ``max_age_seconds`` ago.

        Goes through :meth:`delete`, so subscribers see ``operation:deleted``
        for each one. Returns the removed ids.
        """
        cutoff = (now or utcnow()) - timedelta(seconds=max_age_seconds)
        with self._lock.read():
            expired = [
                op.id
                for op in self._operations.values()
                if op.is_terminal and op.completed_at is not None and op.completed_at < cutoff
            ]

        removed = []
        for operation_id in expired:
            try:
                await self.delete(operation_id)
            except NotFoundError:
                continue
            removed.append(operation_id)
        if removed:
            logger.info("operations.pruned", count=len(removed), max_age_seconds=max_age_seconds)
        return removed

    # =========================================================================
    # Lifecycle helpers
    # =========================================================================

    async def wait(self, operation_id: str, timeout: float | None = None) -> Operation:
        """Wait for the runner task to finish, then return a copy of the operation."""
        task = self._tasks.get(operation_id)
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=timeout)
        return self.get_status(operation_id)

    async def shutdown(self) -> None:
        """Force-stop every operation and wait for the runner tasks to exit."""
        await self.cancel_all(force=True)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._operations)

    def __contains__(self, operation_id: object) -> bool:
        with self._lock.read():
            return operation_id in self._operations


__all__ = ["OperationManager", "new_operation_id"]
