"""
StepRunner - drives one operation's steps against their executors.

Manifesto:
    A misbehaving executor must never take the orchestration process down
    with it. Every invocation is wrapped: exceptions are contained and
    converted, retries follow an explicit backoff policy, cancellation is
    cooperative through a context, and every state change is published as
    an event right after it happens.

Architecture:
    ::

        run()
          ├── _begin()                      pending → running, operation:start
          ├── for batch in _batches():      consecutive parallel-safe steps batch
          │     └── _run_step(step)         (bounded by config.max_workers)
          │           ├── _skip_step        dependency not completed, operation:progress
          │           ├── _start_attempt    step:start
          │           ├── _invoke           executor + timeout timer + containment
          │           ├── _schedule_retry   running → retrying, operation:progress
          │           ├── _complete_step    step:complete
          │           └── _fail_step        step:failed
          └── _finish()                     operation:complete | failed | cancelled

    Single writer: only this runner mutates its operation, always under
    ``operation.lock``. ``force_cancel`` is the one entry point other code
    (the manager) uses, and it takes the same lock.

Failure semantics:
    - Retryable errors are retried up to ``step.max_retries`` times with
      exponential backoff; the step is ``retrying`` while it waits.
    - When a step finally fails the operation stops (``failed``) unless the
      step is optional; optional failures let the remaining steps run and
      the operation still ends ``failed`` with ``metadata.partial = True``.
    - A step listing ``depends_on`` runs only if every dependency completed;
      otherwise it is skipped (``cancelled`` with ``metadata.skipped``), and
      so are its own dependents. Independent steps keep running.
    - In a parallel batch a required failure stops siblings that have not
      started yet; ones already running finish.
    - Executor calls are contained whether they raise synchronously, raise
      from a coroutine, or return a plain value.
    - Unexpected exceptions become ``InternalError`` (logged with the
      traceback) and are then handled as ``ExecutionError``.

Tags:
    operations, runner, retry, cancellation, asyncio, worker-pool

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from typing import Any

from isx_spine.core.errors import (
    CancellationError,
    ExecutionError,
    InternalError,
    SpineError,
    StepTimeoutError,
)
from isx_spine.core.events import Event, EventBus
from isx_spine.core.logging import LogContext, get_logger
from isx_spine.observability.metrics import EngineMetrics
from isx_spine.operations.context import CancellationToken, StepContext
from isx_spine.operations.models import (
    TERMINAL_EVENTS,
    EventType,
    Operation,
    OperationStatus,
    Step,
    utcnow,
)
from isx_spine.operations.registry import ProgressCallback, ProgressUpdate, StepDefinition, StepRegistry, StepResult
from isx_spine.operations.retry import ExponentialBackoff

logger = get_logger(__name__)

EVENT_SOURCE = "step-runner"


class StepRunner:
    """Executes one operation's steps.

    Args:
        operation: The live operation (owned by this runner from now on)
        registry: Step registry providing executors
        bus: Event bus receiving state-change events
        token: Operation-level cancellation token
        metrics: Optional engine metrics
        retry_jitter: Add jitter to backoff delays
    """

    def __init__(
        self,
        operation: Operation,
        registry: StepRegistry,
        bus: EventBus,
        *,
        token: CancellationToken | None = None,
        metrics: EngineMetrics | None = None,
        retry_jitter: bool = False,
    ) -> None:
        self.operation = operation
        self.registry = registry
        self.bus = bus
        self.token = token or CancellationToken()
        self.metrics = metrics
        self.retry_jitter = retry_jitter
        self._semaphore: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None

    # =========================================================================
    # Entry points
    # =========================================================================

    async def run(self) -> OperationStatus:
        """Run the operation to a terminal status and return it."""
        op = self.operation
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()

        async with LogContext(operation_id=op.id, operation_type=op.type, trace_id=op.trace_id):
            try:
                if not self._begin():
                    logger.debug("operation.skip_run", status=op.status.value)
                    return op.status

                for batch in self._batches():
                    if self.token.cancelled:
                        break
                    if not await self._run_batch(batch):
                        break

                return self._finish()
            except asyncio.CancelledError:
                # Forced stop or shutdown: the executor was abandoned mid-flight
                if not op.is_terminal:
                    self.force_cancel(self.token.reason or "cancelled")
                logger.info("operation.force_stopped", status=op.status.value)
                raise
            except Exception as exc:
                logger.exception("operation.runner_error", error=str(exc))
                return self._finish_internal(exc)

    def force_cancel(self, reason: str = "force stopped") -> bool:
        """Finalize the operation as stopped right now, without waiting for executors.

        Returns False if the operation was already terminal.
        """
        op = self.operation
        with op.lock:
            if op.is_terminal:
                return False
            self.token.cancel(reason, force=True)
            self._finalize()
            return True

    def request_cancel(self, reason: str = "stopped") -> None:
        """Cooperative stop: executors see it at their next checkpoint."""
        self.token.cancel(reason)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _batches(self) -> list[list[Step]]:
        """Group steps by order; consecutive parallel-safe steps share a batch when parallel."""
        steps = sorted(self.operation.steps, key=lambda s: s.order)
        if not self.operation.config.parallel:
            return [[s] for s in steps]

        batches: list[list[Step]] = []
        for step in steps:
            current = batches[-1] if batches else None
            joins = (
                current is not None
                and step.parallel_safe
                and current[-1].parallel_safe
                and not any(s.id in step.depends_on for s in current)
            )
            if joins:
                current.append(step)
            else:
                batches.append([step])
        return batches

    async def _run_batch(self, batch: list[Step]) -> bool:
        if len(batch) == 1:
            return await self._run_step(batch[0])

        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(max(1, self.operation.config.max_workers))
        semaphore = self._semaphore
        aborted = False

        async def guarded(step: Step) -> bool:
            nonlocal aborted
            async with semaphore:
                # A required failure in the batch stops siblings that have not started
                if aborted or self.token.cancelled:
                    logger.debug("batch.step_not_started", step=step.id)
                    return False
                ok = await self._run_step(step)
                if not ok:
                    aborted = True
                return ok

        logger.debug("batch.start", steps=[s.id for s in batch], max_workers=self.operation.config.max_workers)
        results = await asyncio.gather(*(guarded(s) for s in batch))
        return all(results)

    def _unmet_dependency(self, step: Step) -> Step | None:
        """First dependency of ``step`` that did not complete, if any."""
        for dep_id in step.depends_on:
            dep = self.operation.step(dep_id)
            if dep.status != OperationStatus.COMPLETED:
                return dep
        return None

    async def _run_step(self, step: Step) -> bool:
        """Run one step with retries. Returns whether the operation should continue."""
        blocker = self._unmet_dependency(step)
        if blocker is not None:
            self._skip_step(step, blocker)
            return True

        definition = self.registry.get(step.type)
        policy = ExponentialBackoff.from_config(
            self.operation.config, max_retries=step.max_retries, jitter=self.retry_jitter
        )

        retry = 0
        while True:
            if self.token.cancelled or self.operation.is_terminal:
                return False

            attempt = self._start_attempt(step)
            error = await self._invoke(definition, step, attempt)

            if self.operation.is_terminal:
                # Force-stopped while the executor was finishing
                return False

            if error is None:
                self._complete_step(step)
                return True

            if isinstance(error, CancellationError):
                self._cancel_step(step, error)
                return False

            if policy.should_retry(retry, error):
                delay = policy.next_delay(retry)
                self._schedule_retry(step, error, delay)
                try:
                    await self._backoff(delay)
                except CancellationError as exc:
                    self._cancel_step(step, exc)
                    return False
                retry += 1
                continue

            self._fail_step(step, error)
            return step.optional

    async def _backoff(self, delay: float) -> None:
        """Wait between attempts; wakes early with CancellationError when stopped."""
        if self.token.cancelled:
            raise CancellationError(f"Stopped during retry backoff: {self.token.reason}")
        if delay <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self.token.wait(), timeout=delay)
            except asyncio.TimeoutError:
                return
        if self.token.cancelled:
            raise CancellationError(f"Stopped during retry backoff: {self.token.reason}")

    # =========================================================================
    # Invocation
    # =========================================================================

    async def _invoke(self, definition: StepDefinition, step: Step, attempt: int) -> SpineError | None:
        """Call the executor once. Returns None on success, the error otherwise."""
        op = self.operation
        step_token = self.token.child()
        ctx = StepContext(
            operation_id=op.id,
            step_id=step.id,
            step_type=step.type,
            attempt=attempt,
            token=step_token,
            trace_id=op.trace_id,
            mode=op.config.mode.value,
        )
        on_progress = self._progress_callback(step)

        async def call() -> Any:
            # Synchronous raises and non-awaitable returns land inside the task
            result = definition.executor.execute(ctx, dict(step.parameters), on_progress)
            if inspect.isawaitable(result):
                result = await result
            return result

        execution = asyncio.ensure_future(call())

        timer: asyncio.TimerHandle | None = None
        if step.timeout_seconds:
            timer = asyncio.get_running_loop().call_later(
                step.timeout_seconds, self._expire, step_token, execution
            )

        try:
            result = StepResult.from_value(await execution)
            if not result.success:
                return ExecutionError(
                    result.error or "Step failed",
                    retryable=result.retryable,
                ).with_context(operation_id=op.id, step=step.id, attempt=attempt)
            if result.output:
                self._record_output(step, result.output)
            return None
        except asyncio.CancelledError:
            if step_token.reason == "timeout" and not self.token.cancelled:
                return self._timeout_error(step, attempt)
            raise
        except CancellationError as exc:
            if step_token.reason == "timeout" and not self.token.cancelled:
                return self._timeout_error(step, attempt)
            return exc
        except SpineError as exc:
            return exc.with_context(operation_id=op.id, step=step.id, attempt=attempt)
        except Exception as exc:
            internal = InternalError.from_exception(exc).with_context(
                operation_id=op.id, operation_type=op.type, step=step.id, attempt=attempt, trace_id=op.trace_id
            )
            logger.error(
                "step.internal_error",
                step=step.id,
                step_type=step.type,
                attempt=attempt,
                error=internal.message,
                traceback=internal.traceback,
                parameters=sorted(step.parameters),
            )
            return internal.to_execution_error()
        finally:
            if timer is not None:
                timer.cancel()
            self.token.detach(step_token)

    @staticmethod
    def _expire(step_token: CancellationToken, execution: asyncio.Future) -> None:
        step_token.cancel("timeout")
        execution.cancel()

    def _timeout_error(self, step: Step, attempt: int) -> StepTimeoutError:
        return StepTimeoutError(
            f"Step '{step.id}' timed out after {step.timeout_seconds}s",
        ).with_context(operation_id=self.operation.id, step=step.id, attempt=attempt)

    def _progress_callback(self, step: Step) -> ProgressCallback:
        loop = self._loop or asyncio.get_running_loop()

        def on_progress(update: ProgressUpdate) -> None:
            if threading.get_ident() != self._loop_thread:
                loop.call_soon_threadsafe(self._apply_progress, step, update)
            else:
                self._apply_progress(step, update)

        return on_progress

    # =========================================================================
    # State changes (each mutates under the operation lock, then emits)
    # =========================================================================

    def _begin(self) -> bool:
        op = self.operation
        with op.lock:
            if op.status != OperationStatus.PENDING or self.token.cancelled:
                return False
            op.transition(OperationStatus.RUNNING)
            op.started_at = utcnow()
            op.message = f"Running {len(op.steps)} step(s)"
            op.touch()
            self._emit(EventType.OPERATION_START)
        logger.info(
            "operation.start",
            name=op.name,
            step_count=len(op.steps),
            mode=op.config.mode.value,
            parallel=op.config.parallel,
            max_workers=op.config.max_workers,
        )
        return True

    def _start_attempt(self, step: Step) -> int:
        op = self.operation
        with op.lock:
            if step.status == OperationStatus.PENDING:
                step.started_at = utcnow()
            step.transition(OperationStatus.RUNNING)
            step.attempts += 1
            step.message = f"Running {step.name}" if step.attempts == 1 else f"Retry {step.retry_count} of {step.name}"
            op.current_step = step.id
            op.touch()
            attempt = step.attempts
            self._emit(EventType.STEP_START, step, {"attempt": attempt})

        if self.metrics:
            self.metrics.step_attempts.labels(step_type=step.type).inc()
        logger.info("step.start", step=step.id, step_type=step.type, attempt=attempt)
        return attempt

    def _apply_progress(self, step: Step, update: ProgressUpdate) -> None:
        op = self.operation
        with op.lock:
            if op.is_terminal or step.status != OperationStatus.RUNNING:
                return
            percent = update.percent()
            if percent is not None:
                step.progress = percent
            if update.message:
                step.message = update.message
            if update.current is not None:
                step.metadata["current"] = update.current
            if update.total is not None:
                step.metadata["total"] = update.total
            if update.metadata:
                step.metadata.update(update.metadata)
            op.touch()
            self._emit(
                EventType.STEP_PROGRESS,
                step,
                {"progress": step.progress, "message": step.message, "operation_progress": op.progress},
            )

    def _record_output(self, step: Step, output: dict[str, Any]) -> None:
        with self.operation.lock:
            step.metadata.update(output)

    def _complete_step(self, step: Step) -> None:
        op = self.operation
        with op.lock:
            step.transition(OperationStatus.COMPLETED)
            step.progress = 100.0
            step.completed_at = utcnow()
            step.message = f"{step.name} completed"
            op.touch()
            self._emit(EventType.STEP_COMPLETE, step, {"duration_seconds": step.duration_seconds})
        logger.info("step.complete", step=step.id, attempts=step.attempts, duration_seconds=step.duration_seconds)

    def _schedule_retry(self, step: Step, error: SpineError, delay: float) -> None:
        op = self.operation
        with op.lock:
            step.transition(OperationStatus.RETRYING)
            step.retry_count += 1
            step.last_error = error.message
            step.error_code = error.error_code
            step.message = f"Retrying in {delay:.1f}s ({step.retry_count}/{step.max_retries})"
            op.touch()
            self._emit(
                EventType.OPERATION_PROGRESS,
                step,
                {
                    "reason": "retrying",
                    "retry_count": step.retry_count,
                    "max_retries": step.max_retries,
                    "delay_seconds": delay,
                    "error": error.message,
                },
            )
        if self.metrics:
            self.metrics.step_retries.labels(step_type=step.type).inc()
        logger.warning(
            "step.retry",
            step=step.id,
            retry=step.retry_count,
            max_retries=step.max_retries,
            delay_seconds=delay,
            error=error.message,
        )

    def _fail_step(self, step: Step, error: SpineError) -> None:
        op = self.operation
        with op.lock:
            step.transition(OperationStatus.FAILED)
            step.completed_at = utcnow()
            step.last_error = error.message
            step.error_code = error.error_code
            step.message = f"{step.name} failed: {error.message}"

            if not step.optional or op.failed_step is None:
                op.failed_step = step.id
                op.error = error.message
                op.error_code = error.error_code
                op.can_retry = error.retryable
            if step.optional:
                op.metadata["partial"] = True
            op.metadata.setdefault("failed_steps", []).append(step.id)
            op.touch()
            self._emit(
                EventType.STEP_FAILED,
                step,
                {"error": error.to_dict(), "optional": step.optional, "attempts": step.attempts},
            )
        logger.error(
            "step.failed",
            step=step.id,
            step_type=step.type,
            attempts=step.attempts,
            optional=step.optional,
            error_code=error.error_code,
            error=error.message,
        )

    def _cancel_step(self, step: Step, error: CancellationError) -> None:
        op = self.operation
        with op.lock:
            if step.is_terminal:
                return
            step.transition(OperationStatus.CANCELLED)
            step.completed_at = utcnow()
            step.message = f"{step.name} cancelled"
            op.touch()
            self._emit(
                EventType.OPERATION_PROGRESS,
                step,
                {"reason": "cancelled", "message": step.message, "operation_progress": op.progress},
            )
        logger.info("step.cancelled", step=step.id, reason=self.token.reason or error.message)

    def _skip_step(self, step: Step, blocker: Step) -> None:
        """Cancel a step whose dependency did not complete, without invoking it."""
        op = self.operation
        with op.lock:
            if step.is_terminal:
                return
            step.transition(OperationStatus.CANCELLED)
            step.completed_at = utcnow()
            step.message = f"Skipped: dependency '{blocker.id}' {blocker.status.value}"
            step.metadata["skipped"] = True
            step.metadata["blocked_by"] = blocker.id
            op.metadata.setdefault("skipped_steps", []).append(step.id)
            op.touch()
            self._emit(
                EventType.OPERATION_PROGRESS,
                step,
                {"reason": "skipped", "blocked_by": blocker.id, "message": step.message},
            )
        logger.warning("step.skipped", step=step.id, blocked_by=blocker.id, blocker_status=blocker.status.value)

    def _finish(self) -> OperationStatus:
        op = self.operation
        with op.lock:
            if op.is_terminal:
                return op.status
            return self._finalize()

    def _finish_internal(self, exc: Exception) -> OperationStatus:
        op = self.operation
        internal = InternalError.from_exception(exc)
        with op.lock:
            if op.is_terminal:
                return op.status
            for step in op.steps:
                if step.status in (OperationStatus.RUNNING, OperationStatus.RETRYING):
                    step.transition(OperationStatus.FAILED)
                    step.last_error = internal.message
                    step.error_code = internal.error_code
                    op.failed_step = op.failed_step or step.id
            op.error = internal.message
            op.error_code = internal.error_code
            op.can_retry = False
            return self._finalize(message="Operation aborted by an internal error")

    def _finalize(self, message: str | None = None) -> OperationStatus:
        """Move to the terminal status implied by the steps and emit it. Caller holds the lock."""
        op = self.operation
        status = op.finalize()
        if status == OperationStatus.COMPLETED:
            op.error = op.error_code = None
            op.can_retry = False
            op.message = message or "Operation completed successfully"
        elif status == OperationStatus.FAILED:
            op.message = message or f"Operation failed at step '{op.failed_step}'"
        else:
            op.can_retry = True
            op.message = message or f"Operation cancelled: {self.token.reason or 'stopped'}"
        op.touch()

        self._emit(
            TERMINAL_EVENTS[status],
            extra={
                "status": status.value,
                "failed_step": op.failed_step,
                "error": op.error,
                "error_code": op.error_code,
                "can_retry": op.can_retry,
                "notify": op.config.notify_on_complete,
            },
        )
        if self.metrics:
            self.metrics.record_finish(op.type, status.value, op.duration_seconds)

        log = logger.error if status == OperationStatus.FAILED else logger.info
        log(
            "operation.complete",
            operation_id=op.id,
            status=status.value,
            duration_seconds=op.duration_seconds,
            completed_steps=op.metrics.completed_steps,
            failed_steps=op.metrics.failed_steps,
            failed_step=op.failed_step,
        )
        return status

    # =========================================================================
    # Events
    # =========================================================================

    def _emit(self, event_type: EventType, step: Step | None = None, extra: dict[str, Any] | None = None) -> None:
        """Publish an event carrying a copy of the operation. Caller holds the lock."""
        op = self.operation
        payload: dict[str, Any] = {
            "operation_id": op.id,
            "operation_type": op.type,
            "version": op.version,
            "snapshot": op.to_dict(),
        }
        if step is not None:
            payload["step_id"] = step.id
            payload["step"] = step.to_dict()
        if extra:
            payload.update(extra)
        self.bus.publish_nowait(
            Event(event_type=event_type.value, source=EVENT_SOURCE, payload=payload, correlation_id=op.trace_id)
        )


__all__ = ["StepRunner"]
