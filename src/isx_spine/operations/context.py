"""
Cancellable execution context handed to every step executor.

Every operation owns a :class:`CancellationToken`; each step attempt gets a
child token (so a per-step timeout cancels only that attempt) wrapped in a
:class:`StepContext`. ``OperationManager.stop`` cancels the operation token;
executors observe it at their safe checkpoints::

    async def execute(ctx, params, on_progress):
        for path in files:
            ctx.check()                 # raises CancellationError when stopped
            await convert(path)
        await ctx.sleep(5)              # interruptible wait

Tags:
    operations, cancellation, context
"""

from __future__ import annotations

import asyncio
from typing import Any

from isx_spine.core.errors import CancellationError
from isx_spine.core.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """One-shot cancellation flag with parent → child propagation."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.reason: str | None = None
        self.force = False
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled", force=parent.force)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled", *, force: bool = False) -> bool:
        """Cancel this token and its children. Returns False if already cancelled."""
        if self.cancelled:
            return False
        self.reason = reason
        self.force = force
        self._event.set()
        for child in self._children:
            child.cancel(reason, force=force)
        return True

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def detach(self, child: CancellationToken) -> None:
        if child in self._children:
            self._children.remove(child)

    async def wait(self) -> None:
        await self._event.wait()


class StepContext:
    """Context for one step attempt.

    Attributes:
        operation_id: Owning operation
        step_id: Step being executed
        step_type: Registered step type
        attempt: 1-based attempt number
        trace_id: Correlation id threaded through logs and events
        mode: Operation run mode (``full`` / ``accumulative`` / ``initial``)
    """

    def __init__(
        self,
        *,
        operation_id: str,
        step_id: str,
        step_type: str,
        attempt: int,
        token: CancellationToken,
        trace_id: str | None = None,
        mode: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.operation_id = operation_id
        self.step_id = step_id
        self.step_type = step_type
        self.attempt = attempt
        self.trace_id = trace_id
        self.mode = mode
        self.metadata = metadata or {}
        self.token = token
        self.log = logger.bind(operation_id=operation_id, step=step_id, attempt=attempt, trace_id=trace_id)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def reason(self) -> str | None:
        return self.token.reason

    def check(self) -> None:
        """Raise :class:`CancellationError` if the attempt has been cancelled."""
        if self.token.cancelled:
            raise CancellationError(
                f"Step '{self.step_id}' cancelled: {self.token.reason}",
            ).with_context(operation_id=self.operation_id, step=self.step_id, attempt=self.attempt)

    async def wait_cancelled(self) -> None:
        await self.token.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes early, raising :class:`CancellationError`, when cancelled."""
        self.check()
        try:
            await asyncio.wait_for(self.token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.check()

    def __repr__(self) -> str:
        return f"StepContext(operation_id={self.operation_id!r}, step_id={self.step_id!r}, attempt={self.attempt})"


__all__ = ["CancellationToken", "StepContext"]
