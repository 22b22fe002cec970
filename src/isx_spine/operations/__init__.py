"""
Operations - multi-step workflow execution.

    manager = OperationManager(registry, bus)
    op_id = await manager.start({"type": "full_pipeline", "mode": "accumulative"})
    op = manager.get_status(op_id)

Modules:
    models      Operation / Step / status state machine
    registry    step executors, parameter maps, templates
    context     cancellation token + step context
    retry       backoff policy
    runner      StepRunner (one per operation)
    manager     OperationManager (registry of operations)
    requests    request validation
    command     subprocess executor for the pipeline tools
    catalog     built-in ISX step types
"""

from isx_spine.operations.catalog import FULL_PIPELINE, register_builtin_steps
from isx_spine.operations.command import CommandStepExecutor
from isx_spine.operations.context import CancellationToken, StepContext
from isx_spine.operations.manager import OperationManager
from isx_spine.operations.models import (
    TERMINAL_STATUSES,
    EventType,
    Mode,
    Operation,
    OperationConfig,
    OperationStatus,
    Step,
)
from isx_spine.operations.registry import (
    FunctionExecutor,
    OperationTemplate,
    ParameterMap,
    ProgressUpdate,
    StepExecutor,
    StepRegistry,
    StepResult,
)
from isx_spine.operations.requests import OperationRequest, StepSpec, parse_request
from isx_spine.operations.retry import ExponentialBackoff
from isx_spine.operations.runner import StepRunner

__all__ = [
    "FULL_PIPELINE",
    "TERMINAL_STATUSES",
    "CancellationToken",
    "CommandStepExecutor",
    "EventType",
    "ExponentialBackoff",
    "FunctionExecutor",
    "Mode",
    "Operation",
    "OperationConfig",
    "OperationManager",
    "OperationRequest",
    "OperationStatus",
    "OperationTemplate",
    "ParameterMap",
    "ProgressUpdate",
    "Step",
    "StepContext",
    "StepExecutor",
    "StepRegistry",
    "StepResult",
    "StepRunner",
    "StepSpec",
    "parse_request",
    "register_builtin_steps",
]
