"""
Step registry: executors, parameter-mapping table and operation templates.

Why This Module Exists
----------------------
The runner must not know what a step *does*; it only needs an executor to
invoke and a declarative description of how generic request fields map to
that executor's parameter names. Both live in one table keyed by step
type, so new step types are added by registering them, never by touching
the runner.

StepExecutor contract::

    async def execute(ctx: StepContext, params: dict, on_progress) -> StepResult | dict | None

- ``ctx`` is the cancellable context (``ctx.check()`` at safe checkpoints)
- ``on_progress(ProgressUpdate(...))`` is synchronous and never blocks
- raising signals failure; ``StepResult.fail(...)`` does too

Parameter mapping::

    ParameterMap(renames={"from": "from_date", "to": "to_date"})
    generic {"mode": "full", "from": "2025-01-01"} + overrides {"to": "2025-02-01"}
        → {"mode": "full", "from_date": "2025-01-01", "to_date": "2025-02-01"}

Tags:
    operations, registry, step-executor, parameter-mapping
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from isx_spine.core.errors import ErrorCategory

if TYPE_CHECKING:
    from isx_spine.operations.context import StepContext


# =============================================================================
# Executor contract
# =============================================================================


@dataclass
class ProgressUpdate:
    """Progress report from a running executor.

    Either ``progress`` (0–100) or ``current``/``total`` may be given; the
    percentage is derived from the counts when ``progress`` is omitted.
    ``metadata`` is merged into the step's metadata map.
    """

    progress: float | None = None
    message: str = ""
    current: int | None = None
    total: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def percent(self) -> float | None:
        if self.progress is not None:
            return max(0.0, min(100.0, float(self.progress)))
        if self.current is not None and self.total:
            return round(max(0.0, min(100.0, self.current * 100.0 / self.total)), 2)
        return None


ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass
class StepResult:
    """Envelope returned by executors.

    Attributes:
        success: Whether the step completed successfully
        output: Data merged into the step's metadata map
        error: Error message if success=False
        error_category: Category for retry decisions
        retryable: Whether a failed result may be retried
    """

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_category: str | None = None
    retryable: bool = True

    def __post_init__(self) -> None:
        if not self.success and not self.error:
            self.error = "Step failed without error message"
        if isinstance(self.error_category, ErrorCategory):
            self.error_category = self.error_category.value

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None) -> StepResult:
        return cls(success=True, output=output or {})

    @classmethod
    def fail(
        cls,
        error: str,
        category: ErrorCategory | str = ErrorCategory.EXECUTION,
        *,
        retryable: bool = True,
        output: dict[str, Any] | None = None,
    ) -> StepResult:
        return cls(success=False, output=output or {}, error=error, error_category=category, retryable=retryable)

    @classmethod
    def from_value(cls, value: Any) -> StepResult:
        """Coerce an executor's return value into a StepResult.

        ========== ================================================
        StepResult returned as-is
        None       ``ok()``
        dict       ``ok(output=value)``
        bool       ``ok()`` if True, ``fail(...)`` if False
        other      ``ok(output={"result": value})``
        ========== ================================================
        """
        if isinstance(value, StepResult):
            return value
        if value is None:
            return cls.ok()
        if isinstance(value, dict):
            return cls.ok(output=value)
        if isinstance(value, bool):
            return cls.ok() if value else cls.fail("Step returned False")
        return cls.ok(output={"result": value})

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "output": self.output}
        if self.error:
            result["error"] = self.error
            result["retryable"] = self.retryable
        if self.error_category:
            result["error_category"] = self.error_category
        return result


@runtime_checkable
class StepExecutor(Protocol):
    """Pluggable unit performing one workflow stage."""

    async def execute(
        self,
        ctx: StepContext,
        params: dict[str, Any],
        on_progress: ProgressCallback,
    ) -> StepResult | dict[str, Any] | None: ...


ExecutorFunction = Callable[["StepContext", dict[str, Any], ProgressCallback], Awaitable[Any]]


class FunctionExecutor:
    """Adapts a plain ``async def fn(ctx, params, on_progress)`` to the executor protocol."""

    def __init__(self, fn: ExecutorFunction):
        if not inspect.iscoroutinefunction(fn):
            raise TypeError(f"Executor function {fn!r} must be async")
        self.fn = fn

    async def execute(self, ctx: StepContext, params: dict[str, Any], on_progress: ProgressCallback) -> Any:
        return await self.fn(ctx, params, on_progress)

    def __repr__(self) -> str:
        return f"FunctionExecutor({getattr(self.fn, '__name__', self.fn)!r})"


# =============================================================================
# Declarative parameter mapping
# =============================================================================


@dataclass(frozen=True)
class ParameterMap:
    """Maps generic request fields to one step type's parameter names.

    Attributes:
        renames: ``{generic_name: step_name}``
        defaults: Values used when neither request nor overrides set a key
        include: When set, only these (post-rename) keys are passed on
    """

    renames: Mapping[str, str] = field(default_factory=dict)
    defaults: Mapping[str, Any] = field(default_factory=dict)
    include: frozenset[str] | None = None

    def apply(self, generic: Mapping[str, Any], overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Merge defaults < generic request fields < per-step overrides, then rename."""
        merged: dict[str, Any] = {}
        for source in (self.defaults, generic, overrides or {}):
            for key, value in source.items():
                if value is not None:
                    merged[key] = value

        resolved: dict[str, Any] = {}
        for key, value in merged.items():
            resolved[self.renames.get(key, key)] = value

        if self.include is not None:
            resolved = {k: v for k, v in resolved.items() if k in self.include}
        return resolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "renames": dict(self.renames),
            "defaults": dict(self.defaults),
            "include": sorted(self.include) if self.include is not None else None,
        }


# =============================================================================
# Definitions
# =============================================================================


@dataclass
class StepDefinition:
    """Registered step type."""

    type: str
    name: str
    executor: StepExecutor
    parameter_map: ParameterMap = field(default_factory=ParameterMap)
    parallel_safe: bool = False
    optional: bool = False
    timeout_seconds: float | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "parallel_safe": self.parallel_safe,
            "optional": self.optional,
            "timeout_seconds": self.timeout_seconds,
            "parameter_map": self.parameter_map.to_dict(),
        }


@dataclass
class OperationTemplate:
    """Named operation type that expands into an ordered list of step types."""

    id: str
    name: str
    steps: tuple[str, ...]
    description: str = ""
    category: str = "data"
    parameters: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "steps": list(self.steps),
            "parameters": [dict(p) for p in self.parameters],
        }


class StepRegistry:
    """Table of step types and operation templates.

    An instance, not a module global, so several engines (or tests) can
    hold different tables side by side.

    Example::

        registry = StepRegistry()
        registry.register(
            "processing",
            executor=CommandStepExecutor("processor"),
            parameter_map=ParameterMap(renames={"from": "from_date"}),
        )
        registry.resolve_parameters("processing", {"from": "2025-01-01"})
        # {"from_date": "2025-01-01"}
    """

    def __init__(self) -> None:
        self._steps: dict[str, StepDefinition] = {}
        self._templates: dict[str, OperationTemplate] = {}

    # ── Step types ─────────────────────────────────────────────────────

    def register(
        self,
        step_type: str,
        executor: StepExecutor | ExecutorFunction,
        *,
        name: str | None = None,
        parameter_map: ParameterMap | None = None,
        parallel_safe: bool = False,
        optional: bool = False,
        timeout_seconds: float | None = None,
        description: str = "",
        replace: bool = False,
    ) -> StepDefinition:
        """Register a step type. Plain async functions are wrapped in :class:`FunctionExecutor`."""
        if not step_type:
            raise ValueError("step_type must be a non-empty string")
        if step_type in self._steps and not replace:
            raise ValueError(f"Step type '{step_type}' is already registered")
        if not hasattr(executor, "execute"):
            executor = FunctionExecutor(executor)

        definition = StepDefinition(
            type=step_type,
            name=name or step_type.replace("_", " ").title(),
            executor=executor,
            parameter_map=parameter_map or ParameterMap(),
            parallel_safe=parallel_safe,
            optional=optional,
            timeout_seconds=timeout_seconds,
            description=description,
        )
        self._steps[step_type] = definition
        return definition

    def get(self, step_type: str) -> StepDefinition:
        try:
            return self._steps[step_type]
        except KeyError:
            raise KeyError(f"Unknown step type '{step_type}'") from None

    def types(self) -> list[str]:
        return list(self._steps)

    def definitions(self) -> list[StepDefinition]:
        return list(self._steps.values())

    def resolve_parameters(
        self,
        step_type: str,
        generic: Mapping[str, Any],
        overrides: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Apply the step type's parameter map."""
        return self.get(step_type).parameter_map.apply(generic, overrides)

    def __contains__(self, step_type: object) -> bool:
        return step_type in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    # ── Operation templates ────────────────────────────────────────────

    def register_template(self, template: OperationTemplate, *, replace: bool = False) -> OperationTemplate:
        if template.id in self._templates and not replace:
            raise ValueError(f"Operation type '{template.id}' is already registered")
        self._templates[template.id] = template
        return template

    def template(self, operation_type: str) -> OperationTemplate | None:
        return self._templates.get(operation_type)

    def templates(self) -> list[OperationTemplate]:
        return list(self._templates.values())

    def clear(self) -> None:
        """Remove every step type and template (primarily for testing)."""
        self._steps.clear()
        self._templates.clear()


__all__ = [
    "ExecutorFunction",
    "FunctionExecutor",
    "OperationTemplate",
    "ParameterMap",
    "ProgressCallback",
    "ProgressUpdate",
    "StepDefinition",
    "StepExecutor",
    "StepRegistry",
    "StepResult",
]
