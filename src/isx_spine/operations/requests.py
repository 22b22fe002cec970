"""
Request models accepted by ``OperationManager.start``.

Pydantic validates shape and types; :func:`parse_request` converts pydantic
failures into the engine's :class:`ValidationError` so callers only ever
see one error type for malformed input.

Example::

    request = parse_request({
        "type": "full_pipeline",
        "mode": "accumulative",
        "from": "2025-01-01",
        "to": "2025-02-01",
        "config": {"max_retries": 2},
    })
"""

from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from isx_spine.core.errors import ValidationError
from isx_spine.operations.models import Mode


class StepSpec(BaseModel):
    """One requested step. ``parameters`` override the generic request fields."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = Field(default=None, min_length=1, description="Step id (defaults to the type)")
    type: str = Field(min_length=1, description="Registered step type")
    name: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    optional: bool | None = None
    parallel_safe: bool | None = None
    depends_on: list[str] = Field(default_factory=list, description="Step ids that must complete first")


class ConfigSpec(BaseModel):
    """Recognized configuration options; unset values fall back to settings."""

    model_config = ConfigDict(extra="forbid")

    mode: Mode | None = None
    max_retries: int | None = Field(default=None, ge=0, le=10)
    parallel: bool = False
    max_workers: int | None = Field(default=None, ge=1, le=32)
    notify_on_complete: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)
    retry_base_delay: float | None = Field(default=None, ge=0)
    retry_max_delay: float | None = Field(default=None, ge=0)
    retry_multiplier: float | None = Field(default=None, ge=1.0)


class OperationRequest(BaseModel):
    """Workflow request.

    Either ``type`` names a registered operation template, or ``steps``
    lists the steps explicitly (or both: explicit steps win, ``type`` is
    then only a label).
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: str | None = Field(default=None, description="Operation type from the catalog")
    name: str | None = None
    mode: Mode | None = None
    from_date: date | None = Field(default=None, alias="from")
    to_date: date | None = Field(default=None, alias="to")
    steps: list[StepSpec] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    config: ConfigSpec = Field(default_factory=ConfigSpec)
    created_by: str = "system"
    trace_id: str | None = None

    @model_validator(mode="after")
    def _check_dates(self) -> OperationRequest:
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("'from' must not be after 'to'")
        return self

    def generic_fields(self, mode: Mode) -> dict[str, Any]:
        """Request-level fields every step receives before its parameter mapping."""
        fields: dict[str, Any] = {"mode": mode.value}
        if self.from_date:
            fields["from"] = self.from_date.isoformat()
        if self.to_date:
            fields["to"] = self.to_date.isoformat()
        fields.update(self.parameters)
        return fields


def _error_details(exc: PydanticValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in err["loc"]) or None,
            "message": err["msg"],
            "code": err["type"].upper(),
        }
        for err in exc.errors()
    ]


def parse_request(data: OperationRequest | dict[str, Any]) -> OperationRequest:
    """Validate raw request data into an :class:`OperationRequest`.

    Raises:
        ValidationError: On any schema violation, with field-level details.
    """
    if isinstance(data, OperationRequest):
        return data
    if not isinstance(data, dict):
        raise ValidationError(f"Request must be an object, got {type(data).__name__}")
    try:
        return OperationRequest.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid operation request", errors=_error_details(exc), cause=exc) from exc


__all__ = ["ConfigSpec", "OperationRequest", "StepSpec", "parse_request"]
