"""Tests for the step registry, parameter mapping, retry policy and request parsing."""

import pytest

from isx_spine.core.errors import ErrorCategory, ExecutionError, ValidationError
from isx_spine.operations.catalog import FULL_PIPELINE, register_builtin_steps
from isx_spine.operations.models import Mode
from isx_spine.operations.registry import (
    FunctionExecutor,
    OperationTemplate,
    ParameterMap,
    ProgressUpdate,
    StepRegistry,
    StepResult,
)
from isx_spine.operations.requests import parse_request
from isx_spine.operations.retry import ExponentialBackoff


async def _noop(ctx, params, on_progress):
    return None


class TestParameterMap:
    def test_renames_generic_fields(self):
        pm = ParameterMap(renames={"from": "from_date", "to": "to_date"})
        assert pm.apply({"mode": "full", "from": "2025-01-01", "to": "2025-02-01"}) == {
            "mode": "full",
            "from_date": "2025-01-01",
            "to_date": "2025-02-01",
        }

    def test_precedence_defaults_generic_overrides(self):
        pm = ParameterMap(renames={"from": "from_date"}, defaults={"window": 60, "mode": "full"})
        resolved = pm.apply({"mode": "accumulative", "from": "2025-01-01"}, {"window": 30, "from": "2025-01-10"})
        assert resolved == {"window": 30, "mode": "accumulative", "from_date": "2025-01-10"}

    def test_none_values_do_not_override(self):
        pm = ParameterMap(defaults={"window": 60})
        assert pm.apply({"window": None}) == {"window": 60}

    def test_include_restricts_keys(self):
        pm = ParameterMap(renames={"from": "from_date"}, include=frozenset({"from_date"}))
        assert pm.apply({"from": "2025-01-01", "mode": "full"}) == {"from_date": "2025-01-01"}


class TestStepRegistry:
    def test_register_wraps_functions(self):
        registry = StepRegistry()
        definition = registry.register("noop", _noop)
        assert isinstance(definition.executor, FunctionExecutor)
        assert definition.name == "Noop"
        assert "noop" in registry

    def test_duplicate_rejected_unless_replace(self):
        registry = StepRegistry()
        registry.register("noop", _noop)
        with pytest.raises(ValueError):
            registry.register("noop", _noop)
        registry.register("noop", _noop, name="Again", replace=True)
        assert registry.get("noop").name == "Again"

    def test_sync_function_rejected(self):
        with pytest.raises(TypeError):
            StepRegistry().register("sync", lambda ctx, params, cb: None)

    def test_unknown_type(self):
        with pytest.raises(KeyError):
            StepRegistry().get("missing")

    def test_resolve_parameters_uses_table(self):
        registry = StepRegistry()
        registry.register("fetch", _noop, parameter_map=ParameterMap(renames={"to": "to_date"}))
        registry.register("report", _noop, parameter_map=ParameterMap(renames={"to": "end"}))
        assert registry.resolve_parameters("fetch", {"to": "2025-02-01"}) == {"to_date": "2025-02-01"}
        assert registry.resolve_parameters("report", {"to": "2025-02-01"}) == {"end": "2025-02-01"}

    def test_templates(self):
        registry = StepRegistry()
        registry.register_template(OperationTemplate(id="pipe", name="Pipe", steps=("a", "b")))
        assert registry.template("pipe").steps == ("a", "b")
        assert registry.template("missing") is None


class TestBuiltinCatalog:
    def test_full_pipeline_order(self):
        registry = register_builtin_steps(StepRegistry(), "/nonexistent")
        assert registry.template(FULL_PIPELINE).steps == ("scraping", "processing", "indices", "liquidity")
        assert set(registry.types()) == {"scraping", "processing", "indices", "liquidity"}

    def test_scraping_maps_dates(self):
        registry = register_builtin_steps(StepRegistry(), "/nonexistent")
        params = registry.resolve_parameters("scraping", {"mode": "full", "from": "2025-01-01", "to": "2025-01-31"})
        assert params == {"headless": True, "mode": "full", "from_date": "2025-01-01", "to_date": "2025-01-31"}


class TestStepResult:
    def test_from_value(self):
        assert StepResult.from_value(None).success is True
        assert StepResult.from_value({"rows": 3}).output == {"rows": 3}
        assert StepResult.from_value(False).success is False
        assert StepResult.from_value(7).output == {"result": 7}

    def test_fail_defaults(self):
        result = StepResult.fail("bad input", ErrorCategory.VALIDATION, retryable=False)
        assert result.error_category == "VALIDATION"
        assert result.to_dict()["retryable"] is False


class TestProgressUpdate:
    def test_percent_from_counts(self):
        assert ProgressUpdate(current=3, total=12).percent() == 25.0

    def test_percent_clamped(self):
        assert ProgressUpdate(progress=140).percent() == 100.0
        assert ProgressUpdate().percent() is None


class TestExponentialBackoff:
    def test_delays_grow_and_cap(self):
        policy = ExponentialBackoff(max_retries=5, base_delay=1.0, max_delay=5.0, multiplier=2.0)
        assert [policy.next_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_should_retry_respects_cap_and_flag(self):
        policy = ExponentialBackoff(max_retries=2)
        assert policy.should_retry(0, ExecutionError("x")) is True
        assert policy.should_retry(2, ExecutionError("x")) is False
        assert policy.should_retry(0, ExecutionError("x", retryable=False)) is False

    def test_jitter_stays_within_bounds(self):
        policy = ExponentialBackoff(base_delay=4.0, max_delay=10.0, jitter=True, jitter_range=0.25)
        for _ in range(20):
            assert 3.0 <= policy.next_delay(0) <= 5.0


class TestParseRequest:
    def test_aliases_and_dates(self):
        req = parse_request({"type": "full_pipeline", "from": "2025-01-01", "to": "2025-01-31"})
        fields = req.generic_fields(Mode.FULL)
        assert fields == {"mode": "full", "from": "2025-01-01", "to": "2025-01-31"}

    def test_reversed_dates_rejected(self):
        with pytest.raises(ValidationError):
            parse_request({"type": "full_pipeline", "from": "2025-02-01", "to": "2025-01-01"})

    def test_unknown_config_key_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_request({"type": "x", "config": {"max_retries": 1, "turbo": True}})
        assert any(e["field"] == "config.turbo" for e in exc_info.value.errors)

    def test_config_types_checked(self):
        with pytest.raises(ValidationError):
            parse_request({"type": "x", "config": {"max_workers": 0}})

    def test_non_object_rejected(self):
        with pytest.raises(ValidationError):
            parse_request(["not", "a", "request"])
