"""
Tests for StepRunner: worker pool, timeouts, containment of executor
crashes, progress reporting and cancellation during backoff.
"""

from __future__ import annotations

import asyncio
import threading

import pytest

from isx_spine.core.events import Event
from isx_spine.observability.metrics import EngineMetrics
from isx_spine.operations.context import CancellationToken
from isx_spine.operations.manager import OperationManager
from isx_spine.operations.models import Operation, OperationConfig, OperationStatus, Step
from isx_spine.operations.registry import ProgressUpdate, StepRegistry, StepResult
from isx_spine.operations.runner import StepRunner
from tests._support.executors import FAST_RETRY, RecordingExecutor, build_registry, steps


def _operation(registry: StepRegistry, *step_types: str, **config) -> Operation:
    return Operation(
        id="op_runner",
        name="Runner test",
        type="custom",
        steps=[
            Step(
                id=t,
                name=t,
                type=t,
                order=i,
                parallel_safe=registry.get(t).parallel_safe,
                max_retries=config.get("max_retries", 0),
            )
            for i, t in enumerate(step_types)
        ],
        config=OperationConfig(**config),
    )


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_parallel_safe_steps_bounded_by_max_workers(self, bus, settings):
        shared = RecordingExecutor(delay=0.05)
        registry = StepRegistry()
        for name in ("i1", "i2", "i3", "i4"):
            registry.register(name, shared, parallel_safe=True)
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({"steps": steps("i1", "i2", "i3", "i4"), "config": {"parallel": True, "max_workers": 2}})
        op = await manager.wait(op_id, timeout=2)

        assert op.status == OperationStatus.COMPLETED
        assert shared.call_count == 4
        assert shared.max_active == 2

    @pytest.mark.asyncio
    async def test_not_parallel_unless_configured(self, bus, settings):
        shared = RecordingExecutor(delay=0.01)
        registry = StepRegistry()
        for name in ("i1", "i2", "i3"):
            registry.register(name, shared, parallel_safe=True)
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({"steps": steps("i1", "i2", "i3"), "config": {"max_workers": 3}})
        await manager.wait(op_id, timeout=2)

        assert shared.max_active == 1

    def test_batches_split_on_sequential_steps(self, bus):
        registry = StepRegistry()
        registry.register("fetch", RecordingExecutor())
        registry.register("idx", RecordingExecutor(), parallel_safe=True)
        registry.register("liq", RecordingExecutor(), parallel_safe=True)
        registry.register("report", RecordingExecutor())
        op = _operation(registry, "fetch", "idx", "liq", "report", parallel=True, max_workers=4)

        runner = StepRunner(op, registry, bus)
        assert [[s.id for s in batch] for batch in runner._batches()] == [["fetch"], ["idx", "liq"], ["report"]]

    def test_batches_split_on_dependency(self, bus):
        registry = StepRegistry()
        for name in ("idx", "liq", "vol"):
            registry.register(name, RecordingExecutor(), parallel_safe=True)
        op = _operation(registry, "idx", "liq", "vol", parallel=True, max_workers=4)
        op.step("vol").depends_on = ("idx",)

        runner = StepRunner(op, registry, bus)
        assert [[s.id for s in batch] for batch in runner._batches()] == [["idx", "liq"], ["vol"]]

    @pytest.mark.asyncio
    async def test_required_failure_stops_unstarted_siblings(self, bus, settings):
        bad = RecordingExecutor(fail_times=-1)
        sibling = RecordingExecutor()
        registry = StepRegistry()
        registry.register("bad", bad, parallel_safe=True)
        registry.register("sibling", sibling, parallel_safe=True)
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({
            "steps": steps("bad", "sibling"),
            "config": {"parallel": True, "max_workers": 1, "max_retries": 0},
        })
        op = await manager.wait(op_id, timeout=2)

        assert bad.call_count == 1
        assert sibling.call_count == 0
        assert op.step("sibling").status == OperationStatus.CANCELLED
        assert op.status == OperationStatus.FAILED
        assert op.failed_step == "bad"

    @pytest.mark.asyncio
    async def test_optional_failure_keeps_batch_going(self, bus, settings):
        sibling = RecordingExecutor()
        registry = StepRegistry()
        registry.register("extra", RecordingExecutor(fail_times=-1), parallel_safe=True, optional=True)
        registry.register("sibling", sibling, parallel_safe=True)
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({
            "steps": steps("extra", "sibling"),
            "config": {"parallel": True, "max_workers": 1},
        })
        op = await manager.wait(op_id, timeout=2)

        assert sibling.call_count == 1
        assert op.metadata["partial"] is True


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_step_timeout_fails_step(self, bus, settings):
        manager = OperationManager(build_registry(slow=RecordingExecutor(delay=5)), bus, settings=settings)

        op_id = await manager.start({"steps": [{"type": "slow", "timeout_seconds": 0.05}]})
        op = await manager.wait(op_id, timeout=2)

        assert op.status == OperationStatus.FAILED
        assert op.error_code == "STEP_TIMEOUT"
        assert "timed out" in op.steps[0].last_error

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, bus, settings):
        slow = RecordingExecutor(delay=5)
        manager = OperationManager(build_registry(slow=slow), bus, settings=settings)

        op_id = await manager.start({
            "steps": [{"type": "slow", "timeout_seconds": 0.02}],
            "config": {"max_retries": 1, **FAST_RETRY},
        })
        await manager.wait(op_id, timeout=2)

        assert slow.call_count == 2


class TestDependencies:
    @pytest.mark.asyncio
    async def test_failed_dependency_skips_dependents_transitively(self, bus, settings):
        events: list[Event] = []

        async def collect(event: Event):
            events.append(event)

        await bus.subscribe("operation:progress", collect)
        processing, report, indices = RecordingExecutor(), RecordingExecutor(), RecordingExecutor()
        manager = OperationManager(
            build_registry(scraping=RecordingExecutor(fail_times=-1), processing=processing, report=report, indices=indices),
            bus,
            settings=settings,
        )

        op_id = await manager.start({
            "steps": [
                {"type": "scraping", "optional": True},
                {"type": "processing", "depends_on": ["scraping"]},
                {"type": "report", "depends_on": ["processing"]},
                {"type": "indices"},
            ]
        })
        op = await manager.wait(op_id, timeout=2)
        await bus.flush()

        assert processing.call_count == 0
        assert report.call_count == 0
        assert indices.call_count == 1
        assert op.step("processing").status == OperationStatus.CANCELLED
        assert op.step("processing").message == "Skipped: dependency 'scraping' failed"
        assert op.step("report").message == "Skipped: dependency 'processing' cancelled"
        assert op.step("report").metadata == {"skipped": True, "blocked_by": "processing"}
        assert op.step("indices").status == OperationStatus.COMPLETED
        assert op.metadata["skipped_steps"] == ["processing", "report"]
        assert op.status == OperationStatus.FAILED
        assert op.failed_step == "scraping"

        skipped = [e.payload["step_id"] for e in events if e.payload.get("reason") == "skipped"]
        assert skipped == ["processing", "report"]
        await bus.close()

    @pytest.mark.asyncio
    async def test_completed_dependency_lets_step_run(self, bus, settings):
        convert = RecordingExecutor()
        manager = OperationManager(build_registry(fetch=RecordingExecutor(), convert=convert), bus, settings=settings)

        op_id = await manager.start({"steps": [{"type": "fetch"}, {"type": "convert", "depends_on": ["fetch"]}]})
        op = await manager.wait(op_id, timeout=2)

        assert convert.call_count == 1
        assert op.status == OperationStatus.COMPLETED


class TestContainment:
    @pytest.mark.asyncio
    async def test_executor_crash_becomes_step_failure(self, bus, settings):
        crashing = RecordingExecutor(fail_times=-1, error=ZeroDivisionError("division by zero"))
        after = RecordingExecutor()
        manager = OperationManager(build_registry(crash=crashing, after=after), bus, settings=settings)

        op_id = await manager.start({"steps": steps("crash", "after")})
        op = await manager.wait(op_id, timeout=2)

        assert op.status == OperationStatus.FAILED
        assert op.failed_step == "crash"
        assert op.error_code == "INTERNAL_ERROR"
        assert "ZeroDivisionError" in op.error
        assert after.call_count == 0

        # the manager keeps working after a crash
        second = await manager.start({"steps": steps("after")})
        assert (await manager.wait(second, timeout=2)).status == OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_crash_is_retried_like_any_failure(self, bus, settings):
        crashing = RecordingExecutor(fail_times=1, error=KeyError("rows"))
        manager = OperationManager(build_registry(crash=crashing), bus, settings=settings)

        op_id = await manager.start({"steps": steps("crash"), "config": {"max_retries": 1, **FAST_RETRY}})
        op = await manager.wait(op_id, timeout=2)

        assert crashing.call_count == 2
        assert op.status == OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_result_counts_as_failure(self, bus, settings):
        async def reject(ctx, params, on_progress):
            return StepResult.fail("no trading days in range", retryable=False)

        registry = StepRegistry()
        registry.register("reject", reject)
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({"steps": steps("reject"), "config": {"max_retries": 3}})
        op = await manager.wait(op_id, timeout=2)

        assert op.status == OperationStatus.FAILED
        assert op.steps[0].attempts == 1
        assert op.error == "no trading days in range"

    @pytest.mark.asyncio
    async def test_synchronous_raise_is_contained(self, bus, settings):
        class BrokenAdapter:
            """Executor whose plain ``execute`` raises before returning anything."""

            def __init__(self):
                self.calls = 0

            def execute(self, ctx, params, on_progress):
                self.calls += 1
                raise RuntimeError("adapter misconfigured")

        broken = BrokenAdapter()
        after = RecordingExecutor()
        registry = StepRegistry()
        registry.register("broken", broken)
        registry.register("after", after)
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({
            "steps": [{"type": "broken", "optional": True, "max_retries": 2}, {"type": "after"}],
            "config": FAST_RETRY,
        })
        op = await manager.wait(op_id, timeout=2)

        assert broken.calls == 3
        assert op.step("broken").status == OperationStatus.FAILED
        assert op.step("broken").error_code == "INTERNAL_ERROR"
        assert op.step("after").status == OperationStatus.COMPLETED
        assert op.status == OperationStatus.FAILED
        assert op.metadata["partial"] is True

    @pytest.mark.asyncio
    async def test_synchronous_return_value_accepted(self, bus, settings):
        class CountingAdapter:
            def execute(self, ctx, params, on_progress):
                return {"rows": 3}

        registry = StepRegistry()
        registry.register("count", CountingAdapter())
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({"steps": steps("count")})
        op = await manager.wait(op_id, timeout=2)

        assert op.status == OperationStatus.COMPLETED
        assert op.steps[0].metadata["rows"] == 3


class TestProgressAndOutput:
    @pytest.mark.asyncio
    async def test_progress_and_output_recorded(self, bus, settings):
        events: list[Event] = []

        async def collect(event: Event):
            events.append(event)

        await bus.subscribe("step:progress", collect)

        async def convert(ctx, params, on_progress):
            on_progress(ProgressUpdate(current=1, total=4, metadata={"current_file": "a.xlsx"}))
            on_progress(ProgressUpdate(current=4, total=4, message="done"))
            return {"files_total": 4}

        registry = StepRegistry()
        registry.register("convert", convert)
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({"steps": steps("convert")})
        op = await manager.wait(op_id, timeout=2)
        await bus.flush()

        assert [e.payload["progress"] for e in events] == [25.0, 100.0]
        assert op.steps[0].metadata["current_file"] == "a.xlsx"
        assert op.steps[0].metadata["files_total"] == 4
        assert op.progress == 100.0
        await bus.close()

    @pytest.mark.asyncio
    async def test_progress_from_worker_thread(self, bus, settings):
        events: list[Event] = []

        async def collect(event: Event):
            events.append(event)

        await bus.subscribe("step:progress", collect)

        async def threaded(ctx, params, on_progress):
            def work():
                on_progress(ProgressUpdate(progress=50, message="halfway"))

            thread = threading.Thread(target=work)
            thread.start()
            await asyncio.to_thread(thread.join)
            await asyncio.sleep(0.01)
            return None

        registry = StepRegistry()
        registry.register("threaded", threaded)
        manager = OperationManager(registry, bus, settings=settings)

        op_id = await manager.start({"steps": steps("threaded")})
        op = await manager.wait(op_id, timeout=2)

        await bus.flush()

        assert op.status == OperationStatus.COMPLETED
        assert [(e.payload["progress"], e.payload["message"]) for e in events] == [(50.0, "halfway")]
        await bus.close()

    @pytest.mark.asyncio
    async def test_events_carry_snapshots_and_trace_id(self, bus, settings):
        events: list[Event] = []

        async def collect(event: Event):
            events.append(event)

        await bus.subscribe("*", collect)
        manager = OperationManager(build_registry(fetch=RecordingExecutor()), bus, settings=settings)

        op_id = await manager.start({"steps": steps("fetch"), "trace_id": "trace-42"})
        await manager.wait(op_id, timeout=2)
        await bus.flush()

        assert all(e.correlation_id == "trace-42" for e in events)
        versions = [e.payload["version"] for e in events]
        assert versions == sorted(versions)
        assert events[-1].payload["snapshot"]["status"] == "completed"
        await bus.close()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_stop_during_backoff(self, bus, settings):
        always = RecordingExecutor(fail_times=-1)
        manager = OperationManager(build_registry(flaky=always), bus, settings=settings)

        op_id = await manager.start({
            "steps": steps("flaky"),
            "config": {"max_retries": 5, "retry_base_delay": 10, "retry_max_delay": 10},
        })
        await asyncio.wait_for(always.started.wait(), 2)
        await asyncio.sleep(0.01)
        assert manager.get_status(op_id).steps[0].status == OperationStatus.RETRYING

        await manager.stop(op_id)
        op = await manager.wait(op_id, timeout=2)

        assert op.status == OperationStatus.CANCELLED
        assert always.call_count == 1

    @pytest.mark.asyncio
    async def test_cooperative_stop_publishes_step_cancellation(self, bus, settings):
        events: list[Event] = []

        async def collect(event: Event):
            events.append(event)

        await bus.subscribe("*", collect)
        gate = asyncio.Event()
        fetch = RecordingExecutor(gate=gate)
        manager = OperationManager(build_registry(fetch=fetch), bus, settings=settings)

        op_id = await manager.start({"steps": steps("fetch")})
        await asyncio.wait_for(fetch.started.wait(), 2)
        await manager.stop(op_id, force=False)
        op = await manager.wait(op_id, timeout=2)
        await bus.flush()

        cancelled = [e for e in events if e.payload.get("reason") == "cancelled"]
        assert len(cancelled) == 1
        assert cancelled[0].event_type == "operation:progress"
        assert cancelled[0].payload["step"]["status"] == "cancelled"
        # every version bump is published; the last event carries the final version
        versions = [e.payload["version"] for e in events if e.payload.get("operation_id") == op_id]
        assert versions == sorted(set(versions))
        assert versions[-1] == op.version
        await bus.close()

    @pytest.mark.asyncio
    async def test_cancelled_token_skips_run(self, bus):
        fetch = RecordingExecutor()
        registry = build_registry(fetch=fetch)
        token = CancellationToken()
        token.cancel("shutdown")
        runner = StepRunner(_operation(registry, "fetch"), registry, bus, token=token)

        status = await runner.run()

        assert status == OperationStatus.PENDING
        assert fetch.call_count == 0

    @pytest.mark.asyncio
    async def test_force_cancel_is_idempotent(self, bus):
        registry = build_registry(fetch=RecordingExecutor())
        runner = StepRunner(_operation(registry, "fetch"), registry, bus)

        assert runner.force_cancel() is True
        assert runner.force_cancel() is False
        assert runner.operation.status == OperationStatus.CANCELLED


class TestMetrics:
    @pytest.mark.asyncio
    async def test_metrics_recorded(self, bus, settings):
        metrics = EngineMetrics()
        flaky = RecordingExecutor(fail_times=1)
        manager = OperationManager(build_registry(flaky=flaky), bus, settings=settings, metrics=metrics)

        op_id = await manager.start({"steps": steps("flaky"), "config": {"max_retries": 1, **FAST_RETRY}})
        await manager.wait(op_id, timeout=2)

        assert metrics.step_attempts.value(step_type="flaky") == 2
        assert metrics.step_retries.value(step_type="flaky") == 1
        assert metrics.operations_finished.value(operation_type="flaky", status="completed") == 1
        assert metrics.operations_active.value() == 0
