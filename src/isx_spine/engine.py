"""
Engine - composition root wiring the manager, bus, broadcaster and hub.

Manifesto:
    Components never construct each other. The engine builds one of each,
    hands them their collaborators, and owns start/stop ordering so that
    no event is lost on startup and no client is left hanging on shutdown.

Architecture:
    ::

        EngineSettings ─┐
                        ▼
        StepRegistry ─▶ OperationManager ──publish──▶ InMemoryEventBus
                                                          │
                                  StatusBroadcaster ◀─────┘
                                          │ deliver / snapshot
                                          ▼
                                   ConnectionHub ◀── transports (WebSocket)

    When ``operation_retention_seconds`` is set, a background sweep prunes
    finished operations (manager and broadcaster snapshots alike).

    Shutdown order: stop retention sweep → stop operations → flush bus →
    close connections → detach broadcaster → close bus.

Tags:
    engine, composition-root, lifecycle

Doc-Types:
    - Architecture Documentation
"""

from __future__ import annotations

import asyncio
from types import TracebackType

from isx_spine import __version__
from isx_spine.core.events.memory import InMemoryEventBus
from isx_spine.core.logging import get_logger
from isx_spine.core.settings import EngineSettings
from isx_spine.observability.metrics import EngineMetrics, MetricsRegistry
from isx_spine.operations.catalog import register_builtin_steps
from isx_spine.operations.manager import OperationManager
from isx_spine.operations.registry import StepRegistry
from isx_spine.streaming.broadcaster import StatusBroadcaster
from isx_spine.streaming.hub import ConnectionHub

logger = get_logger(__name__)


class Engine:
    """All engine components, wired together.

    Args:
        settings: Engine settings (defaults from the environment)
        registry: Step registry; when omitted a new one with the built-in
            ISX steps is created
        metrics_registry: Registry the engine metrics are created in
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        registry: StepRegistry | None = None,
        metrics_registry: MetricsRegistry | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.metrics = EngineMetrics(metrics_registry)
        if registry is None:
            registry = register_builtin_steps(StepRegistry(), self.settings.executable_dir)
        self.registry = registry
        self.bus = InMemoryEventBus()
        self.hub = ConnectionHub(self.settings, metrics=self.metrics, server_version=__version__)
        self.broadcaster = StatusBroadcaster(self.bus, self.hub)
        self.manager = OperationManager(self.registry, self.bus, settings=self.settings, metrics=self.metrics)
        self._started = False
        self._retention_task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        await self.broadcaster.start()
        self._started = True
        if self.settings.operation_retention_seconds is not None:
            self._retention_task = asyncio.ensure_future(self._retention_loop())
        logger.info(
            "engine.start",
            version=__version__,
            step_types=self.registry.types(),
            executable_dir=self.settings.executable_dir,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        if self._retention_task is not None:
            self._retention_task.cancel()
            await asyncio.gather(self._retention_task, return_exceptions=True)
            self._retention_task = None
        await self.manager.shutdown()
        await self.bus.flush()
        await self.hub.shutdown()
        await self.broadcaster.stop()
        await self.bus.close()
        self._started = False
        logger.info("engine.stop", operations=len(self.manager))

    async def _retention_loop(self) -> None:
        max_age = self.settings.operation_retention_seconds
        while True:
            await asyncio.sleep(self.settings.retention_check_interval)
            try:
                await self.manager.prune(max_age)
            except Exception:
                logger.exception("engine.retention_failed", max_age_seconds=max_age)

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()


__all__ = ["Engine"]
