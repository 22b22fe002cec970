"""
Shared pytest fixtures for isx-spine tests.

Every test builds its own registry, bus and manager: nothing in the engine
is a module-level singleton, so tests never need cleanup hooks beyond the
settings cache.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from isx_spine.core.events.memory import InMemoryEventBus
from isx_spine.core.settings import EngineSettings, clear_settings_cache


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    root = Path(__file__).parent
    for item in items:
        test_path = Path(item.fspath).relative_to(root)
        if test_path.parts[0] in ("api", "cli"):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> EngineSettings:
    """Settings with instant retries and a small connection queue."""
    return EngineSettings(
        _env_file=None,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        default_max_retries=0,
        connection_queue_size=16,
        heartbeat_interval=30.0,
        heartbeat_timeout=60.0,
        close_timeout=0.5,
    )


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()
