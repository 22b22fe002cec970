"""
isx-spine - operation orchestration engine for the ISX data pipeline.

    from isx_spine import Engine

    async with Engine() as engine:
        op_id = await engine.manager.start({"type": "full_pipeline", "mode": "accumulative"})
        op = await engine.manager.wait(op_id)
"""

__version__ = "0.1.0"

from isx_spine.engine import Engine  # noqa: E402

__all__ = ["Engine", "__version__"]
