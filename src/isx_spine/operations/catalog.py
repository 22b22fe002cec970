"""Built-in ISX pipeline step types and operation templates.

=============  ======================  ==================  =======
Step type      Name                    Command             Timeout
=============  ======================  ==================  =======
scraping       Data Collection         scraper             60 min
processing     Data Processing         processor           30 min
indices        Index Extraction        indexcsv            10 min
liquidity      Liquidity Calculation   liquidity-report     5 min
=============  ======================  ==================  =======

``full_pipeline`` runs all four in order.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from isx_spine.operations.command import CommandStepExecutor
from isx_spine.operations.registry import OperationTemplate, ParameterMap, StepRegistry

SCRAPING = "scraping"
PROCESSING = "processing"
INDICES = "indices"
LIQUIDITY = "liquidity"

FULL_PIPELINE = "full_pipeline"

DATE_RENAMES = {"from": "from_date", "to": "to_date"}


def scraper_args(params: dict[str, Any]) -> list[str]:
    args: list[str] = []
    if params.get("from_date"):
        args += ["--from", str(params["from_date"])]
    if params.get("to_date"):
        args += ["--to", str(params["to_date"])]
    args += ["--mode", str(params.get("mode") or "full")]
    if params.get("headless") is False:
        args.append("--headless=false")
    return args


def processor_args(params: dict[str, Any]) -> list[str]:
    return ["--in", str(params["input_dir"]), "--out", str(params["output_dir"])]


def liquidity_args(params: dict[str, Any]) -> list[str]:
    args = ["--window", str(params.get("window", 60))]
    if params.get("from_date"):
        args += ["--from", str(params["from_date"])]
    if params.get("to_date"):
        args += ["--to", str(params["to_date"])]
    return args


def register_builtin_steps(registry: StepRegistry, executable_dir: str | Path = "bin") -> StepRegistry:
    """Register the four pipeline steps and the operation templates."""
    registry.register(
        SCRAPING,
        CommandStepExecutor("scraper", executable_dir=executable_dir, args_builder=scraper_args),
        name="Data Collection",
        description="Download ISX daily reports for the requested date range",
        parameter_map=ParameterMap(renames=DATE_RENAMES, defaults={"headless": True}),
        timeout_seconds=60 * 60,
    )
    registry.register(
        PROCESSING,
        CommandStepExecutor("processor", executable_dir=executable_dir, args_builder=processor_args),
        name="Data Processing",
        description="Convert downloaded Excel reports into per-ticker CSV files",
        parameter_map=ParameterMap(
            renames=DATE_RENAMES,
            defaults={"input_dir": "data/downloads", "output_dir": "data/reports"},
        ),
        timeout_seconds=30 * 60,
    )
    registry.register(
        INDICES,
        CommandStepExecutor("indexcsv", executable_dir=executable_dir),
        name="Index Extraction",
        description="Extract ISX60 and ISX15 index values",
        parameter_map=ParameterMap(renames=DATE_RENAMES),
        parallel_safe=True,
        timeout_seconds=10 * 60,
    )
    registry.register(
        LIQUIDITY,
        CommandStepExecutor("liquidity-report", executable_dir=executable_dir, args_builder=liquidity_args),
        name="Liquidity Calculation",
        description="Compute hybrid liquidity scores over a rolling window",
        parameter_map=ParameterMap(renames=DATE_RENAMES, defaults={"window": 60}),
        parallel_safe=True,
        timeout_seconds=5 * 60,
    )

    date_params = [
        {"name": "from", "type": "date", "required": False, "description": "First trading day to collect"},
        {"name": "to", "type": "date", "required": False, "description": "Last trading day to collect"},
        {"name": "mode", "type": "choice", "choices": ["initial", "accumulative", "full"], "default": "accumulative"},
    ]
    registry.register_template(
        OperationTemplate(
            id=FULL_PIPELINE,
            name="Full Pipeline",
            steps=(SCRAPING, PROCESSING, INDICES, LIQUIDITY),
            description="Collect, process, extract indices and compute liquidity",
            category="pipeline",
            parameters=date_params,
        )
    )
    registry.register_template(
        OperationTemplate(
            id="data_processing",
            name="Process and Analyze",
            steps=(PROCESSING, INDICES, LIQUIDITY),
            description="Rebuild reports, indices and liquidity from already downloaded files",
            category="pipeline",
        )
    )
    return registry


__all__ = [
    "FULL_PIPELINE",
    "INDICES",
    "LIQUIDITY",
    "PROCESSING",
    "SCRAPING",
    "register_builtin_steps",
]
