"""Subprocess step executor.

Runs one of the pipeline command-line tools (``scraper``, ``processor``,
``indexcsv``, ``liquidity-report``) as a local process, turning its stdout
into progress updates and its exit code into a step result.

    ┌──────────────┐  argv   ┌───────────────────────────┐
    │ StepContext   │───────▶│ asyncio.subprocess         │
    │ params        │        │  stdout ─▶ OutputProgress  │──▶ on_progress
    └──────────────┘        │  returncode ─▶ result       │
                             └───────────────────────────┘

Cancellation terminates the process (SIGTERM, then SIGKILL after
``kill_timeout_seconds``). A missing executable is a non-retryable
failure; a non-zero exit code is retryable.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from isx_spine.core.errors import ExecutionError
from isx_spine.operations.context import StepContext
from isx_spine.operations.registry import ProgressCallback, ProgressUpdate, StepResult

ArgsBuilder = Callable[[dict[str, Any]], list[str]]

_FOUND_FILES = re.compile(r"Found (\d+) Excel files")
_PROCESSING_FILE = re.compile(r"Processing file (\d+) of (\d+)(?::\s*(.+))?")
_PERCENT = re.compile(r"^PROGRESS:\s*(\d+(?:\.\d+)?)%?\s*(.*)$")


@dataclass
class OutputProgressParser:
    """Turns tool output lines into :class:`ProgressUpdate` objects.

    Recognized lines::

        Found 12 Excel files
        Processing file 3 of 12: 2025 01 05 ISX Daily Report.xlsx
        PROGRESS: 40% Downloading reports
    """

    total_files: int | None = None
    processed_files: int = 0
    extra: Sequence[tuple[re.Pattern[str], Callable[[re.Match[str]], ProgressUpdate]]] = field(default_factory=tuple)

    def parse(self, line: str) -> ProgressUpdate | None:
        line = line.strip()
        if not line:
            return None

        match = _PROCESSING_FILE.search(line)
        if match:
            current, total = int(match.group(1)), int(match.group(2))
            self.processed_files = current
            self.total_files = total
            name = match.group(3)
            message = f"Processing file {current} of {total}" + (f": {name}" if name else "")
            return ProgressUpdate(
                current=current,
                total=total,
                message=message,
                metadata={"files_processed": current, "files_total": total, "current_file": name},
            )

        match = _FOUND_FILES.search(line)
        if match:
            self.total_files = int(match.group(1))
            return ProgressUpdate(
                progress=15.0,
                message=f"Found {self.total_files} Excel files to process",
                metadata={"files_found": self.total_files},
            )

        match = _PERCENT.match(line)
        if match:
            return ProgressUpdate(progress=float(match.group(1)), message=match.group(2) or "")

        for pattern, build in self.extra:
            match = pattern.search(line)
            if match:
                return build(match)
        return None


class CommandStepExecutor:
    """Executes a pipeline tool as a subprocess.

    Args:
        command: Executable name (looked up in ``executable_dir``, then ``PATH``)
        executable_dir: Directory holding the pipeline tools
        args_builder: Builds argv (after the executable) from step parameters
        env: Extra environment variables for the child
        kill_timeout_seconds: Grace period between SIGTERM and SIGKILL
    """

    def __init__(
        self,
        command: str,
        *,
        executable_dir: str | Path | None = None,
        args_builder: ArgsBuilder | None = None,
        env: dict[str, str] | None = None,
        kill_timeout_seconds: float = 5.0,
        output_tail: int = 20,
    ) -> None:
        self.command = command
        self.executable_dir = Path(executable_dir) if executable_dir else None
        self.args_builder = args_builder or (lambda params: [])
        self.env = env or {}
        self.kill_timeout_seconds = kill_timeout_seconds
        self.output_tail = output_tail

    def resolve(self) -> str | None:
        """Absolute path of the executable, or None if it cannot be found."""
        if self.executable_dir is not None:
            for name in (self.command, f"{self.command}.exe"):
                candidate = self.executable_dir / name
                if candidate.is_file():
                    return str(candidate)
        return shutil.which(self.command)

    async def execute(self, ctx: StepContext, params: dict[str, Any], on_progress: ProgressCallback) -> StepResult:
        executable = self.resolve()
        if executable is None:
            raise ExecutionError(f"{self.command} executable not found", retryable=False)

        argv = [executable, *self.args_builder(params)]
        ctx.log.info("command.start", command=self.command, argv=argv[1:])
        on_progress(ProgressUpdate(progress=2.0, message=f"Starting {self.command}..."))

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(self.executable_dir) if self.executable_dir else None,
                env={**os.environ, **self.env},
            )
        except OSError as exc:
            raise ExecutionError(f"Failed to start {self.command}: {exc}", retryable=False, cause=exc) from exc

        watcher = asyncio.ensure_future(self._terminate_on_cancel(ctx, process))
        parser = OutputProgressParser()
        tail: deque[str] = deque(maxlen=self.output_tail)
        line_count = 0
        try:
            if process.stdout is None:
                raise ExecutionError(f"{self.command} started without an output pipe", retryable=False)
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip()
                tail.append(line)
                line_count += 1
                update = parser.parse(line)
                if update is not None:
                    on_progress(update)
            returncode = await process.wait()
        finally:
            watcher.cancel()
            if process.returncode is None:
                await self._terminate(process)

        ctx.check()
        if returncode != 0:
            ctx.log.warning("command.failed", command=self.command, returncode=returncode, output=list(tail))
            raise ExecutionError(
                f"{self.command} exited with code {returncode}",
            ).with_context(exit_code=returncode, output=list(tail))

        ctx.log.info("command.complete", command=self.command, processed_files=parser.processed_files)
        output: dict[str, Any] = {"exit_code": returncode, "output_lines": line_count}
        if parser.total_files is not None:
            output["files_total"] = parser.total_files
        return StepResult.ok(output)

    async def _terminate_on_cancel(self, ctx: StepContext, process: asyncio.subprocess.Process) -> None:
        await ctx.wait_cancelled()
        ctx.log.info("command.cancel", command=self.command, reason=ctx.reason)
        await self._terminate(process)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout_seconds)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    def __repr__(self) -> str:
        return f"CommandStepExecutor({self.command!r})"


__all__ = ["CommandStepExecutor", "OutputProgressParser"]
