"""
Native Worker Stage Runner

Runs one out-of-process worker per pipeline stage and turns its
standard output into progress events.

Worker progress line protocol (version 1), one record per line:

    @@progress/1 {"current": 2, "total": 3, "percent": 66, "message": "..."}

For workers that predate the structured protocol, lines of the form
``[current/total] pct% ...`` are read as progress too. Any other line
containing "Processing" is forwarded as a plain status message; the
rest are only logged.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from ..config import Settings
from ..errors import StageTimeout, WorkerFailure
from ..progress import Emit, EventStatus, ProgressEvent

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "@@progress/1 "
LEGACY_PROGRESS = re.compile(r"\[(\d+)/(\d+)\]\s+(\d+)%")
STATUS_KEYWORD = "Processing"

# Enough for a worker that prints a whole markdown page on one line
STREAM_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class StageSpec:
    """One worker invocation."""

    name: str
    argv: tuple[str, ...]
    timeout: float
    status: EventStatus = "processing"
    forward_all_lines: bool = False


@dataclass
class StageResult:
    returncode: int
    stdout_tail: list[str] = field(default_factory=list)
    stderr: str = ""


def _clamp_percent(value: int) -> int:
    return max(0, min(100, value))


def parse_progress_line(line: str, status: EventStatus = "processing") -> ProgressEvent | None:
    """Interpret one line of worker output.

    Args:
        line: Decoded stdout line
        status: Status to put on the resulting event

    Returns:
        ProgressEvent, or None when the line carries nothing for the caller
    """
    text = line.strip()
    if not text:
        return None

    if text.startswith(PROGRESS_PREFIX):
        try:
            payload = json.loads(text[len(PROGRESS_PREFIX):])
            current = int(payload["current"])
            total = int(payload["total"])
            if "percent" in payload:
                percent = int(payload["percent"])
            else:
                percent = (current * 100) // total if total else 0
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[Worker] Malformed progress record {text!r}: {e}")
            return None
        message = payload.get("message") or f"Processing {current}/{total}"
        return ProgressEvent(status=status, message=message, progress=_clamp_percent(percent))

    match = LEGACY_PROGRESS.search(text)
    if match:
        current, total, percent = match.groups()
        return ProgressEvent(
            status=status,
            message=f"Processing image {current}/{total}",
            progress=_clamp_percent(int(percent)),
        )

    if STATUS_KEYWORD in text:
        return ProgressEvent(status=status, message=text)

    return None


class WorkerAdapter:
    """Spawn a stage worker, stream its output, enforce its timeout."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def run_stage(self, spec: StageSpec, emit: Emit | None = None) -> StageResult:
        """Run one stage to completion.

        Args:
            spec: What to run and for how long
            emit: Receives progress events parsed from stdout

        Returns:
            StageResult for a zero exit code

        Raises:
            WorkerFailure: Non-zero exit, or the executable could not be started
            StageTimeout: The stage exceeded spec.timeout and was killed
        """
        logger.info(f"[Worker] {spec.name}: {' '.join(spec.argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise WorkerFailure(spec.name, None, f"Cannot start {spec.argv[0]}: {e}") from e

        stdout_tail: list[str] = []
        stderr_chunks: list[str] = []

        async def pump_stdout() -> None:
            assert process.stdout is not None
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    return
                line = raw.decode("utf-8", errors="replace").rstrip()
                logger.debug(f"[Worker] {spec.name} stdout: {line}")
                stdout_tail.append(line)
                del stdout_tail[:-50]
                await self._forward(spec, line, emit)

        async def pump_stderr() -> None:
            assert process.stderr is not None
            while True:
                raw = await process.stderr.readline()
                if not raw:
                    return
                line = raw.decode("utf-8", errors="replace").rstrip()
                stderr_chunks.append(line)
                if spec.forward_all_lines:
                    await self._forward(spec, line, emit)
                else:
                    logger.warning(f"[Worker] {spec.name} stderr: {line}")

        async def communicate() -> int:
            await asyncio.gather(pump_stdout(), pump_stderr())
            return await process.wait()

        try:
            returncode = await asyncio.wait_for(communicate(), timeout=spec.timeout)
        except asyncio.TimeoutError:
            logger.error(f"[Worker] {spec.name} exceeded {spec.timeout:g}s, killing")
            await self._kill(process)
            raise StageTimeout(spec.name, spec.timeout) from None
        except asyncio.CancelledError:
            logger.warning(f"[Worker] {spec.name} cancelled, killing worker")
            await self._kill(process)
            raise

        stderr = "\n".join(stderr_chunks)
        if returncode != 0:
            logger.error(f"[Worker] {spec.name} exited with code {returncode}")
            raise WorkerFailure(spec.name, returncode, stderr)

        logger.info(f"[Worker] {spec.name} finished")
        return StageResult(returncode=returncode, stdout_tail=stdout_tail, stderr=stderr)

    @staticmethod
    async def _forward(spec: StageSpec, line: str, emit: Emit | None) -> None:
        if emit is None:
            return
        if spec.forward_all_lines:
            if line.strip():
                await emit(ProgressEvent(status=spec.status, message=line.strip()))
            return
        event = parse_progress_line(line, spec.status)
        if event is not None:
            await emit(event)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()


# ---------------------------------------------------------------------------
# Stage builders. Argument contract of the native worker:
#   extract-pages --input <pdf> --output <md> --temp-dir <dir> [--use-native]
#   process-directory --input <dir> --output <md> [--model] [--custom-prompt]
#                     [--use-coordinates] [--join-images]
#   markdown-to-pdf --input <md> --output <pdf> [--use-coordinates]
#   split-reorder --input <pdf> --output <pdf> --pages <csv>
# ---------------------------------------------------------------------------


def _worker(settings: Settings, subcommand: str, *args: str) -> tuple[str, ...]:
    return (*settings.worker_command, subcommand, *args)


def extract_pages_spec(
    settings: Settings, pdf: Path, output: Path, temp_dir: Path, use_native: bool = False
) -> StageSpec:
    args = ["--input", str(pdf), "--output", str(output), "--temp-dir", str(temp_dir)]
    if use_native:
        args.append("--use-native")
    return StageSpec(
        name="extract-pages",
        argv=_worker(settings, "extract-pages", *args),
        timeout=settings.timeouts.extract,
        status="extracting",
    )


def process_directory_spec(
    settings: Settings,
    input_dir: Path,
    output: Path,
    model: str | None = None,
    custom_prompt: str | None = None,
    use_coordinates: bool = False,
    join_images: bool = False,
) -> StageSpec:
    args = ["--input", str(input_dir), "--output", str(output)]
    if model:
        args.extend(["--model", model])
    if custom_prompt and custom_prompt.strip():
        args.extend(["--custom-prompt", custom_prompt.strip()])
    if use_coordinates:
        args.append("--use-coordinates")
    if join_images:
        args.append("--join-images")
    return StageSpec(
        name="process-directory",
        argv=_worker(settings, "process-directory", *args),
        timeout=settings.timeouts.process,
    )


def markdown_to_pdf_spec(
    settings: Settings, markdown: Path, output: Path, use_coordinates: bool = False
) -> StageSpec:
    args = ["--input", str(markdown), "--output", str(output)]
    if use_coordinates:
        args.append("--use-coordinates")
    return StageSpec(
        name="markdown-to-pdf",
        argv=_worker(settings, "markdown-to-pdf", *args),
        timeout=settings.timeouts.convert,
        status="converting",
    )


def split_reorder_spec(
    settings: Settings, pdf: Path, output: Path, pages: tuple[int, ...]
) -> StageSpec:
    return StageSpec(
        name="split-reorder",
        argv=_worker(
            settings,
            "split-reorder",
            "--input", str(pdf),
            "--output", str(output),
            "--pages", ",".join(str(p) for p in pages),
        ),
        timeout=settings.timeouts.split,
    )


def rasterize_spec(settings: Settings, pdf: Path, output_prefix: Path, dpi: int = 150) -> StageSpec:
    """pdftoppm renders each page to <prefix>-<n>.png."""
    return StageSpec(
        name="pdftoppm",
        argv=("pdftoppm", "-png", "-r", str(dpi), str(pdf), str(output_prefix)),
        timeout=settings.timeouts.rasterize,
    )


def pull_model_spec(model: str, timeout: float = 3600.0) -> StageSpec:
    """ollama pull reports download progress on both streams."""
    return StageSpec(
        name="ollama-pull",
        argv=("ollama", "pull", model),
        timeout=timeout,
        status="pulling",
        forward_all_lines=True,
    )
