"""
Engine Registry

Starts and stops the local OCR inference engines (Nexa, Ollama) so GPU
memory is only held while a job needs it. One handle per engine kind,
each with its own lock: concurrent ensure_ready() calls for the same
kind spawn the engine at most once.

Readiness is decided by the engine's HTTP probe, not by whether we
spawned it: an engine started outside this process counts as ready.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Literal

import httpx

from .config import EngineConfig, EngineKind, Settings
from .dependencies import command_exists
from .errors import EngineStartupTimeout
from .progress import ProgressEvent, ProgressStream
from .stages.worker import WorkerAdapter, pull_model_spec

logger = logging.getLogger(__name__)

EngineState = Literal["stopped", "starting", "ready", "stopping"]


@dataclass
class EngineHandle:
    kind: EngineKind
    endpoint_base: str
    state: EngineState = "stopped"
    ref_count: int = 0
    process: subprocess.Popen | None = None
    supervisor: asyncio.Task | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    spawn_count: int = 0
    # Bumped after every start attempt so callers queued on the lock can
    # tell that an attempt finished while they waited.
    generation: int = 0
    last_error: EngineStartupTimeout | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "endpoint": self.endpoint_base,
            "state": self.state,
            "refCount": self.ref_count,
            "pid": self.process.pid if self.process and self.process.poll() is None else None,
        }


class EngineRegistry:
    """Lifecycle of the local inference engines, keyed by kind."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize registry.

        Args:
            settings: Engine definitions and shutdown policy
            transport: Optional httpx transport for the health probes
        """
        self.settings = settings
        self._transport = transport
        self._handles: dict[EngineKind, EngineHandle] = {
            kind: EngineHandle(kind=kind, endpoint_base=config.base_url)
            for kind, config in settings.engines.items()
        }

    def handle(self, kind: EngineKind) -> EngineHandle:
        return self._handles[kind]

    def status(self) -> dict[str, dict]:
        return {kind: handle.to_dict() for kind, handle in self._handles.items()}

    async def is_healthy(self, kind: EngineKind) -> bool:
        """Probe the engine's readiness endpoint.

        Any connection error, timeout or non-2xx answer means not ready.
        """
        config = self.settings.engine(kind)
        try:
            async with httpx.AsyncClient(
                timeout=config.probe_timeout, transport=self._transport
            ) as client:
                response = await client.get(config.probe_url)
                return response.is_success
        except httpx.HTTPError:
            return False

    async def ensure_ready(self, kind: EngineKind) -> None:
        """Bring an engine to Ready, starting it if needed.

        Raises:
            EngineStartupTimeout: If the engine could not be started or
                did not pass its probe within the configured attempts
        """
        handle = self._handles[kind]
        config = self.settings.engine(kind)

        # A transition in progress may still answer the probe; wait for it under the lock
        if handle.state not in ("starting", "stopping") and await self.is_healthy(kind):
            handle.state = "ready"
            logger.info(f"[Engine] {config.label} already running at {config.base_url}")
            return

        seen_generation = handle.generation
        async with handle.lock:
            if handle.generation != seen_generation and handle.last_error is not None:
                raise handle.last_error

            if await self.is_healthy(kind):
                handle.state = "ready"
                return

            handle.state = "starting"
            handle.last_error = None
            try:
                await self._start(handle, config)
            except EngineStartupTimeout as e:
                handle.state = "stopped"
                handle.last_error = e
                raise
            except BaseException:
                handle.state = "stopped"
                raise
            finally:
                handle.generation += 1

    async def _start(self, handle: EngineHandle, config: EngineConfig) -> None:
        logger.info(f"[Engine] Starting {config.label}: {' '.join(config.launch_command)}")
        try:
            await self._launch(handle, config)
        except OSError as e:
            logger.error(f"[Engine] Could not launch {config.label}: {e}")
            raise EngineStartupTimeout(
                handle.kind, 0, config.poll_interval, reason=f"could not be launched: {e}"
            ) from e

        for attempt in range(1, config.max_attempts + 1):
            await asyncio.sleep(config.poll_interval)
            if await self.is_healthy(handle.kind):
                handle.state = "ready"
                logger.info(f"[Engine] {config.label} ready after {attempt} probe(s)")
                return
            logger.debug(f"[Engine] {config.label} not ready ({attempt}/{config.max_attempts})")

        logger.error(f"[Engine] {config.label} failed to start")
        await self._terminate(handle, config.stop_grace)
        raise EngineStartupTimeout(handle.kind, config.max_attempts, config.poll_interval)

    async def _launch(self, handle: EngineHandle, config: EngineConfig) -> None:
        """Spawn the engine detached, in its own session, and supervise it.

        The process outlives the event loop (``docpipe engines start``);
        only shutdown() stops it.
        """
        self.settings.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.settings.logs_dir / f"{handle.kind}.log"
        with open(log_path, "ab") as log_file:
            process = subprocess.Popen(
                list(config.launch_command),
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        handle.process = process
        handle.spawn_count += 1
        handle.supervisor = asyncio.create_task(
            self._supervise(handle, process, config.poll_interval)
        )
        logger.info(f"[Engine] {config.label} spawned (pid {process.pid}, log {log_path})")

    @staticmethod
    async def _supervise(handle: EngineHandle, process: subprocess.Popen, interval: float) -> None:
        while process.poll() is None:
            await asyncio.sleep(interval)
        if handle.process is process:
            handle.process = None
            if handle.state == "ready":
                handle.state = "stopped"
            logger.warning(f"[Engine] {handle.kind} process exited with code {process.returncode}")

    async def acquire(self, kind: EngineKind) -> None:
        """Register a job's dependency on an engine and make it ready.

        The reference is held even if startup fails; release() drops it.
        """
        self._handles[kind].ref_count += 1
        await self.ensure_ready(kind)

    async def release(self, kind: EngineKind) -> bool:
        """Drop a job's reference and stop the engine per shutdown policy.

        Returns:
            True if shutdown was requested
        """
        handle = self._handles[kind]
        handle.ref_count = max(0, handle.ref_count - 1)
        refcounted = self.settings.engine_shutdown_policy == "refcount"
        if refcounted and handle.ref_count > 0:
            logger.info(f"[Engine] {kind} still used by {handle.ref_count} job(s), keeping it up")
            return False
        await self.shutdown(kind, if_unused=refcounted)
        return True

    async def shutdown(self, kind: EngineKind, if_unused: bool = False) -> None:
        """Stop an engine to free VRAM. Best effort: failures are only logged.

        Args:
            kind: Engine to stop
            if_unused: Skip the stop if a job acquired the engine while
                this call waited for the lock
        """
        handle = self._handles[kind]
        config = self.settings.engine(kind)
        async with handle.lock:
            if if_unused and handle.ref_count > 0:
                logger.info(f"[Engine] {config.label} re-acquired by {handle.ref_count} job(s), not stopping")
                return
            logger.info(f"[Engine] Stopping {config.label} to free VRAM...")
            handle.state = "stopping"
            try:
                await self._terminate(handle, config.stop_grace)
                matched = await self._kill_matching(config.process_pattern)
                if matched and config.stop_grace > 0:
                    await asyncio.sleep(config.stop_grace)
                logger.info(f"[Engine] {config.label} stopped")
            except Exception as e:
                logger.error(f"[Engine] Error stopping {config.label}: {e}")
            finally:
                handle.state = "stopped"

    async def shutdown_all(self) -> None:
        for kind, handle in self._handles.items():
            if handle.process is not None or handle.state != "stopped":
                await self.shutdown(kind)

    @staticmethod
    async def _terminate(handle: EngineHandle, grace: float) -> None:
        """SIGTERM the process we spawned, SIGKILL it after the grace period."""
        process = handle.process
        handle.process = None
        if handle.supervisor is not None:
            handle.supervisor.cancel()
            handle.supervisor = None
        if process is None or process.poll() is not None:
            return

        process.terminate()
        deadline = time.monotonic() + max(grace, 0.5)
        while process.poll() is None and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        if process.poll() is None:
            logger.warning(f"[Engine] {handle.kind} did not exit after SIGTERM, killing")
            process.kill()
            await asyncio.to_thread(process.wait)

    @staticmethod
    async def _kill_matching(pattern: str | None) -> bool:
        """SIGTERM every process whose command line matches pattern.

        Catches engines that were started outside this registry.
        """
        if not pattern:
            return False
        try:
            process = await asyncio.create_subprocess_exec(
                "pkill", "-f", pattern,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.debug("[Engine] pkill not available")
            return False
        return await process.wait() == 0


# ---------------------------------------------------------------------------
# Model discovery
# ---------------------------------------------------------------------------

NEXA_DEFAULT_MODEL = "NexaAI/DeepSeek-OCR-GGUF:BF16"
OLLAMA_DEFAULT_MODEL = "deepseek-ocr"

VISION_MODEL_PATTERNS = (
    "qwen2-vl", "qwen-vl", "llava", "bakllava", "minicpm-v",
    "cogvlm", "moondream", "gemma", "pixtral", "phi3.5-vision",
    "deepseek-ocr",
)


@dataclass(frozen=True)
class ModelInfo:
    id: str
    label: str
    provider: EngineKind
    status: Literal["available", "missing"]

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "provider": self.provider, "status": self.status}


def parse_ollama_list(output: str) -> list[ModelInfo]:
    """Vision-capable models from `ollama list` output.

    deepseek-ocr is listed as missing when not installed so it can be pulled.
    """
    models: list[ModelInfo] = []
    for line in output.splitlines()[1:]:
        if not line.strip():
            continue
        name = line.split()[0]
        if any(pattern in name.lower() for pattern in VISION_MODEL_PATTERNS):
            models.append(ModelInfo(
                id=name,
                label=f"{name[:1].upper()}{name[1:]} (Ollama)",
                provider="ollama",
                status="available",
            ))

    if not any(m.id.startswith(OLLAMA_DEFAULT_MODEL) for m in models):
        models.insert(0, ModelInfo(
            id=OLLAMA_DEFAULT_MODEL,
            label="DeepSeek OCR (Ollama)",
            provider="ollama",
            status="missing",
        ))
    return models


async def discover_models(timeout: float = 10.0) -> list[ModelInfo]:
    """OCR models offered by the installed engine CLIs."""
    models: list[ModelInfo] = []

    if command_exists("ollama"):
        try:
            process = await asyncio.create_subprocess_exec(
                "ollama", "list",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
            if process.returncode != 0:
                raise RuntimeError(f"ollama list exited with code {process.returncode}")
            models.extend(parse_ollama_list(stdout.decode("utf-8", errors="replace")))
        except (OSError, RuntimeError, asyncio.TimeoutError) as e:
            # CLI present but server down: offer the default so it can be auto-started
            logger.info(f"[Models] ollama list failed ({e}), defaulting to {OLLAMA_DEFAULT_MODEL}")
            models.append(ModelInfo(
                id=OLLAMA_DEFAULT_MODEL,
                label="DeepSeek OCR (Ollama)",
                provider="ollama",
                status="available",
            ))
    else:
        logger.info("[Models] Ollama CLI not installed")

    if command_exists("nexa"):
        models.append(ModelInfo(
            id=NEXA_DEFAULT_MODEL,
            label="DeepSeek OCR (NexaAI)",
            provider="nexa",
            status="available",
        ))
    else:
        logger.info("[Models] Nexa CLI not installed")

    return models


def pull_model(adapter: WorkerAdapter, model: str) -> ProgressStream:
    """Stream `ollama pull <model>` output as progress events."""

    async def produce(emit) -> None:
        try:
            await adapter.run_stage(pull_model_spec(model), emit)
        except Exception as e:
            logger.error(f"[Models] Pull of {model} failed: {e}")
            await emit(ProgressEvent(status="error", message="Model pull failed", error=str(e)))
            return
        await emit(ProgressEvent(status="done", message="Model installed successfully"))

    return ProgressStream.start(produce)
