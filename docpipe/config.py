"""
Pipeline Settings

Defaults live here; an optional YAML file and then environment
variables override them. Storage is a single writable root holding
uploads/, outputs/, temp/ and logs/.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal

import yaml

logger = logging.getLogger(__name__)

EngineKind = Literal["nexa", "ollama"]
ShutdownPolicy = Literal["always", "refcount"]

DEFAULT_MODEL = "NexaAI/DeepSeek-OCR-GGUF:BF16"
DEFAULT_STORAGE_ROOT = Path("storage")


@dataclass(frozen=True)
class EngineConfig:
    """How to probe, launch and stop one kind of inference engine."""

    kind: EngineKind
    label: str
    base_url: str
    probe_path: str
    launch_command: tuple[str, ...]
    process_pattern: str | None
    max_attempts: int
    poll_interval: float = 2.0
    probe_timeout: float = 2.0
    stop_grace: float = 2.0

    @property
    def probe_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.probe_path}"


DEFAULT_ENGINES: dict[EngineKind, EngineConfig] = {
    "nexa": EngineConfig(
        kind="nexa",
        label="Nexa",
        base_url="http://127.0.0.1:18181/v1",
        probe_path="/models",
        launch_command=("nexa", "serve", "--host", "127.0.0.1:18181"),
        process_pattern="nexa serve",
        max_attempts=15,
    ),
    "ollama": EngineConfig(
        kind="ollama",
        label="Ollama",
        base_url="http://127.0.0.1:11434/api",
        probe_path="/tags",
        launch_command=("ollama", "serve"),
        process_pattern="ollama serve",
        max_attempts=10,
    ),
}


@dataclass
class StageTimeouts:
    """Hard wall-clock limits per stage, in seconds."""

    extract: float = 1800.0
    process: float = 1800.0
    convert: float = 60.0
    split: float = 120.0
    rasterize: float = 300.0


@dataclass
class Settings:
    storage_root: Path = DEFAULT_STORAGE_ROOT
    worker_command: list[str] = field(
        default_factory=lambda: ["../ocr-rust/target/release/iloveprivacypdf"]
    )
    default_model: str = DEFAULT_MODEL
    timeouts: StageTimeouts = field(default_factory=StageTimeouts)
    auto_install_rasterizer: bool = False
    allow_native_fallback: bool = True
    engine_shutdown_policy: ShutdownPolicy = "always"
    engines: dict[EngineKind, EngineConfig] = field(
        default_factory=lambda: dict(DEFAULT_ENGINES)
    )
    history_limit: int = 50

    @property
    def uploads_dir(self) -> Path:
        return self.storage_root / "uploads"

    @property
    def outputs_dir(self) -> Path:
        return self.storage_root / "outputs"

    @property
    def temp_dir(self) -> Path:
        return self.storage_root / "temp"

    @property
    def logs_dir(self) -> Path:
        return self.storage_root / "logs"

    def ensure_dirs(self) -> None:
        for path in (self.uploads_dir, self.outputs_dir, self.temp_dir, self.logs_dir):
            path.mkdir(parents=True, exist_ok=True)

    def engine(self, kind: EngineKind) -> EngineConfig:
        return self.engines[kind]


def _env_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_mapping(settings: Settings, data: dict[str, Any]) -> Settings:
    """Overlay a parsed YAML mapping onto settings."""
    updates: dict[str, Any] = {}

    if "storage_root" in data:
        updates["storage_root"] = Path(data["storage_root"]).expanduser()
    if "worker_command" in data:
        command = data["worker_command"]
        updates["worker_command"] = shlex.split(command) if isinstance(command, str) else list(command)
    for key in ("default_model", "auto_install_rasterizer", "allow_native_fallback",
                "engine_shutdown_policy", "history_limit"):
        if key in data:
            updates[key] = data[key]

    if "timeouts" in data:
        known = {f.name for f in fields(StageTimeouts)}
        unknown = set(data["timeouts"]) - known
        if unknown:
            raise ValueError(f"Unknown stage timeout(s): {sorted(unknown)}")
        updates["timeouts"] = replace(settings.timeouts, **{
            k: float(v) for k, v in data["timeouts"].items()
        })

    if "engines" in data:
        engines = dict(settings.engines)
        for kind, overrides in data["engines"].items():
            if kind not in engines:
                raise ValueError(f"Unknown engine kind: {kind}")
            overrides = dict(overrides)
            if "launch_command" in overrides and isinstance(overrides["launch_command"], str):
                overrides["launch_command"] = tuple(shlex.split(overrides["launch_command"]))
            elif "launch_command" in overrides:
                overrides["launch_command"] = tuple(overrides["launch_command"])
            engines[kind] = replace(engines[kind], **overrides)
        updates["engines"] = engines

    return replace(settings, **updates)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Build settings from defaults, an optional YAML file and the environment.

    Args:
        config_path: YAML file to read (default: $DOCPIPE_CONFIG if set)

    Returns:
        Settings instance
    """
    settings = Settings()

    config_path = config_path or os.getenv("DOCPIPE_CONFIG")
    if config_path:
        path = Path(config_path).expanduser()
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        settings = _apply_mapping(settings, data)
        logger.info(f"[Config] Loaded {path}")

    if root := os.getenv("DOCPIPE_STORAGE_ROOT"):
        settings.storage_root = Path(root).expanduser()
    if worker := os.getenv("DOCPIPE_WORKER_BIN"):
        settings.worker_command = shlex.split(worker)
    if model := os.getenv("DOCPIPE_DEFAULT_MODEL"):
        settings.default_model = model
    if policy := os.getenv("DOCPIPE_ENGINE_SHUTDOWN_POLICY"):
        if policy not in ("always", "refcount"):
            raise ValueError(f"Invalid engine shutdown policy: {policy}")
        settings.engine_shutdown_policy = policy  # type: ignore[assignment]

    auto_install = _env_bool("AUTO_INSTALL_POPPLER")
    if auto_install is not None:
        settings.auto_install_rasterizer = auto_install
    fallback = _env_bool("DOCPIPE_ALLOW_NATIVE_FALLBACK")
    if fallback is not None:
        settings.allow_native_fallback = fallback

    return settings
