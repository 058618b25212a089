"""
Job Model

A job is one user request moving through a fixed, mode-dependent
sequence of stages. Validation happens here, before any directory is
created or any process is spawned.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from .config import EngineKind, Settings
from .errors import ValidationError
from .stages.documents import IMAGE_FORMATS, count_pages

JobMode = Literal[
    "ocr",
    "markdown",
    "merge",
    "images-to-pdf",
    "pdf-to-images",
    "split",
    "convert-image",
]
StageName = Literal["upload", "ready", "extract", "process", "convert", "cleanup"]
TerminalState = Literal["completed", "failed"]

JOB_MODES: tuple[JobMode, ...] = (
    "ocr",
    "markdown",
    "merge",
    "images-to-pdf",
    "pdf-to-images",
    "split",
    "convert-image",
)

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".tif", ".tiff"}

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.\-]")


def now_iso() -> str:
    """Get current time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def safe_filename(name: str) -> str:
    """Strip directories and replace anything outside [a-zA-Z0-9.-]."""
    base = Path(name).name or "upload"
    return _UNSAFE_CHARS.sub("_", base)


def engine_kind_for_model(model: str) -> EngineKind:
    """Nexa serves GGUF builds; every other model id goes to Ollama."""
    if "NexaAI" in model or "GGUF" in model:
        return "nexa"
    return "ollama"


@dataclass(frozen=True)
class InputFile:
    name: str
    content: bytes

    @classmethod
    def from_path(cls, path: str | Path) -> InputFile:
        path = Path(path)
        return cls(name=path.name, content=path.read_bytes())

    @property
    def suffix(self) -> str:
        return Path(self.name).suffix.lower()

    @property
    def is_pdf(self) -> bool:
        return self.suffix == ".pdf"

    @property
    def is_image(self) -> bool:
        return self.suffix in IMAGE_EXTENSIONS


@dataclass(frozen=True)
class JobOptions:
    model: str | None = None
    use_coordinates: bool = False
    join_images: bool = False
    custom_prompt: str | None = None
    page_order: tuple[int, ...] | None = None
    image_format: str | None = None
    quality: int = 90


@dataclass
class Job:
    id: str
    mode: JobMode
    input_files: list[InputFile]
    options: JobOptions = field(default_factory=JobOptions)
    stage: StageName | None = None
    terminal_state: TerminalState | None = None
    created_at: str = field(default_factory=now_iso)
    engine_kind: EngineKind | None = None
    saved_files: list[Path] = field(default_factory=list)

    @property
    def needs_engine(self) -> bool:
        return self.mode == "ocr"

    @property
    def is_single_pdf(self) -> bool:
        return len(self.input_files) == 1 and self.input_files[0].is_pdf

    def stages(self) -> list[StageName]:
        """Stage order for this job's mode."""
        if self.mode == "ocr":
            middle: StageName = "extract" if self.is_single_pdf else "process"
            return ["upload", "ready", middle, "convert", "cleanup"]
        if self.mode == "markdown":
            return ["upload", "convert", "cleanup"]
        return ["upload", "process", "cleanup"]

    def advance(self, stage: StageName) -> None:
        """Move to the next stage, refusing to go backwards or skip outside the plan."""
        order = self.stages()
        if stage not in order:
            raise RuntimeError(f"Stage {stage} is not part of a {self.mode} job")
        if self.stage is not None and order.index(stage) <= order.index(self.stage):
            raise RuntimeError(f"Stage {stage} cannot follow {self.stage}")
        self.stage = stage

    def upload_dir(self, settings: Settings) -> Path:
        return settings.uploads_dir / self.id

    def temp_dir(self, settings: Settings) -> Path:
        return settings.temp_dir / self.id

    def output_dir(self, settings: Settings) -> Path:
        return settings.outputs_dir / self.id


def parse_page_order(raw: str | list | tuple | None) -> tuple[int, ...] | None:
    """Accept "3,1,2", "[3, 1, 2]" or a sequence of ints."""
    if raw is None:
        return None
    if isinstance(raw, str):
        text = raw.strip().strip("[]")
        if not text:
            return ()
        parts = [p.strip() for p in text.split(",")]
    else:
        parts = list(raw)
    try:
        return tuple(int(p) for p in parts)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid page order: {raw!r}") from e


def validate_page_order(page_order: tuple[int, ...] | None, page_count: int) -> None:
    if not page_order:
        raise ValidationError("No page order provided")
    out_of_range = [p for p in page_order if p < 1 or p > page_count]
    if out_of_range:
        raise ValidationError(
            f"Page(s) {', '.join(str(p) for p in out_of_range)} out of range "
            f"(document has {page_count} pages)"
        )


def validate_job(job: Job) -> None:
    """Reject malformed requests.

    Raises:
        ValidationError: With a message suitable for the caller
    """
    files = job.input_files
    mode = job.mode

    if mode not in JOB_MODES:
        raise ValidationError(f"Unknown mode: {mode}")
    if not files:
        raise ValidationError("No files provided")
    if any(not f.content for f in files):
        raise ValidationError("Empty file uploaded")

    if mode == "ocr":
        if any(f.is_pdf for f in files):
            if len(files) != 1:
                raise ValidationError("A PDF must be submitted on its own")
        elif not all(f.is_image for f in files):
            raise ValidationError("Only images or a single PDF can be processed")

    elif mode == "markdown":
        if len(files) != 1 or files[0].suffix != ".md":
            raise ValidationError("Only markdown files accepted")

    elif mode == "merge":
        if len(files) < 2:
            raise ValidationError("Please upload at least 2 PDF files to merge")
        if not all(f.is_pdf for f in files):
            raise ValidationError("Only PDF files can be merged")

    elif mode == "images-to-pdf":
        if not all(f.is_image for f in files):
            raise ValidationError("Only image files can be combined into a PDF")

    elif mode == "pdf-to-images":
        if not all(f.is_pdf for f in files):
            raise ValidationError("Only PDF files are supported for PDF to images conversion")

    elif mode == "split":
        if len(files) != 1 or not files[0].is_pdf:
            raise ValidationError("No PDF file provided")
        try:
            page_count = count_pages(files[0].content)
        except Exception as e:
            raise ValidationError(f"Could not read PDF: {e}") from e
        validate_page_order(job.options.page_order, page_count)

    elif mode == "convert-image":
        if len(files) != 1 or not files[0].is_image:
            raise ValidationError("No image provided")
        if job.options.image_format not in IMAGE_FORMATS:
            raise ValidationError("Invalid target format")
        if not 1 <= job.options.quality <= 100:
            raise ValidationError("Quality must be between 1 and 100")


def create_job(
    mode: str,
    input_files: list[InputFile],
    options: JobOptions | None = None,
) -> Job:
    """Create and validate a job.

    Args:
        mode: One of JOB_MODES
        input_files: Uploaded files, in submission order
        options: Mode options

    Returns:
        Validated Job

    Raises:
        ValidationError: If the request is malformed
    """
    if mode not in JOB_MODES:
        raise ValidationError(f"Unknown mode: {mode}")

    job = Job(
        id=str(uuid.uuid4())[:8],
        mode=mode,  # type: ignore[arg-type]
        input_files=[InputFile(name=safe_filename(f.name), content=f.content) for f in input_files],
        options=options or JobOptions(),
    )
    validate_job(job)
    return job
