"""
Pipeline Executor

Runs one job through the stages of its mode:
1. upload   - stage input files under uploads/<job id>
2. ready    - bring the OCR engine up (ocr mode only)
3. extract  - worker extract-pages for a single PDF (ocr mode)
4. process  - worker or in-process transformation
5. convert  - worker markdown-to-pdf (ocr and markdown modes)
6. cleanup  - delete staged inputs and temp files, release the engine

Cleanup runs exactly once per job, whether the job completed, failed or
was cancelled because the consumer of its progress stream went away.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .config import Settings
from .dependencies import check, resolve_rasterizer
from .engines import EngineRegistry
from .errors import CleanupFailure, DependencyMissing, PipelineError
from .history import add_entry, file_url
from .job import Job, engine_kind_for_model
from .progress import Emit, ProgressEvent, ProgressStream
from .stages import documents
from .stages.worker import (
    WorkerAdapter,
    extract_pages_spec,
    markdown_to_pdf_spec,
    process_directory_spec,
    rasterize_spec,
    split_reorder_spec,
)

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    """Artifacts produced by a completed job."""

    markdown: Path | None = None
    pdf: Path | None = None
    images: list[Path] = field(default_factory=list)
    fallback_used: bool = False


class PipelineExecutor:
    """Sequences the stages of a job and guarantees its cleanup."""

    def __init__(
        self,
        settings: Settings,
        registry: EngineRegistry | None = None,
        adapter: WorkerAdapter | None = None,
        record_history: bool = True,
    ):
        """Initialize executor.

        Args:
            settings: Storage layout, worker command and timeouts
            registry: Engine registry shared by every job of this process
            adapter: Worker adapter (default: one built from settings)
            record_history: Append completed jobs to the history file
        """
        self.settings = settings
        self.registry = registry or EngineRegistry(settings)
        self.adapter = adapter or WorkerAdapter(settings)
        self.record_history = record_history

    def run(self, job: Job) -> ProgressStream:
        """Start the job in the background and return its event stream."""
        return ProgressStream.start(lambda emit: self.execute(job, emit))

    async def execute(self, job: Job, emit: Emit) -> None:
        """Run a job to its terminal event.

        Errors end the job with an ``error`` event and are not raised.
        Cancellation is re-raised after cleanup.
        """
        self.settings.ensure_dirs()
        logger.info(f"[Pipeline] Job {job.id} ({job.mode}) with {len(job.input_files)} file(s)")

        outcome: JobOutcome | None = None
        try:
            outcome = await self._run_mode(job, emit)
            job.terminal_state = "completed"
            await emit(ProgressEvent(
                status="complete",
                message="Processing complete!",
                progress=100,
                markdownUrl=self._url(job, outcome.markdown),
                pdfUrl=self._url(job, outcome.pdf),
                imageUrls=[self._url(job, p) for p in outcome.images] or None,
                fallbackUsed=outcome.fallback_used or None,
            ))
            job.advance("cleanup")
            await emit(ProgressEvent(status="cleanup", message="Cleaning up..."))
        except asyncio.CancelledError:
            job.terminal_state = "failed"
            logger.warning(f"[Pipeline] Job {job.id} cancelled during {job.stage}")
            raise
        except PipelineError as e:
            job.terminal_state = "failed"
            logger.error(f"[Pipeline] Job {job.id} failed at {job.stage}: {e}")
            await emit(self._error_event(e))
        except Exception as e:
            job.terminal_state = "failed"
            logger.exception(f"[Pipeline] Job {job.id} failed at {job.stage}")
            await emit(self._error_event(e))
        finally:
            await self._cleanup(job)

        if job.terminal_state == "completed" and outcome is not None:
            if self.record_history:
                self._record(job, outcome)
            await emit(ProgressEvent(status="done", message="Done"))
            logger.info(f"[Pipeline] Job {job.id} completed")

    @staticmethod
    def _error_event(error: Exception) -> ProgressEvent:
        install = error.dependency.install_command if isinstance(error, DependencyMissing) else None
        return ProgressEvent(
            status="error",
            message=f"Processing failed: {error}",
            error=str(error),
            installCommand=install,
        )

    # -----------------------------------------------------------------
    # Modes
    # -----------------------------------------------------------------

    async def _run_mode(self, job: Job, emit: Emit) -> JobOutcome:
        job.advance("upload")
        await emit(ProgressEvent(
            status="uploading",
            message=f"Uploading {len(job.input_files)} file(s)...",
        ))
        self._stage_inputs(job)
        job.output_dir(self.settings).mkdir(parents=True, exist_ok=True)

        if job.mode == "ocr":
            return await self._run_ocr(job, emit)
        elif job.mode == "markdown":
            return await self._run_markdown(job, emit)
        elif job.mode == "split":
            return await self._run_split(job, emit)
        elif job.mode == "merge":
            return await self._run_merge(job, emit)
        elif job.mode == "images-to-pdf":
            return await self._run_images_to_pdf(job, emit)
        elif job.mode == "pdf-to-images":
            return await self._run_pdf_to_images(job, emit)
        elif job.mode == "convert-image":
            return await self._run_convert_image(job, emit)
        else:
            raise ValueError(f"Unknown mode: {job.mode}")

    def _stage_inputs(self, job: Job) -> None:
        """Write uploads to the job's upload dir, numbered to keep their order."""
        upload_dir = job.upload_dir(self.settings)
        upload_dir.mkdir(parents=True, exist_ok=True)
        for index, input_file in enumerate(job.input_files):
            path = upload_dir / f"{index:03d}-{input_file.name}"
            path.write_bytes(input_file.content)
            job.saved_files.append(path)
        logger.info(f"[Pipeline] Staged {len(job.saved_files)} file(s) in {upload_dir}")

    def _output(self, job: Job, name: str) -> Path:
        return job.output_dir(self.settings) / name

    def _stem(self, job: Job, index: int = 0) -> str:
        return Path(job.input_files[index].name).stem

    async def _run_ocr(self, job: Job, emit: Emit) -> JobOutcome:
        model = job.options.model or self.settings.default_model
        outcome = JobOutcome()

        use_native = False
        if job.is_single_pdf:
            use_native = await self._check_rasterizer(emit)
            outcome.fallback_used = use_native

        # Set before acquiring so cleanup releases the engine even if startup fails
        job.engine_kind = engine_kind_for_model(model)
        label = self.settings.engine(job.engine_kind).label
        job.advance("ready")
        await emit(ProgressEvent(status="starting", message=f"Starting {label} engine..."))
        await self.registry.acquire(job.engine_kind)
        await emit(ProgressEvent(status="ready", message=f"{label} engine ready"))

        if job.is_single_pdf:
            base = self._stem(job)
            outcome.markdown = self._output(job, f"{base}.md")
            temp_dir = job.temp_dir(self.settings)
            temp_dir.mkdir(parents=True, exist_ok=True)
            job.advance("extract")
            await emit(ProgressEvent(status="extracting", message="Extracting pages..."))
            await self.adapter.run_stage(
                extract_pages_spec(
                    self.settings, job.saved_files[0], outcome.markdown, temp_dir, use_native
                ),
                emit,
            )
        else:
            base = "ocr-output"
            outcome.markdown = self._output(job, f"{base}.md")
            job.advance("process")
            logger.info(f"[Pipeline] OCR of {len(job.input_files)} image(s) with {model}")
            await self.adapter.run_stage(
                process_directory_spec(
                    self.settings,
                    job.upload_dir(self.settings),
                    outcome.markdown,
                    model=model,
                    custom_prompt=job.options.custom_prompt,
                    use_coordinates=job.options.use_coordinates,
                    join_images=job.options.join_images,
                ),
                emit,
            )

        outcome.pdf = self._output(job, f"{base}.pdf")
        job.advance("convert")
        await emit(ProgressEvent(status="converting", message="Converting to PDF..."))
        await self.adapter.run_stage(
            markdown_to_pdf_spec(
                self.settings, outcome.markdown, outcome.pdf, job.options.use_coordinates
            ),
            emit,
        )
        return outcome

    async def _check_rasterizer(self, emit: Emit) -> bool:
        """Consult the dependency gate. Returns True to use the native fallback.

        Raises:
            DependencyMissing: If the rasterizer is absent and fallback is disabled
        """
        if self.settings.auto_install_rasterizer and not check("poppler").installed:
            await emit(ProgressEvent(status="info", message="Installing poppler..."))

        decision = await resolve_rasterizer(self.settings.auto_install_rasterizer)
        if decision.install_attempted and decision.install_succeeded:
            await emit(ProgressEvent(status="info", message="poppler installed"))
        if not decision.use_native_fallback:
            return False

        dependency = decision.dependency
        if not self.settings.allow_native_fallback:
            raise DependencyMissing(dependency)
        await emit(ProgressEvent(
            status="warning",
            message="poppler not available, extracting text without page images",
            installCommand=dependency.install_command,
        ))
        return True

    async def _run_markdown(self, job: Job, emit: Emit) -> JobOutcome:
        outcome = JobOutcome(
            markdown=job.saved_files[0],
            pdf=self._output(job, f"{self._stem(job)}.pdf"),
        )
        job.advance("convert")
        await emit(ProgressEvent(status="converting", message="Converting markdown to PDF..."))
        await self.adapter.run_stage(
            markdown_to_pdf_spec(
                self.settings, job.saved_files[0], outcome.pdf, job.options.use_coordinates
            ),
            emit,
        )
        # The staged markdown is deleted in cleanup
        outcome.markdown = None
        return outcome

    async def _run_split(self, job: Job, emit: Emit) -> JobOutcome:
        pages = job.options.page_order or ()
        output = self._output(job, f"{self._stem(job)}-reordered.pdf")
        job.advance("process")
        await emit(ProgressEvent(
            status="processing",
            message=f"Creating PDF with {len(pages)} page(s)...",
        ))
        await self.adapter.run_stage(
            split_reorder_spec(self.settings, job.saved_files[0], output, pages), emit
        )
        return JobOutcome(pdf=output)

    async def _run_merge(self, job: Job, emit: Emit) -> JobOutcome:
        output = self._output(job, "merged.pdf")
        job.advance("process")
        await emit(ProgressEvent(
            status="processing",
            message=f"Merging {len(job.saved_files)} PDFs...",
        ))
        page_count = await asyncio.to_thread(documents.merge_pdfs, job.saved_files, output)
        await emit(ProgressEvent(
            status="processing", message=f"Merged {page_count} pages", progress=100
        ))
        return JobOutcome(pdf=output)

    async def _run_images_to_pdf(self, job: Job, emit: Emit) -> JobOutcome:
        output = self._output(job, "images.pdf")
        job.advance("process")
        await emit(ProgressEvent(
            status="processing",
            message=f"Combining {len(job.saved_files)} image(s)...",
        ))
        try:
            page_count = await asyncio.to_thread(documents.images_to_pdf, job.saved_files, output)
        except ValueError as e:
            raise PipelineError(str(e)) from e
        if page_count < len(job.saved_files):
            await emit(ProgressEvent(
                status="warning",
                message=f"Skipped {len(job.saved_files) - page_count} unreadable image(s)",
            ))
        await emit(ProgressEvent(
            status="processing", message=f"Created {page_count} page(s)", progress=100
        ))
        return JobOutcome(pdf=output)

    async def _run_pdf_to_images(self, job: Job, emit: Emit) -> JobOutcome:
        output_dir = job.output_dir(self.settings)
        dependency = check("poppler")
        use_native = not dependency.installed
        if use_native and not self.settings.allow_native_fallback:
            raise DependencyMissing(dependency)
        outcome = JobOutcome(fallback_used=use_native)
        job.advance("process")
        if use_native:
            await emit(ProgressEvent(
                status="warning",
                message="poppler not available, rendering pages natively",
                installCommand=dependency.install_command,
            ))

        total = len(job.saved_files)
        for index, pdf in enumerate(job.saved_files):
            # Staged names carry the upload index, so equal names stay apart
            stem = pdf.stem
            await emit(ProgressEvent(
                status="processing",
                message=f"Converting {job.input_files[index].name} ({index + 1}/{total})...",
                progress=(index * 100) // total,
            ))
            if use_native:
                rendered = await asyncio.to_thread(
                    documents.render_pdf_pages, pdf, output_dir, f"{stem}-"
                )
            else:
                before = set(output_dir.glob("*.png"))
                await self.adapter.run_stage(
                    rasterize_spec(self.settings, pdf, output_dir / stem), emit
                )
                rendered = sorted(set(output_dir.glob("*.png")) - before)
            outcome.images.extend(rendered)

        await emit(ProgressEvent(
            status="processing",
            message=f"Rendered {len(outcome.images)} page(s)",
            progress=100,
        ))
        return outcome

    async def _run_convert_image(self, job: Job, emit: Emit) -> JobOutcome:
        image_format = job.options.image_format or "png"
        output = self._output(job, f"{self._stem(job)}.{image_format}")
        job.advance("process")
        await emit(ProgressEvent(
            status="processing", message=f"Converting to {image_format.upper()}..."
        ))
        await asyncio.to_thread(
            documents.convert_image, job.saved_files[0], output, image_format, job.options.quality
        )
        return JobOutcome(images=[output])

    # -----------------------------------------------------------------
    # Cleanup and results
    # -----------------------------------------------------------------

    async def _cleanup(self, job: Job) -> None:
        """Remove job-scoped inputs and release the engine. Never raises."""
        if job.stage != "cleanup":
            job.stage = "cleanup"

        for path in (job.upload_dir(self.settings), job.temp_dir(self.settings)):
            try:
                if path.exists():
                    shutil.rmtree(path)
            except OSError as e:
                logger.error(f"[Pipeline] {CleanupFailure(f'Could not remove {path}: {e}')}")

        if job.engine_kind is not None:
            try:
                await self.registry.release(job.engine_kind)
            except Exception as e:
                logger.error(f"[Pipeline] {CleanupFailure(f'Engine release failed: {e}')}")

    def _url(self, job: Job, path: Path | None) -> str | None:
        if path is None:
            return None
        relative = path.relative_to(self.settings.storage_root)
        return file_url(relative.as_posix())

    def _record(self, job: Job, outcome: JobOutcome) -> None:
        item = {
            "mode": job.mode,
            "jobId": job.id,
            "files": [f.name for f in job.input_files],
            "markdownUrl": self._url(job, outcome.markdown),
            "pdfUrl": self._url(job, outcome.pdf),
            "images": [self._url(job, p) for p in outcome.images] or None,
            "imageCount": len(outcome.images) or None,
        }
        try:
            add_entry(self.settings, {k: v for k, v in item.items() if v is not None})
        except (OSError, ValueError) as e:
            logger.error(f"[Pipeline] Could not record history for job {job.id}: {e}")


async def run_job(settings: Settings, job: Job, registry: EngineRegistry | None = None) -> list[ProgressEvent]:
    """Convenience function to run a job and collect its events.

    Args:
        settings: Pipeline settings
        job: Validated job
        registry: Engine registry (default: a fresh one)

    Returns:
        Every event the job emitted, ending with ``done`` or ``error``
    """
    executor = PipelineExecutor(settings, registry)
    return await executor.run(job).collect()
