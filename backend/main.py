"""FastAPI backend for docpipe - streaming document jobs over HTTP.

Every job endpoint answers with newline-delimited JSON progress records.
Malformed requests are rejected with 400 before a stream is opened;
any later failure arrives as the stream's terminal ``error`` record.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel

from docpipe.config import Settings, load_settings
from docpipe.dependencies import dependency_status
from docpipe.engines import EngineRegistry, discover_models, pull_model
from docpipe.errors import EngineStartupTimeout, ValidationError
from docpipe.history import add_entry, clear_history, delete_entry, existing_files, load_history, storage_path
from docpipe.job import InputFile, JobOptions, create_job, parse_page_order
from docpipe.orchestrator import PipelineExecutor
from docpipe.progress import ProgressStream, ndjson_lines
from docpipe.stages.documents import count_pages
from docpipe.stages.worker import WorkerAdapter

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"

CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".tiff": "image/tiff",
    ".pdf": "application/pdf",
    ".md": "text/markdown",
}


class PullModelRequest(BaseModel):
    model: str


class HistoryRequest(BaseModel):
    item: dict[str, Any] | None = None


class CheckFilesRequest(BaseModel):
    files: list[str]


def create_app(settings: Settings | None = None, registry: EngineRegistry | None = None) -> FastAPI:
    """Build the API around one settings object and one engine registry."""
    settings = settings or load_settings()
    registry = registry or EngineRegistry(settings)
    adapter = WorkerAdapter(settings)
    executor = PipelineExecutor(settings, registry, adapter)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.ensure_dirs()
        yield
        logger.info("[API] Shutting down engines")
        await registry.shutdown_all()

    app = FastAPI(title="docpipe API", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.executor = executor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def stream_response(stream: ProgressStream) -> StreamingResponse:
        return StreamingResponse(
            ndjson_lines(stream),
            media_type=NDJSON,
            headers={"Cache-Control": "no-cache"},
        )

    async def read_files(files: list[UploadFile]) -> list[InputFile]:
        return [InputFile(name=f.filename or "upload", content=await f.read()) for f in files]

    async def submit(mode: str, inputs: list[InputFile], options: JobOptions) -> StreamingResponse:
        # Split validation counts pages with pypdf
        try:
            job = await asyncio.to_thread(create_job, mode, inputs, options)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return stream_response(executor.run(job))

    @app.get("/api/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.post("/api/process-stream")
    async def process_stream(
        files: list[UploadFile] = File(...),
        model: str | None = Form(None),
        use_coordinates: bool = Form(False, alias="useCoordinates"),
        join_images: bool = Form(False, alias="joinImages"),
        custom_prompt: str | None = Form(None, alias="customPrompt"),
    ):
        """Stream an OCR job: images or a single PDF to markdown and PDF."""
        options = JobOptions(
            model=model or None,
            use_coordinates=use_coordinates,
            join_images=join_images,
            custom_prompt=custom_prompt or None,
        )
        return await submit("ocr", await read_files(files), options)

    @app.post("/api/jobs/{mode}")
    async def run_job(
        mode: str,
        files: list[UploadFile] = File(...),
        model: str | None = Form(None),
        use_coordinates: bool = Form(False, alias="useCoordinates"),
        join_images: bool = Form(False, alias="joinImages"),
        custom_prompt: str | None = Form(None, alias="customPrompt"),
        page_order: str | None = Form(None, alias="pageOrder"),
        image_format: str | None = Form(None, alias="format"),
        quality: int = Form(90),
    ):
        """Stream a job of any mode."""
        try:
            order = parse_page_order(page_order)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        options = JobOptions(
            model=model or None,
            use_coordinates=use_coordinates,
            join_images=join_images,
            custom_prompt=custom_prompt or None,
            page_order=order,
            image_format=image_format.lower() if image_format else None,
            quality=quality,
        )
        return await submit(mode, await read_files(files), options)

    @app.get("/api/dependencies")
    async def dependencies():
        return dependency_status()

    @app.get("/api/models")
    async def models():
        found = await discover_models()
        return {"success": True, "models": [m.to_dict() for m in found]}

    @app.post("/api/pull-model")
    async def pull(request: PullModelRequest):
        """Stream `ollama pull` progress for a model."""
        if not request.model.strip():
            raise HTTPException(status_code=400, detail="Model name is required")
        return stream_response(pull_model(adapter, request.model.strip()))

    @app.get("/api/engines")
    async def engines():
        status = registry.status()
        for kind in status:
            status[kind]["healthy"] = await registry.is_healthy(kind)
        return status

    def engine_kind(kind: str) -> str:
        if kind not in settings.engines:
            raise HTTPException(status_code=404, detail=f"Unknown engine: {kind}")
        return kind

    @app.post("/api/engines/{kind}/start")
    async def start_engine(kind: str):
        kind = engine_kind(kind)
        try:
            await registry.ensure_ready(kind)
        except EngineStartupTimeout as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"success": True, "engine": registry.handle(kind).to_dict()}

    @app.post("/api/engines/{kind}/stop")
    async def stop_engine(kind: str):
        kind = engine_kind(kind)
        await registry.shutdown(kind)
        return {"success": True, "engine": registry.handle(kind).to_dict()}

    @app.post("/api/pdf-info")
    async def pdf_info(file: UploadFile = File(...)):
        """Page count of an uploaded PDF."""
        if not (file.filename or "").lower().endswith(".pdf"):
            raise HTTPException(status_code=400, detail="Only PDF files are supported")
        content = await file.read()
        try:
            page_count = await asyncio.to_thread(count_pages, content)
        except Exception as e:
            raise HTTPException(status_code=400, detail=f"Could not read PDF: {e}")
        if page_count == 0:
            raise HTTPException(status_code=400, detail="Could not determine page count")
        return {"success": True, "pageCount": page_count}

    @app.get("/api/files")
    async def serve_file(path: str = Query(...)):
        """Serve a file from storage. Markdown and PDF download as attachments."""
        full_path = storage_path(settings, path)
        if full_path is None:
            raise HTTPException(status_code=403, detail="Invalid path")
        if not full_path.is_file():
            raise HTTPException(status_code=404, detail="File not found")

        suffix = full_path.suffix.lower()
        disposition = "attachment" if suffix in (".pdf", ".md") else "inline"
        return FileResponse(
            full_path,
            media_type=CONTENT_TYPES.get(suffix, "application/octet-stream"),
            filename=full_path.name,
            content_disposition_type=disposition,
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
        )

    @app.get("/api/history")
    async def get_history():
        try:
            history = load_history(settings)
        except (OSError, ValueError) as e:
            logger.error(f"[API] Could not read history: {e}")
            history = []
        return {"success": True, "history": history}

    @app.post("/api/history")
    async def post_history(request: HistoryRequest):
        if not request.item:
            raise HTTPException(status_code=400, detail="No item provided")
        return {"success": True, "item": add_entry(settings, request.item)}

    @app.delete("/api/history")
    async def remove_history(id: str | None = Query(None)):
        if not id:
            raise HTTPException(status_code=400, detail="No ID provided")
        delete_entry(settings, id)
        return {"success": True}

    @app.put("/api/history")
    async def reset_history():
        clear_history(settings)
        return {"success": True}

    @app.post("/api/check-files")
    async def check_files(request: CheckFilesRequest):
        return {"success": True, "existingFiles": existing_files(settings, request.files)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
