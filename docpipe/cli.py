"""
Document Pipeline CLI

Command-line interface for running jobs and managing the local engines.

Usage:
    python -m docpipe run ocr scan1.png scan2.png --use-coordinates
    python -m docpipe run split report.pdf --page-order 3,1,2
    python -m docpipe deps --install
    python -m docpipe engines status
    python -m docpipe engines stop nexa
    python -m docpipe serve --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

import click

from .config import DEFAULT_ENGINES, Settings, load_settings
from .dependencies import attempt_install, check_all, dependency_status
from .engines import EngineRegistry, discover_models
from .errors import PipelineError, ValidationError
from .history import clear_history, load_history
from .job import JOB_MODES, InputFile, JobOptions, create_job, parse_page_order
from .orchestrator import PipelineExecutor
from .progress import ProgressEvent
from .stages.documents import IMAGE_FORMATS

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

STATUS_ICONS = {
    "complete": "●",
    "done": "●",
    "error": "✗",
    "warning": "!",
}


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML settings file (default: $DOCPIPE_CONFIG)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log worker output")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Local document pipeline.

    Runs OCR and PDF/image jobs through the native worker, starting
    the OCR engine only while a job needs it.
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    ctx.ensure_object(dict)
    try:
        ctx.obj["settings"] = load_settings(config_path)
    except (OSError, ValueError) as e:
        click.echo(f"Error: Invalid configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("mode", type=click.Choice(JOB_MODES))
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--model", "-m", default=None, help="OCR model id (default from settings)")
@click.option("--use-coordinates", is_flag=True, help="Keep element positions in the output")
@click.option("--join-images", is_flag=True, help="OCR images as one combined document")
@click.option("--custom-prompt", default=None, help="Prompt override for the OCR model")
@click.option("--page-order", default=None, help="Pages for split mode, e.g. 3,1,2")
@click.option("--format", "image_format", type=click.Choice(sorted(IMAGE_FORMATS)), default=None,
              help="Target format for convert-image")
@click.option("--quality", type=click.IntRange(1, 100), default=90, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print events as NDJSON")
@click.pass_context
def run(
    ctx: click.Context,
    mode: str,
    files: tuple[Path, ...],
    model: str | None,
    use_coordinates: bool,
    join_images: bool,
    custom_prompt: str | None,
    page_order: str | None,
    image_format: str | None,
    quality: int,
    as_json: bool,
) -> None:
    """Run a job and stream its progress.

    MODE: One of the job modes. FILES: Input files, in order.

    Examples:
        docpipe run ocr page1.png page2.png
        docpipe run merge a.pdf b.pdf
        docpipe run convert-image photo.png --format webp --quality 80
    """
    settings: Settings = ctx.obj["settings"]

    try:
        options = JobOptions(
            model=model,
            use_coordinates=use_coordinates,
            join_images=join_images,
            custom_prompt=custom_prompt,
            page_order=parse_page_order(page_order),
            image_format=image_format,
            quality=quality,
        )
        job = create_job(mode, [InputFile.from_path(f) for f in files], options)
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    if not as_json:
        click.echo(f"Starting job: {job.id} ({job.mode})")
        click.echo(f"  Input files: {len(job.input_files)}")
        click.echo()

    final = asyncio.run(_run_job(settings, job, as_json))
    if final is None or final.status != "done":
        sys.exit(1)


async def _run_job(settings: Settings, job, as_json: bool) -> ProgressEvent | None:
    executor = PipelineExecutor(settings)
    last: ProgressEvent | None = None
    async for event in executor.run(job):
        last = event
        if as_json:
            click.echo(event.to_json_line(), nl=False)
        else:
            _print_event(settings, event)
    return last


def _print_event(settings: Settings, event: ProgressEvent) -> None:
    icon = STATUS_ICONS.get(event.status, "·")
    progress = f" [{event.progress:3d}%]" if event.progress is not None else ""
    click.echo(f"  {icon} {event.status:<11}{progress} {event.message}")

    if event.status == "complete":
        for label, url in (("Markdown", event.markdown_url), ("PDF", event.pdf_url)):
            if url:
                click.echo(f"      {label}: {_url_to_path(settings, url)}")
        for url in event.image_urls or []:
            click.echo(f"      Image: {_url_to_path(settings, url)}")
        if event.fallback_used:
            click.echo("      (native fallback used)")
    if event.status == "error":
        click.echo(f"Error: {event.error}", err=True)
        if event.install_command:
            click.echo(f"Install with: {event.install_command}", err=True)


def _url_to_path(settings: Settings, url: str) -> Path:
    return settings.storage_root / url.split("path=", 1)[-1]


@cli.command()
@click.option("--install", is_flag=True, help="Try to install missing dependencies")
def deps(install: bool) -> None:
    """Show optional system dependencies."""
    status = dependency_status()
    for name, dep in status["dependencies"].items():
        mark = "●" if dep["installed"] else "✗"
        click.echo(f"  {mark} {name:<10} {'installed' if dep['installed'] else dep['installCommand']}")

    if install and not status["allInstalled"]:
        for dep in check_all().values():
            if dep.installed:
                continue
            click.echo(f"\nInstalling {dep.name}: {dep.install_command}")
            ok = asyncio.run(attempt_install(dep))
            click.echo("  done" if ok else "  failed", err=not ok)
        status = dependency_status()

    if not status["allInstalled"]:
        sys.exit(1)


@cli.group()
def engines() -> None:
    """Inspect, start or stop the local OCR engines."""


@engines.command("status")
@click.pass_context
def engines_status(ctx: click.Context) -> None:
    """Probe every engine."""
    settings: Settings = ctx.obj["settings"]
    registry = EngineRegistry(settings)

    async def probe() -> dict[str, bool]:
        return {kind: await registry.is_healthy(kind) for kind in settings.engines}

    for kind, healthy in asyncio.run(probe()).items():
        config = settings.engine(kind)
        state = "ready" if healthy else "stopped"
        click.echo(f"  {'●' if healthy else '○'} {kind:<8} {state:<8} {config.base_url}")


@engines.command("start")
@click.argument("kind", type=click.Choice(sorted(DEFAULT_ENGINES)))
@click.pass_context
def engines_start(ctx: click.Context, kind: str) -> None:
    """Start an engine and wait until it answers its probe."""
    registry = EngineRegistry(ctx.obj["settings"])
    try:
        asyncio.run(registry.ensure_ready(kind))
    except PipelineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"{kind} engine ready")


@engines.command("stop")
@click.argument("kind", type=click.Choice(sorted(DEFAULT_ENGINES)))
@click.pass_context
def engines_stop(ctx: click.Context, kind: str) -> None:
    """Stop an engine, including one started outside docpipe."""
    registry = EngineRegistry(ctx.obj["settings"])
    asyncio.run(registry.shutdown(kind))
    click.echo(f"{kind} engine stopped")


@cli.command()
def models() -> None:
    """List OCR models offered by the installed engines."""
    found = asyncio.run(discover_models())
    if not found:
        click.echo("No OCR engines installed (install nexa or ollama)")
        sys.exit(1)
    for model in found:
        click.echo(f"  {model.provider:<7} {model.status:<10} {model.id}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    config_path = ctx.parent.params.get("config_path") if ctx.parent else None
    if config_path:
        os.environ["DOCPIPE_CONFIG"] = str(config_path)
    uvicorn.run("backend.main:app", host=host, port=port)


@cli.command("history")
@click.option("--clear", is_flag=True, help="Forget every entry")
@click.pass_context
def history_cmd(ctx: click.Context, clear: bool) -> None:
    """Show completed jobs."""
    settings: Settings = ctx.obj["settings"]
    if clear:
        clear_history(settings)
        click.echo("History cleared")
        return

    items = load_history(settings)
    if not items:
        click.echo("No history")
        return
    for item in items:
        outputs = [item.get("pdfUrl"), item.get("markdownUrl"), *(item.get("images") or [])]
        click.echo(f"  {item['timestamp'][:19]}  {item['mode']:<14} {len([o for o in outputs if o])} file(s)")


def main() -> None:
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
