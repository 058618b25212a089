"""Shared fixtures: isolated storage, a fake native worker and fake engines."""

from __future__ import annotations

import logging
import sys
from dataclasses import replace
from io import BytesIO
from pathlib import Path
from typing import Callable

import httpx
import pytest
from PIL import Image
from pypdf import PdfWriter

from docpipe.config import DEFAULT_ENGINES, Settings, StageTimeouts
from docpipe.engines import EngineRegistry

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)

FAKE_WORKER = Path(__file__).resolve().parent / "fake_worker.py"

# Stays up until terminated, like an engine server
SLEEPER = (sys.executable, "-c", "import time; time.sleep(60)")


def build_settings(tmp_path: Path, **overrides) -> Settings:
    engines = {
        kind: replace(
            config,
            launch_command=SLEEPER,
            process_pattern=None,
            max_attempts=3,
            poll_interval=0.01,
            probe_timeout=0.5,
            stop_grace=0.2,
        )
        for kind, config in DEFAULT_ENGINES.items()
    }
    settings = Settings(
        storage_root=tmp_path / "storage",
        worker_command=[sys.executable, str(FAKE_WORKER)],
        timeouts=StageTimeouts(extract=30, process=30, convert=30, split=30, rasterize=30),
        engines=engines,
    )
    return replace(settings, **overrides)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return build_settings(tmp_path)


def healthy_transport() -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(200, json={"models": []}))


def down_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.MockTransport(handler)


class CountingRegistry(EngineRegistry):
    """EngineRegistry that records every shutdown request."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport or healthy_transport())
        self.shutdowns: list[str] = []

    async def shutdown(self, kind, if_unused: bool = False) -> None:
        self.shutdowns.append(kind)
        await super().shutdown(kind, if_unused)


@pytest.fixture
def registry(settings: Settings) -> CountingRegistry:
    """Registry whose engines always answer their probe."""
    return CountingRegistry(settings)


@pytest.fixture
def down_registry(settings: Settings) -> CountingRegistry:
    """Registry whose engines never answer their probe."""
    return CountingRegistry(settings, down_transport())


@pytest.fixture
def worker_log(tmp_path: Path, monkeypatch) -> Path:
    """Path the fake worker appends its invocations to."""
    path = tmp_path / "worker.log"
    monkeypatch.setenv("FAKE_WORKER_LOG", str(path))
    monkeypatch.delenv("FAKE_WORKER_FAIL", raising=False)
    monkeypatch.delenv("FAKE_WORKER_SLEEP", raising=False)
    return path


def make_pdf(widths: list[int]) -> bytes:
    """PDF with one blank page per width, so page order is observable."""
    writer = PdfWriter()
    for width in widths:
        writer.add_blank_page(width=width, height=500)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def make_png(size: tuple[int, int] = (40, 30), color: str = "red") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, "PNG")
    return buffer.getvalue()


@pytest.fixture
def pdf_bytes() -> Callable[[list[int]], bytes]:
    return make_pdf


@pytest.fixture
def png_bytes() -> Callable[..., bytes]:
    return make_png
