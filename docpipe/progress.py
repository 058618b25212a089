"""
Progress Stream

A job produces an ordered, finite sequence of ProgressEvents. The
pipeline pushes events into a ProgressStream; the transport (HTTP
response, CLI) iterates it and serializes each record. Closing the
iterator early cancels the producing task.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

EventStatus = Literal[
    "uploading",
    "starting",
    "ready",
    "extracting",
    "processing",
    "converting",
    "complete",
    "cleanup",
    "done",
    "error",
    "info",
    "warning",
    "pulling",
]

TERMINAL_STATUSES: frozenset[str] = frozenset({"done", "error"})


class ProgressEvent(BaseModel):
    """One immutable record in a job's output stream."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    status: EventStatus
    message: str
    progress: int | None = Field(default=None, ge=0, le=100)
    markdown_url: str | None = Field(default=None, alias="markdownUrl")
    pdf_url: str | None = Field(default=None, alias="pdfUrl")
    image_urls: list[str] | None = Field(default=None, alias="imageUrls")
    fallback_used: bool | None = Field(default=None, alias="fallbackUsed")
    install_command: str | None = Field(default=None, alias="installCommand")
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json_line(self) -> str:
        return json.dumps(self.to_record()) + "\n"


Emit = Callable[[ProgressEvent], Awaitable[None]]


class ProgressStream:
    """Async iterator over a job's events, fed by a producer coroutine.

    Progress values are clamped so they never decrease within one stream.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._last_progress = 0
        self._closed = False
        self._producer: asyncio.Task | None = None
        self.events: list[ProgressEvent] = []

    @classmethod
    def start(cls, producer: Callable[[Emit], Awaitable[None]]) -> ProgressStream:
        """Run producer(emit) as a task and return the stream it feeds."""
        stream = cls()
        stream._producer = asyncio.create_task(stream._run(producer))
        return stream

    async def _run(self, producer: Callable[[Emit], Awaitable[None]]) -> None:
        try:
            await producer(self.emit)
        finally:
            self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: ProgressEvent) -> None:
        if self._closed:
            logger.debug(f"[Stream] Dropping event after close: {event.status}")
            return
        if event.progress is not None:
            if event.progress < self._last_progress:
                event = event.model_copy(update={"progress": self._last_progress})
            self._last_progress = event.progress
        self.events.append(event)
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def aclose(self) -> None:
        """Stop consuming. Cancels the producer if it is still running."""
        self.close()
        producer = self._producer
        if producer is not None and not producer.done():
            producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        finished = False
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    finished = True
                    return
                yield event
        finally:
            if not finished:
                logger.info("[Stream] Consumer went away before the stream finished")
                await self.aclose()
            elif self._producer is not None and self._producer.done() and not self._producer.cancelled():
                exc = self._producer.exception()
                if exc is not None:
                    raise exc

    async def collect(self) -> list[ProgressEvent]:
        return [event async for event in self]


async def ndjson_lines(stream: ProgressStream) -> AsyncIterator[str]:
    """Serialize a stream as newline-delimited JSON for the transport."""
    async for event in stream:
        yield event.to_json_line()
