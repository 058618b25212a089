from __future__ import annotations

import asyncio
import json

import pytest

from docpipe.progress import ProgressEvent, ProgressStream, ndjson_lines


def test_event_serializes_with_camel_case_and_omits_none() -> None:
    event = ProgressEvent(status="complete", message="ok", progress=100, markdownUrl="/a.md", pdf_url="/a.pdf")

    assert event.to_record() == {
        "status": "complete",
        "message": "ok",
        "progress": 100,
        "markdownUrl": "/a.md",
        "pdfUrl": "/a.pdf",
    }
    assert json.loads(event.to_json_line()) == event.to_record()
    assert event.to_json_line().endswith("\n")


def test_event_is_immutable() -> None:
    event = ProgressEvent(status="processing", message="x")
    with pytest.raises(Exception):
        event.message = "y"


def test_progress_out_of_range_is_rejected() -> None:
    with pytest.raises(ValueError):
        ProgressEvent(status="processing", message="x", progress=101)


def test_terminal_statuses() -> None:
    assert ProgressEvent(status="done", message="").is_terminal
    assert ProgressEvent(status="error", message="").is_terminal
    assert not ProgressEvent(status="cleanup", message="").is_terminal


def test_stream_clamps_decreasing_progress() -> None:
    async def produce(emit) -> None:
        for value in (0, 33, 80, 50, 100):
            await emit(ProgressEvent(status="processing", message=str(value), progress=value))
        await emit(ProgressEvent(status="done", message="done"))

    async def scenario() -> list[ProgressEvent]:
        return await ProgressStream.start(produce).collect()

    events = asyncio.run(scenario())

    assert [e.progress for e in events] == [0, 33, 80, 80, 100, None]
    assert events[3].message == "50"


def test_stream_reraises_producer_error() -> None:
    async def produce(emit) -> None:
        await emit(ProgressEvent(status="uploading", message="x"))
        raise RuntimeError("producer broke")

    async def scenario() -> list[ProgressEvent]:
        return await ProgressStream.start(produce).collect()

    with pytest.raises(RuntimeError, match="producer broke"):
        asyncio.run(scenario())


def test_closing_iterator_cancels_producer() -> None:
    state = {"cancelled": False, "cleaned": False}

    async def produce(emit) -> None:
        await emit(ProgressEvent(status="uploading", message="x"))
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise
        finally:
            state["cleaned"] = True

    async def scenario() -> ProgressStream:
        stream = ProgressStream.start(produce)
        events = stream.__aiter__()
        first = await events.__anext__()
        assert first.status == "uploading"
        await events.aclose()
        return stream

    stream = asyncio.run(scenario())

    assert state == {"cancelled": True, "cleaned": True}
    assert stream.closed


def test_events_after_close_are_dropped() -> None:
    async def scenario() -> list[ProgressEvent]:
        stream = ProgressStream()
        await stream.emit(ProgressEvent(status="uploading", message="x"))
        stream.close()
        await stream.emit(ProgressEvent(status="done", message="late"))
        return [event async for event in stream]

    events = asyncio.run(scenario())
    assert [e.status for e in events] == ["uploading"]


def test_ndjson_lines() -> None:
    async def produce(emit) -> None:
        await emit(ProgressEvent(status="uploading", message="a"))
        await emit(ProgressEvent(status="done", message="b"))

    async def scenario() -> list[str]:
        return [line async for line in ndjson_lines(ProgressStream.start(produce))]

    lines = asyncio.run(scenario())
    assert [json.loads(line)["status"] for line in lines] == ["uploading", "done"]
