from __future__ import annotations

import asyncio
import subprocess
import sys
from dataclasses import replace

import httpx
import pytest

from docpipe.engines import EngineRegistry, parse_ollama_list
from docpipe.errors import EngineStartupTimeout


def _probe_count_transport(calls: list[str], status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(status)

    return httpx.MockTransport(handler)


def test_ensure_ready_uses_running_engine_without_spawning(settings) -> None:
    calls: list[str] = []
    registry = EngineRegistry(settings, _probe_count_transport(calls))

    asyncio.run(registry.ensure_ready("nexa"))

    assert calls == ["http://127.0.0.1:18181/v1/models"]
    assert registry.handle("nexa").spawn_count == 0
    assert registry.handle("nexa").state == "ready"


def test_ollama_probe_targets_tags(settings) -> None:
    calls: list[str] = []
    registry = EngineRegistry(settings, _probe_count_transport(calls))

    assert asyncio.run(registry.is_healthy("ollama")) is True
    assert calls == ["http://127.0.0.1:11434/api/tags"]


def test_non_2xx_probe_is_not_ready(settings) -> None:
    registry = EngineRegistry(settings, _probe_count_transport([], status=503))
    assert asyncio.run(registry.is_healthy("nexa")) is False


def test_concurrent_ensure_ready_spawns_once(settings) -> None:
    registry: EngineRegistry

    def handler(request: httpx.Request) -> httpx.Response:
        # Ready as soon as something has been spawned
        if registry.handle("nexa").spawn_count:
            return httpx.Response(200)
        raise httpx.ConnectError("refused", request=request)

    registry = EngineRegistry(settings, httpx.MockTransport(handler))

    async def scenario() -> None:
        await asyncio.gather(*(registry.ensure_ready("nexa") for _ in range(5)))
        assert registry.handle("nexa").state == "ready"
        await registry.shutdown("nexa")

    asyncio.run(scenario())

    assert registry.handle("nexa").spawn_count == 1
    assert registry.handle("nexa").state == "stopped"


def test_concurrent_callers_share_startup_timeout(down_registry) -> None:
    async def scenario() -> list:
        return await asyncio.gather(
            *(down_registry.ensure_ready("nexa") for _ in range(4)),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    assert all(isinstance(r, EngineStartupTimeout) for r in results)
    assert len({id(r) for r in results}) == 1
    handle = down_registry.handle("nexa")
    assert handle.spawn_count == 1
    assert handle.state == "stopped"
    assert handle.process is None


def test_startup_timeout_message_names_attempts(down_registry) -> None:
    with pytest.raises(EngineStartupTimeout, match="after 3 attempts"):
        asyncio.run(down_registry.ensure_ready("ollama"))


def test_unlaunchable_engine_reports_startup_failure(settings, down_registry) -> None:
    settings.engines["nexa"] = replace(
        settings.engines["nexa"], launch_command=("definitely-not-a-binary-xyz",)
    )

    with pytest.raises(EngineStartupTimeout, match="could not be launched"):
        asyncio.run(down_registry.ensure_ready("nexa"))
    assert down_registry.handle("nexa").state == "stopped"


def test_shutdown_never_raises(registry, monkeypatch) -> None:
    async def broken(pattern):
        raise RuntimeError("pkill exploded")

    monkeypatch.setattr(EngineRegistry, "_kill_matching", staticmethod(broken))

    asyncio.run(registry.shutdown("nexa"))

    assert registry.handle("nexa").state == "stopped"


def test_refcount_policy_defers_shutdown(registry) -> None:
    registry.settings.engine_shutdown_policy = "refcount"

    async def scenario() -> tuple[bool, bool]:
        await registry.acquire("ollama")
        await registry.acquire("ollama")
        first = await registry.release("ollama")
        second = await registry.release("ollama")
        return first, second

    assert asyncio.run(scenario()) == (False, True)
    assert registry.shutdowns == ["ollama"]


def _live_engine() -> subprocess.Popen:
    return subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])


def test_acquire_during_refcount_shutdown_waits_for_it(registry) -> None:
    registry.settings.engine_shutdown_policy = "refcount"
    handle = registry.handle("ollama")

    async def scenario() -> None:
        await registry.acquire("ollama")
        handle.process = _live_engine()
        releasing = asyncio.create_task(registry.release("ollama"))
        await asyncio.sleep(0)

        await registry.acquire("ollama")
        await releasing

    asyncio.run(scenario())

    assert handle.ref_count == 1
    assert handle.state == "ready"


def test_refcount_shutdown_skipped_when_reacquired_before_lock(registry) -> None:
    registry.settings.engine_shutdown_policy = "refcount"
    handle = registry.handle("ollama")

    async def scenario() -> subprocess.Popen:
        await registry.acquire("ollama")
        process = handle.process = _live_engine()
        async with handle.lock:
            releasing = asyncio.create_task(registry.release("ollama"))
            await asyncio.sleep(0)
            await registry.acquire("ollama")
        await releasing
        return process

    process = asyncio.run(scenario())
    try:
        assert process.poll() is None
        assert handle.state == "ready"
        assert handle.ref_count == 1
    finally:
        process.kill()
        process.wait()


def test_always_policy_shuts_down_on_every_release(registry) -> None:
    async def scenario() -> None:
        await registry.acquire("ollama")
        await registry.acquire("ollama")
        await registry.release("ollama")
        await registry.release("ollama")

    asyncio.run(scenario())
    assert registry.shutdowns == ["ollama", "ollama"]


def test_parse_ollama_list_keeps_vision_models() -> None:
    output = (
        "NAME                 ID            SIZE    MODIFIED\n"
        "llava:7b             8dd30f6b0cb1  4.7 GB  2 days ago\n"
        "llama3:8b            365c0bd3c000  4.7 GB  3 weeks ago\n"
    )

    models = parse_ollama_list(output)

    assert [m.id for m in models] == ["deepseek-ocr", "llava:7b"]
    assert models[0].status == "missing"
    assert models[1].status == "available"


def test_parse_ollama_list_with_deepseek_installed() -> None:
    output = "NAME  ID  SIZE  MODIFIED\ndeepseek-ocr:latest  abc  6 GB  now\n"

    models = parse_ollama_list(output)

    assert [(m.id, m.status) for m in models] == [("deepseek-ocr:latest", "available")]
