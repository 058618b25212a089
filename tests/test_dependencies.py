from __future__ import annotations

import asyncio

from docpipe import dependencies


def _only(*commands: str):
    return lambda command: command in commands


def test_install_command_per_platform(monkeypatch) -> None:
    monkeypatch.setattr(dependencies.sys, "platform", "darwin")
    assert dependencies.install_command() == "brew install poppler"

    monkeypatch.setattr(dependencies.sys, "platform", "linux")
    monkeypatch.setattr(dependencies, "command_exists", _only("yum"))
    assert dependencies.install_command() == "sudo yum install -y poppler-utils"

    monkeypatch.setattr(dependencies, "command_exists", _only("apt-get", "yum"))
    assert dependencies.install_command() == "sudo apt-get install -y poppler-utils"

    monkeypatch.setattr(dependencies.sys, "platform", "win32")
    assert dependencies.install_command() == "choco install poppler"


def test_check_reflects_path(monkeypatch) -> None:
    monkeypatch.setattr(dependencies, "command_exists", _only("pdftoppm"))
    assert dependencies.check("poppler").installed

    monkeypatch.setattr(dependencies, "command_exists", _only())
    assert not dependencies.check("poppler").installed


def test_dependency_status_payload(monkeypatch) -> None:
    monkeypatch.setattr(dependencies.sys, "platform", "darwin")
    monkeypatch.setattr(dependencies, "command_exists", _only())

    status = dependencies.dependency_status()

    assert status["allInstalled"] is False
    assert status["dependencies"] == {
        "poppler": {"installed": False, "installCommand": "brew install poppler"}
    }
    assert status["missingDependencies"] == [
        {"name": "poppler", "installCommand": "brew install poppler"}
    ]
    assert "brew install poppler" in status["message"]


def test_dependency_status_all_installed(monkeypatch) -> None:
    monkeypatch.setattr(dependencies, "command_exists", _only("pdftoppm"))

    status = dependencies.dependency_status()

    assert status["allInstalled"] is True
    assert status["missingDependencies"] == []


def test_resolve_rasterizer_falls_back_without_installing(monkeypatch) -> None:
    attempts: list = []

    async def fake_install(dep, timeout=0):
        attempts.append(dep)
        return True

    monkeypatch.setattr(dependencies, "command_exists", _only())
    monkeypatch.setattr(dependencies, "attempt_install", fake_install)

    decision = asyncio.run(dependencies.resolve_rasterizer())

    assert decision.use_native_fallback
    assert not decision.install_attempted
    assert attempts == []


def test_resolve_rasterizer_rechecks_after_install(monkeypatch) -> None:
    installed = {"pdftoppm": False}

    async def fake_install(dep, timeout=0):
        installed["pdftoppm"] = True
        return True

    monkeypatch.setattr(dependencies, "command_exists", lambda command: installed.get(command, False))
    monkeypatch.setattr(dependencies, "attempt_install", fake_install)

    decision = asyncio.run(dependencies.resolve_rasterizer(auto_install=True))

    assert decision.install_attempted
    assert decision.install_succeeded
    assert not decision.use_native_fallback
    assert decision.dependency.installed


def test_failed_install_still_falls_back(monkeypatch) -> None:
    async def fake_install(dep, timeout=0):
        return False

    monkeypatch.setattr(dependencies, "command_exists", _only())
    monkeypatch.setattr(dependencies, "attempt_install", fake_install)

    decision = asyncio.run(dependencies.resolve_rasterizer(auto_install=True))

    assert decision.install_attempted
    assert not decision.install_succeeded
    assert decision.use_native_fallback


def test_attempt_install_skips_manual_guidance() -> None:
    dep = dependencies.Dependency(name="poppler", installed=False, install_command="Please install poppler for your OS")
    assert asyncio.run(dependencies.attempt_install(dep)) is False
