"""
Dependency Gate

Checks for the optional page rasterizer (poppler's pdftoppm) and decides
whether PDF jobs run with rendered pages or fall back to native text
extraction. Nothing is installed unless explicitly requested.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Capability name -> executable that provides it
CAPABILITIES: dict[str, str] = {
    "poppler": "pdftoppm",
}

INSTALL_TIMEOUT = 600.0


@dataclass(frozen=True)
class Dependency:
    name: str
    installed: bool
    install_command: str

    def to_dict(self) -> dict:
        return {"installed": self.installed, "installCommand": self.install_command}


@dataclass(frozen=True)
class RasterizerDecision:
    dependency: Dependency
    use_native_fallback: bool
    install_attempted: bool = False
    install_succeeded: bool = False


def command_exists(command: str) -> bool:
    return shutil.which(command) is not None


def install_command(capability: str = "poppler") -> str:
    """Install guidance for the current OS family."""
    if capability != "poppler":
        return f"Please install {capability} for your OS"

    if sys.platform == "darwin":
        return "brew install poppler"
    if sys.platform.startswith("linux"):
        if command_exists("apt-get"):
            return "sudo apt-get install -y poppler-utils"
        if command_exists("yum"):
            return "sudo yum install -y poppler-utils"
        if command_exists("pacman"):
            return "sudo pacman -S --noconfirm poppler"
        return "sudo apt-get install poppler-utils (or equivalent for your distro)"
    if sys.platform == "win32":
        return "choco install poppler"
    return "Please install poppler for your OS"


def check(capability: str = "poppler") -> Dependency:
    """Snapshot of one capability. Evaluated fresh on every call."""
    executable = CAPABILITIES.get(capability, capability)
    return Dependency(
        name=capability,
        installed=command_exists(executable),
        install_command=install_command(capability),
    )


def check_all() -> dict[str, Dependency]:
    return {name: check(name) for name in CAPABILITIES}


def dependency_status() -> dict:
    """Payload for the dependency status endpoint."""
    deps = check_all()
    missing = [d for d in deps.values() if not d.installed]

    if missing:
        message = "Missing dependencies:\n" + "".join(
            f"\n{d.name}:\n  Install: {d.install_command}\n" for d in missing
        )
    else:
        message = "All dependencies are installed"

    return {
        "allInstalled": not missing,
        "dependencies": {name: dep.to_dict() for name, dep in deps.items()},
        "message": message,
        "missingDependencies": [
            {"name": d.name, "installCommand": d.install_command} for d in missing
        ],
    }


async def attempt_install(dependency: Dependency, timeout: float = INSTALL_TIMEOUT) -> bool:
    """Run the platform install command once.

    Returns:
        True if the command exited with status 0
    """
    command = dependency.install_command
    if " or " in command or command.startswith("Please"):
        logger.warning(f"[Deps] No automatic install available for {dependency.name}")
        return False

    logger.info(f"[Deps] Installing {dependency.name}: {command}")
    try:
        process = await asyncio.create_subprocess_shell(command)
    except OSError as e:
        logger.error(f"[Deps] Could not run install command: {e}")
        return False

    try:
        returncode = await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error(f"[Deps] Install of {dependency.name} timed out after {timeout:g}s")
        return False

    if returncode != 0:
        logger.warning(f"[Deps] Install of {dependency.name} exited with code {returncode}")
        return False
    return True


async def resolve_rasterizer(auto_install: bool = False) -> RasterizerDecision:
    """Decide between rendered pages and the native fallback.

    Args:
        auto_install: Try the platform install command when missing

    Returns:
        RasterizerDecision; use_native_fallback is True when the
        rasterizer is still absent after the optional install attempt
    """
    dependency = check("poppler")
    if dependency.installed:
        return RasterizerDecision(dependency=dependency, use_native_fallback=False)

    if not auto_install:
        logger.info("[Deps] pdftoppm not found, using native fallback")
        return RasterizerDecision(dependency=dependency, use_native_fallback=True)

    succeeded = await attempt_install(dependency)
    rechecked = check("poppler")
    if not rechecked.installed:
        logger.warning("[Deps] pdftoppm still not available after install attempt")
    return RasterizerDecision(
        dependency=rechecked,
        use_native_fallback=not rechecked.installed,
        install_attempted=True,
        install_succeeded=succeeded,
    )
