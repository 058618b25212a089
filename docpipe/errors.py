"""Errors raised while running pipeline jobs."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .dependencies import Dependency


class PipelineError(Exception):
    """Base class for job failures."""


class ValidationError(PipelineError):
    """Malformed job request. Raised before any resource is allocated."""


class DependencyMissing(PipelineError):
    def __init__(self, dependency: Dependency):
        self.dependency = dependency
        super().__init__(
            f"{dependency.name} is not installed. Install with: {dependency.install_command}"
        )


class EngineStartupTimeout(PipelineError):
    def __init__(self, kind: str, attempts: int, interval: float, reason: str | None = None):
        self.kind = kind
        self.attempts = attempts
        if reason is None:
            reason = (
                f"did not become ready after {attempts} attempts "
                f"({attempts * interval:.0f}s)"
            )
        super().__init__(f"{kind} engine {reason}")


class WorkerFailure(PipelineError):
    """Worker process exited with a non-zero code."""

    def __init__(self, stage: str, returncode: int | None, stderr: str = ""):
        self.stage = stage
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no error output"
        super().__init__(f"{stage} failed with code {returncode}: {detail}")


class StageTimeout(PipelineError):
    """Stage exceeded its wall-clock budget and was killed."""

    def __init__(self, stage: str, seconds: float):
        self.stage = stage
        self.seconds = seconds
        super().__init__(f"{stage} timed out after {seconds:g} seconds")


class CleanupFailure(PipelineError):
    """Cleanup step failed. Logged only, never reported as the job's error."""
