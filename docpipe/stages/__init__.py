"""
Pipeline Stages

- worker: runs the native worker binary (and pdftoppm / ollama pull)
  as one supervised subprocess per stage
- documents: in-process PDF and image transformations
"""

from .worker import StageSpec, WorkerAdapter, parse_progress_line

__all__ = ["StageSpec", "WorkerAdapter", "parse_progress_line"]
