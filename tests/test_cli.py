from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from docpipe import dependencies
from docpipe.cli import cli

FAKE_WORKER = Path(__file__).resolve().parent / "fake_worker.py"


@pytest.fixture
def env(tmp_path: Path, monkeypatch, worker_log) -> Path:
    storage = tmp_path / "cli-storage"
    monkeypatch.delenv("DOCPIPE_CONFIG", raising=False)
    monkeypatch.setenv("DOCPIPE_STORAGE_ROOT", str(storage))
    monkeypatch.setenv("DOCPIPE_WORKER_BIN", f"{shlex.quote(sys.executable)} {shlex.quote(str(FAKE_WORKER))}")
    return storage


def test_run_merge(tmp_path: Path, env: Path, pdf_bytes) -> None:
    a = tmp_path / "a.pdf"
    b = tmp_path / "b.pdf"
    a.write_bytes(pdf_bytes([100]))
    b.write_bytes(pdf_bytes([100, 100]))

    result = CliRunner().invoke(cli, ["run", "merge", str(a), str(b)], obj={})

    assert result.exit_code == 0, result.output
    assert "Starting job:" in result.output
    assert "merged.pdf" in result.output
    assert list(env.glob("outputs/*/merged.pdf"))


def test_run_split_as_ndjson(tmp_path: Path, env: Path, pdf_bytes) -> None:
    doc = tmp_path / "doc.pdf"
    doc.write_bytes(pdf_bytes([100, 200, 300]))

    result = CliRunner().invoke(cli, ["run", "split", str(doc), "--page-order", "3,1", "--json"], obj={})

    assert result.exit_code == 0, result.output
    records = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
    assert records[-1]["status"] == "done"
    assert records[-3]["pdfUrl"].endswith("doc-reordered.pdf")


def test_run_rejects_invalid_job(tmp_path: Path, env: Path, pdf_bytes) -> None:
    doc = tmp_path / "doc.pdf"
    doc.write_bytes(pdf_bytes([100]))

    result = CliRunner().invoke(cli, ["run", "split", str(doc), "--page-order", "2"], obj={})

    assert result.exit_code == 2
    assert "out of range" in result.output


def test_run_failure_exits_non_zero(tmp_path: Path, env: Path, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_WORKER_FAIL", "markdown-to-pdf")
    notes = tmp_path / "notes.md"
    notes.write_text("# Notes")

    result = CliRunner().invoke(cli, ["run", "markdown", str(notes)], obj={})

    assert result.exit_code == 1
    assert "markdown-to-pdf boom" in result.output


def test_deps_reports_missing(env: Path, monkeypatch) -> None:
    monkeypatch.setattr(dependencies, "command_exists", lambda command: False)

    result = CliRunner().invoke(cli, ["deps"], obj={})

    assert result.exit_code == 1
    assert "poppler" in result.output


def test_deps_all_installed(env: Path, monkeypatch) -> None:
    monkeypatch.setattr(dependencies, "command_exists", lambda command: True)

    result = CliRunner().invoke(cli, ["deps"], obj={})

    assert result.exit_code == 0
    assert "installed" in result.output
