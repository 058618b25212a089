from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from docpipe.history import (
    add_entry,
    clear_history,
    delete_entry,
    existing_files,
    file_url,
    load_history,
    storage_path,
)


def _output(settings, name: str) -> str:
    path = settings.outputs_dir / "job1" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x")
    return file_url(f"outputs/job1/{name}")


def test_add_entry_prepends_and_caps(settings) -> None:
    settings = replace(settings, history_limit=3)
    url = _output(settings, "a.pdf")

    for index in range(5):
        add_entry(settings, {"mode": "merge", "pdfUrl": url, "n": index})

    history = load_history(settings)
    assert [item["n"] for item in history] == [4, 3, 2]
    assert all("id" in item and "timestamp" in item for item in history)


def test_load_drops_missing_files(settings) -> None:
    pdf = _output(settings, "kept.pdf")
    image = _output(settings, "page-1.png")
    add_entry(settings, {"mode": "ocr", "pdfUrl": pdf, "markdownUrl": file_url("outputs/job1/gone.md")})
    add_entry(settings, {"mode": "pdf-to-images", "images": [image, file_url("outputs/job1/page-2.png")]})
    add_entry(settings, {"mode": "merge", "pdfUrl": file_url("outputs/job1/gone.pdf")})

    history = load_history(settings)

    assert [item["mode"] for item in history] == ["pdf-to-images", "ocr"]
    assert history[0]["images"] == [image]
    assert history[0]["imageCount"] == 1
    assert "markdownUrl" not in history[1]
    # The pruned list is written back
    assert len(load_history(settings)) == 2


def test_delete_and_clear(settings) -> None:
    url = _output(settings, "a.pdf")
    first = add_entry(settings, {"mode": "merge", "pdfUrl": url})
    add_entry(settings, {"mode": "split", "pdfUrl": url})

    assert delete_entry(settings, first["id"]) is True
    assert delete_entry(settings, "missing") is False
    assert [item["mode"] for item in load_history(settings)] == ["split"]

    clear_history(settings)
    assert load_history(settings) == []


def test_storage_path_rejects_traversal(settings) -> None:
    settings.storage_root.mkdir(parents=True)

    assert storage_path(settings, "../secret.txt") is None
    assert storage_path(settings, "outputs/../../secret.txt") is None
    assert storage_path(settings, "") is None
    assert storage_path(settings, "outputs/a.pdf") == settings.storage_root.resolve() / "outputs" / "a.pdf"


def test_existing_files(settings) -> None:
    url = _output(settings, "a.pdf")

    assert existing_files(settings, [url, file_url("outputs/job1/b.pdf"), "outputs/job1/a.pdf"]) == [
        url,
        "outputs/job1/a.pdf",
    ]


def test_empty_history_when_file_absent(settings) -> None:
    assert load_history(settings) == []
    assert not Path(settings.outputs_dir / ".history.json").exists()
