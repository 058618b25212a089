"""
Document Helpers

Stateless PDF and image transformations that run in-process:
page counting, merging, image re-encoding, images to PDF, and native
page rendering used when the poppler rasterizer is not installed.
"""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path

import pypdfium2 as pdfium
from PIL import Image
from pypdf import PdfReader, PdfWriter

logger = logging.getLogger(__name__)

# Target format -> Pillow save parameters
IMAGE_FORMATS: dict[str, str] = {
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "avif": "AVIF",
    "tiff": "TIFF",
}

# A4 in PDF points
A4_WIDTH = 595.28
A4_HEIGHT = 841.89


def count_pages(pdf: bytes | Path) -> int:
    """Number of pages in a PDF given as bytes or a path."""
    source = BytesIO(pdf) if isinstance(pdf, bytes) else str(pdf)
    return len(PdfReader(source).pages)


def merge_pdfs(inputs: list[Path], output: Path) -> int:
    """Concatenate PDFs in order.

    Returns:
        Page count of the merged document
    """
    writer = PdfWriter()
    for path in inputs:
        writer.append(str(path))
    with open(output, "wb") as f:
        writer.write(f)
    page_count = len(writer.pages)
    logger.info(f"[Documents] Merged {len(inputs)} PDFs into {output.name} ({page_count} pages)")
    return page_count


def _fit_to_a4(image: Image.Image) -> Image.Image:
    width, height = image.size
    if width <= A4_WIDTH and height <= A4_HEIGHT:
        return image
    scale = min(A4_WIDTH / width, A4_HEIGHT / height)
    return image.resize((max(1, int(width * scale)), max(1, int(height * scale))))


def images_to_pdf(inputs: list[Path], output: Path) -> int:
    """One page per image, each scaled down to fit A4.

    Images that cannot be decoded are skipped.

    Returns:
        Number of pages written

    Raises:
        ValueError: If no image could be used
    """
    pages: list[Image.Image] = []
    for path in inputs:
        try:
            with Image.open(path) as img:
                pages.append(_fit_to_a4(img.convert("RGB")))
        except Exception as e:
            logger.warning(f"[Documents] Skipping {path.name}: {e}")

    if not pages:
        raise ValueError("Failed to process any images")

    first, rest = pages[0], pages[1:]
    first.save(output, "PDF", save_all=True, append_images=rest, resolution=72.0)
    return len(pages)


def convert_image(source: Path, output: Path, image_format: str, quality: int = 90) -> Path:
    """Re-encode an image into another format."""
    pil_format = IMAGE_FORMATS[image_format]
    with Image.open(source) as img:
        if pil_format == "JPEG":
            img = img.convert("RGB")
            img.save(output, pil_format, quality=quality, optimize=True)
        elif pil_format == "PNG":
            img.save(output, pil_format, compress_level=9)
        elif pil_format == "TIFF":
            img.save(output, pil_format, compression="tiff_lzw")
        else:
            img.save(output, pil_format, quality=quality)
    return output


def render_pdf_pages(pdf_path: Path, output_dir: Path, prefix: str, dpi: int = 150) -> list[Path]:
    """Render every page to PNG with pdfium.

    Returns:
        Paths of the rendered pages, in page order
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    rendered: list[Path] = []
    document = pdfium.PdfDocument(str(pdf_path))
    try:
        for index in range(len(document)):
            page = document[index]
            pil_image = page.render(scale=dpi / 72.0).to_pil()
            target = output_dir / f"{prefix}page-{index + 1:03d}.png"
            pil_image.save(target, format="PNG")
            rendered.append(target)
    finally:
        document.close()
    return rendered
