"""Writing captured images, HTML snapshots and PDFs to disk."""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path

from pypdf import PageObject, PdfReader, PdfWriter, Transformation
from PySide6.QtCore import QObject, QRunnable, Signal
from PySide6.QtGui import QImage
from reportlab.pdfgen import canvas

log = logging.getLogger(__name__)

IMAGE_FORMATS = {".png": "PNG", ".jpg": "JPEG", ".jpeg": "JPEG"}
IMAGE_FILE_FILTER = "PNG image (*.png);;JPEG image (*.jpg *.jpeg)"
HTML_FILE_FILTER = "HTML document (*.html *.htm)"
PDF_FILE_FILTER = "PDF document (*.pdf)"

FOOTER_FONT = "Helvetica"
FOOTER_FONT_SIZE = 9.0
FOOTER_BAND_HEIGHT = 36.0


def normalize_image_path(path: str | Path) -> tuple[Path, str]:
    """Return the target path and Qt image format, defaulting to PNG."""
    target = Path(path)
    image_format = IMAGE_FORMATS.get(target.suffix.lower())
    if image_format is None:
        target = target.with_name(target.name + ".png")
        image_format = "PNG"
    return target, image_format


def save_image(image: QImage, path: str | Path) -> Path:
    if image is None or image.isNull():
        raise ValueError("No image to save")
    target, image_format = normalize_image_path(path)
    if not image.save(str(target), image_format):
        raise OSError(f"Could not write image to {target}")
    log.info("Saved %dx%d image to %s", image.width(), image.height(), target)
    return target


def save_html(html_text: str, path: str | Path) -> Path:
    if not html_text:
        raise ValueError("No document to save")
    target = Path(path)
    if target.suffix.lower() not in (".html", ".htm"):
        target = target.with_name(target.name + ".html")
    target.write_text(html_text, encoding="utf-8")
    log.info("Saved HTML snapshot to %s", target)
    return target


def stamp_pdf_page_numbers(pdf_bytes: bytes) -> bytes:
    """Shrink each page into a content box and add a centered `N of M` footer."""
    if not pdf_bytes:
        raise ValueError("Empty PDF payload")

    reader = PdfReader(BytesIO(pdf_bytes))
    page_total = len(reader.pages)
    if page_total <= 0:
        raise RuntimeError("Generated PDF has no pages")

    writer = PdfWriter()
    for page_number, page in enumerate(reader.pages, start=1):
        width = float(page.mediabox.width)
        height = float(page.mediabox.height)
        if width <= 0 or height <= 0:
            writer.add_page(page)
            continue

        # Keep the printed content clear of the footer band.
        scale = min(1.0, max(0.5, (height - FOOTER_BAND_HEIGHT) / height))
        offset_x = (width - width * scale) / 2.0
        composed = PageObject.create_blank_page(width=width, height=height)
        composed.merge_transformed_page(
            page,
            Transformation().scale(scale, scale).translate(offset_x, FOOTER_BAND_HEIGHT),
            over=True,
        )

        overlay_buffer = BytesIO()
        footer = canvas.Canvas(overlay_buffer, pagesize=(width, height))
        footer.setFont(FOOTER_FONT, FOOTER_FONT_SIZE)
        label = f"{page_number} of {page_total}"
        label_width = footer.stringWidth(label, FOOTER_FONT, FOOTER_FONT_SIZE)
        footer.drawString(max(0.0, (width - label_width) / 2.0), (FOOTER_BAND_HEIGHT - FOOTER_FONT_SIZE) / 2.0, label)
        footer.save()

        overlay_buffer.seek(0)
        overlay = PdfReader(overlay_buffer)
        if overlay.pages:
            composed.merge_page(overlay.pages[0])
        writer.add_page(composed)

    output = BytesIO()
    writer.write(output)
    return output.getvalue()


class PdfExportWorkerSignals(QObject):
    """Signals emitted by background PDF export workers."""

    finished = Signal(str, str)


class PdfExportWorker(QRunnable):
    """Apply footer page numbers and write the exported PDF in the background."""

    def __init__(self, output_path: Path, pdf_bytes: bytes):
        super().__init__()
        self.output_path = output_path
        self.pdf_bytes = pdf_bytes
        self.signals = PdfExportWorkerSignals()

    def run(self) -> None:
        try:
            stamped_pdf = stamp_pdf_page_numbers(self.pdf_bytes)
            self.output_path.write_bytes(stamped_pdf)
            self.signals.finished.emit(str(self.output_path), "")
        except Exception as exc:
            log.exception("PDF export to %s failed", self.output_path)
            self.signals.finished.emit(str(self.output_path), str(exc))
