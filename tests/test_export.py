from __future__ import annotations

import tempfile
import unittest
from io import BytesIO
from pathlib import Path
from unittest import mock

from pypdf import PdfReader
from PySide6.QtCore import Qt
from PySide6.QtGui import QImage
from reportlab.pdfgen import canvas

from askpop.export import (
    PdfExportWorker,
    normalize_image_path,
    save_html,
    save_image,
    stamp_pdf_page_numbers,
)


def _two_page_pdf() -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(595, 842))
    for label in ("first page", "second page"):
        pdf.drawString(72, 760, label)
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


class StampPdfTests(unittest.TestCase):
    def test_every_page_gets_a_footer(self) -> None:
        stamped = stamp_pdf_page_numbers(_two_page_pdf())
        reader = PdfReader(BytesIO(stamped))
        self.assertEqual(len(reader.pages), 2)
        self.assertIn("1 of 2", reader.pages[0].extract_text())
        self.assertIn("2 of 2", reader.pages[1].extract_text())
        self.assertIn("second page", reader.pages[1].extract_text())

    def test_empty_payload_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            stamp_pdf_page_numbers(b"")

    def test_worker_writes_file_and_reports(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "out.pdf"
            worker = PdfExportWorker(target, _two_page_pdf())
            finished = mock.Mock()
            worker.signals.finished.connect(finished)
            worker.run()
            finished.assert_called_once_with(str(target), "")
            self.assertTrue(target.read_bytes().startswith(b"%PDF"))

    def test_worker_reports_errors(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "out.pdf"
            worker = PdfExportWorker(target, b"not a pdf")
            finished = mock.Mock()
            worker.signals.finished.connect(finished)
            worker.run()
            path_text, error_text = finished.call_args.args
            self.assertEqual(path_text, str(target))
            self.assertTrue(error_text)
            self.assertFalse(target.exists())


class FileExportTests(unittest.TestCase):
    def test_image_format_follows_extension(self) -> None:
        self.assertEqual(normalize_image_path("/tmp/a.JPG"), (Path("/tmp/a.JPG"), "JPEG"))
        self.assertEqual(normalize_image_path("/tmp/a.png"), (Path("/tmp/a.png"), "PNG"))
        self.assertEqual(normalize_image_path("/tmp/diagram"), (Path("/tmp/diagram.png"), "PNG"))

    def test_save_image_writes_png(self) -> None:
        image = QImage(20, 10, QImage.Format.Format_ARGB32)
        image.fill(Qt.GlobalColor.white)
        with tempfile.TemporaryDirectory() as td:
            written = save_image(image, Path(td) / "shot")
            self.assertEqual(written.name, "shot.png")
            self.assertTrue(written.read_bytes().startswith(b"\x89PNG"))

    def test_save_image_rejects_null_image(self) -> None:
        with self.assertRaises(ValueError):
            save_image(QImage(), "/tmp/never.png")

    def test_save_html_adds_extension(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            written = save_html("<!doctype html>\n<p>中文</p>", Path(td) / "page")
            self.assertEqual(written.suffix, ".html")
            self.assertEqual(written.read_text(encoding="utf-8"), "<!doctype html>\n<p>中文</p>")


if __name__ == "__main__":
    unittest.main()
