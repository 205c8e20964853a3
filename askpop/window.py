"""Floating editor/preview window that consumes renderer, capture and correction results."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from PySide6.QtCore import QThreadPool, Qt
from PySide6.QtGui import QFont, QGuiApplication
from PySide6.QtWebEngineWidgets import QWebEngineView
from PySide6.QtWidgets import (
    QFileDialog,
    QHBoxLayout,
    QLineEdit,
    QMainWindow,
    QPlainTextEdit,
    QPushButton,
    QSizePolicy,
    QSplitter,
    QVBoxLayout,
    QWidget,
)

from askpop.capture import CaptureEngine, CaptureResult
from askpop.completion import CompletionClient, Conversation
from askpop.config import AppConfig
from askpop.correction import CompletionWorker, CorrectionLoop, CorrectionState
from askpop.export import (
    HTML_FILE_FILTER,
    IMAGE_FILE_FILTER,
    PDF_FILE_FILTER,
    PdfExportWorker,
    save_html,
    save_image,
)
from askpop.renderer import (
    DIAGRAM_SELECTOR,
    MARKDOWN_EXAMPLE,
    MERMAID_EXAMPLE,
    DOCUMENT_TEXT_JS,
    SERIALIZE_DOCUMENT_JS,
    DocumentRenderer,
    RenderMode,
)
from askpop.surface import QtScheduler, WebSurface, create_offscreen_surface
from askpop.tracking import (
    EXPORTABLE_RENDER_STATUSES,
    RENDER_STATUS_ASSUMED,
    RENDER_STATUS_EMPTY,
    RENDER_STATUS_SUCCESS,
    RENDER_STATUS_TIMEOUT,
)
from askpop.viewport import ViewportController

log = logging.getLogger(__name__)


class WindowState(Enum):
    IDLE = "idle"
    RENDERING = "rendering"
    ASKING = "asking"
    CAPTURING = "capturing"
    EXPORTING = "exporting"


class RendererWindow(QMainWindow):
    TOAST_SHORT_MS = 2500
    TOAST_LONG_MS = 5000

    def __init__(
        self,
        config: AppConfig,
        mode: RenderMode,
        *,
        title: str = "AskPop",
        initial_text: str = "",
        renderer: DocumentRenderer | None = None,
        client: CompletionClient | None = None,
        surface: WebSurface | None = None,
        ask_mode: bool = False,
    ):
        super().__init__()
        self.config = config
        self.render_mode = mode
        self.ask_mode = ask_mode
        self.renderer = renderer or DocumentRenderer()
        self.client = client or CompletionClient(config)
        self.viewport = ViewportController()
        self.scheduler = QtScheduler(self)
        self._state = WindowState.IDLE
        self._exportable = False
        self._ask_pool = QThreadPool(self)
        self._ask_pool.setMaxThreadCount(1)
        self._ask_request_id = 0
        self._pending_question = ""
        self.conversation = Conversation()
        self._active_ask_workers: set[CompletionWorker] = set()
        self._pdf_pool = QThreadPool(self)
        self._pdf_pool.setMaxThreadCount(1)
        self._active_pdf_workers: set[PdfExportWorker] = set()

        self.setWindowTitle(title)
        self.resize(1100, 720)

        self.editor = QPlainTextEdit()
        editor_font = QFont("Menlo")
        editor_font.setStyleHint(QFont.StyleHint.Monospace)
        self.editor.setFont(editor_font)
        self.editor.setPlaceholderText(
            "Mermaid code..." if mode is RenderMode.MERMAID else "Markdown content..."
        )
        self.editor.setPlainText(initial_text)

        if surface is None:
            surface = WebSurface(QWebEngineView(), scheduler=self.scheduler, parent=self)
        self.surface = surface
        self.preview = surface.view
        if mode is RenderMode.MERMAID:
            self.surface.attach_viewport(self.viewport)
        self.surface.render_finished.connect(self._on_render_finished)

        self.capture = CaptureEngine(
            self.surface,
            self.scheduler,
            surface_factory=lambda width, height: create_offscreen_surface(width, height, parent=self),
        )

        self.correction = CorrectionLoop(self.client, self)
        self.correction.state_changed.connect(lambda _state: self._refresh_controls())
        self.correction.succeeded.connect(self._on_correction_succeeded)
        self.correction.failed.connect(self._on_correction_failed)

        self._build_layout()
        self._refresh_controls()
        self.statusBar().showMessage("Ready")

    def _build_layout(self) -> None:
        self.render_btn = QPushButton("Render")
        self.render_btn.clicked.connect(self.render_current)
        self.example_btn = QPushButton("Load example")
        self.example_btn.clicked.connect(self.load_example)
        self.fix_btn = QPushButton("Fix with AI")
        self.fix_btn.clicked.connect(self.request_fix)
        self.zoom_in_btn = QPushButton("+")
        self.zoom_in_btn.setToolTip("Zoom in")
        self.zoom_in_btn.clicked.connect(self.viewport.zoom_in)
        self.zoom_out_btn = QPushButton("-")
        self.zoom_out_btn.setToolTip("Zoom out")
        self.zoom_out_btn.clicked.connect(self.viewport.zoom_out)
        self.zoom_reset_btn = QPushButton("Reset view")
        self.zoom_reset_btn.clicked.connect(self.reset_view)

        self.copy_image_btn = QPushButton("Copy image")
        self.copy_image_btn.clicked.connect(self.copy_image)
        self.save_image_btn = QPushButton("Save image")
        self.save_image_btn.clicked.connect(self.save_image)
        self.copy_long_btn = QPushButton("Copy long image")
        self.copy_long_btn.clicked.connect(self.copy_long_image)
        self.save_long_btn = QPushButton("Save long image")
        self.save_long_btn.clicked.connect(self.save_long_image)
        self.html_btn = QPushButton("Save HTML")
        self.html_btn.clicked.connect(self.save_html)
        self.pdf_btn = QPushButton("PDF")
        self.pdf_btn.setToolTip("Export the preview as a numbered PDF")
        self.pdf_btn.clicked.connect(self.export_pdf)
        self.copy_text_btn = QPushButton("Copy text")
        self.copy_text_btn.setToolTip("Copy the rendered text to the clipboard")
        self.copy_text_btn.clicked.connect(self.copy_text)
        self.copy_text_btn.setVisible(self.render_mode is RenderMode.MARKDOWN)

        diagram_only = [self.fix_btn, self.zoom_in_btn, self.zoom_out_btn, self.zoom_reset_btn]
        for button in diagram_only:
            button.setVisible(self.render_mode is RenderMode.MERMAID)

        top_bar = QHBoxLayout()
        top_bar.setContentsMargins(0, 0, 0, 0)
        for button in (self.render_btn, self.example_btn, *diagram_only):
            top_bar.addWidget(button)
        top_bar.addStretch(1)
        for button in self._export_buttons():
            top_bar.addWidget(button)

        top_bar_widget = QWidget()
        top_bar_widget.setLayout(top_bar)
        top_bar_widget.setSizePolicy(QSizePolicy.Expanding, QSizePolicy.Fixed)

        self.splitter = QSplitter(Qt.Horizontal)
        self.splitter.addWidget(self.editor)
        self.splitter.addWidget(self.preview)
        self.splitter.setChildrenCollapsible(False)
        self.splitter.setStretchFactor(0, 2)
        self.splitter.setStretchFactor(1, 3)

        central = QWidget()
        layout = QVBoxLayout(central)
        layout.addWidget(top_bar_widget)
        layout.addWidget(self.splitter, 1)

        self.follow_up_edit = QLineEdit()
        self.follow_up_edit.setPlaceholderText("Ask a follow-up question...")
        self.follow_up_edit.returnPressed.connect(self.send_follow_up)
        self.send_btn = QPushButton("Send")
        self.send_btn.clicked.connect(self.send_follow_up)
        follow_up_bar = QHBoxLayout()
        follow_up_bar.setContentsMargins(0, 0, 0, 0)
        follow_up_bar.addWidget(self.follow_up_edit, 1)
        follow_up_bar.addWidget(self.send_btn)
        self.follow_up_widget = QWidget()
        self.follow_up_widget.setLayout(follow_up_bar)
        self.follow_up_widget.setVisible(self.ask_mode)
        layout.addWidget(self.follow_up_widget)
        self.setCentralWidget(central)

    # State

    @property
    def state(self) -> WindowState:
        return self._state

    def _set_state(self, state: WindowState) -> None:
        self._state = state
        self._refresh_controls()

    def _refresh_controls(self) -> None:
        idle = self._state is WindowState.IDLE
        exportable = idle and self._exportable
        self.render_btn.setEnabled(self._state in (WindowState.IDLE, WindowState.RENDERING))
        self.example_btn.setEnabled(idle)
        for button in self._export_buttons():
            button.setEnabled(exportable)
        can_ask = self._state in (WindowState.IDLE, WindowState.RENDERING)
        self.follow_up_edit.setEnabled(can_ask)
        self.send_btn.setEnabled(can_ask)

        fixing = self.correction.state is CorrectionState.RUNNING
        self.fix_btn.setText("Fixing..." if fixing else "Fix with AI")
        self.fix_btn.setEnabled(not fixing and self._state in (WindowState.IDLE, WindowState.RENDERING))

    def _export_buttons(self) -> tuple[QPushButton, ...]:
        return (
            self.copy_text_btn,
            self.copy_image_btn,
            self.save_image_btn,
            self.copy_long_btn,
            self.save_long_btn,
            self.html_btn,
            self.pdf_btn,
        )

    def _toast(self, message: str, timeout_ms: int | None = None) -> None:
        self.statusBar().showMessage(message, self.TOAST_SHORT_MS if timeout_ms is None else timeout_ms)

    @staticmethod
    def _truncate_error_text(text: str, max_len: int = 300) -> str:
        normalized = text.replace("\r\n", "\n").replace("\r", "\n").strip()
        if len(normalized) <= max_len:
            return normalized
        return normalized[: max_len - 4] + " ..."

    # Rendering

    def _page_factory(self, text: str):
        return lambda token: self.renderer.build_page(text, self.render_mode, token)

    def render_current(self) -> None:
        text = self.editor.toPlainText()
        self._exportable = False
        self.viewport.reset_for_new_render()
        self.surface.render(self._page_factory(text))
        self._set_state(WindowState.RENDERING)
        self.statusBar().showMessage("Rendering...")

    def _on_render_finished(self, token: int, status: str, detail: str) -> None:
        if self._state is WindowState.RENDERING:
            self._state = WindowState.IDLE
        self._exportable = status in EXPORTABLE_RENDER_STATUSES
        self._refresh_controls()
        if status == RENDER_STATUS_SUCCESS:
            self._toast("Rendered")
        elif status == RENDER_STATUS_ASSUMED:
            self._toast("Rendered (no completion signal from the page)")
        elif status == RENDER_STATUS_EMPTY:
            self.statusBar().clearMessage()
        elif status == RENDER_STATUS_TIMEOUT:
            self._toast(f"Render timed out: {self._truncate_error_text(detail)}", self.TOAST_LONG_MS)
        else:
            self._toast(f"Render failed: {self._truncate_error_text(detail)}", self.TOAST_LONG_MS)

    def load_example(self) -> None:
        self.editor.setPlainText(MERMAID_EXAMPLE if self.render_mode is RenderMode.MERMAID else MARKDOWN_EXAMPLE)
        self.render_current()

    def reset_view(self) -> None:
        self.viewport.reset()
        self.surface.apply_viewport(reset=True)

    # Correction

    def request_fix(self) -> None:
        if self.correction.request_fix(self.editor.toPlainText()):
            self.statusBar().showMessage("Asking AI to fix the diagram...")

    def _on_correction_succeeded(self, fixed_text: str) -> None:
        self.editor.setPlainText(fixed_text)
        self._toast("AI fix applied; press Render to preview", self.TOAST_LONG_MS)

    def _on_correction_failed(self, message: str) -> None:
        self._toast(self._truncate_error_text(message), self.TOAST_LONG_MS)

    # Ask mode

    def ask(self, prompt: str, text: str) -> None:
        """Start a new conversation with `prompt + text` and show the answer as the document."""
        self.conversation.clear()
        self._send_question(prompt + text)

    def send_follow_up(self) -> None:
        """Send the follow-up line with the whole conversation so far."""
        question = self.follow_up_edit.text().strip()
        if not question:
            return
        if self._state not in (WindowState.IDLE, WindowState.RENDERING):
            self._toast("Wait for the current answer first")
            return
        self.follow_up_edit.clear()
        self._send_question(question)

    def _send_question(self, question: str) -> None:
        self._ask_request_id += 1
        request_id = self._ask_request_id
        self._pending_question = question
        worker = CompletionWorker(
            request_id,
            self.client,
            question,
            self.client.new_call(),
            history=self.conversation.history(),
        )
        self._active_ask_workers.add(worker)
        worker.signals.finished.connect(self._on_ask_finished)
        self._set_state(WindowState.ASKING)
        self.statusBar().showMessage(f"Asking {self.config.model}...")
        self._ask_pool.start(worker)

    def _on_ask_finished(self, request_id: int, text: str, error_text: str) -> None:
        for worker in list(self._active_ask_workers):
            if worker.request_id == request_id:
                self._active_ask_workers.discard(worker)
        if request_id != self._ask_request_id:
            return
        question, self._pending_question = self._pending_question, ""
        self._set_state(WindowState.IDLE)
        if error_text:
            if len(self.conversation) and not self.follow_up_edit.text():
                # Give the unanswered follow-up back so it can be resent.
                self.follow_up_edit.setText(question)
            self._toast(f"Request failed: {self._truncate_error_text(error_text)}", self.TOAST_LONG_MS)
            return
        self.conversation.record(question, text)
        self.editor.setPlainText(self.conversation.to_markdown())
        self.render_current()

    def copy_text(self) -> None:
        if self._state is not WindowState.IDLE or not self._exportable:
            self._toast("Render the document before copying")
            return
        self.surface.evaluate(DOCUMENT_TEXT_JS, self._on_text_ready)

    def _on_text_ready(self, text) -> None:
        if not isinstance(text, str) or not text.strip():
            self._toast("Nothing to copy")
            return
        QGuiApplication.clipboard().setText(text)
        self._toast("Text copied")

    # Captures

    def _begin_capture(self) -> bool:
        if self._state is not WindowState.IDLE or not self._exportable:
            self._toast("Render the document before exporting")
            return False
        self._set_state(WindowState.CAPTURING)
        self.statusBar().showMessage("Capturing...")
        return True

    def _capture_visible(self, callback) -> None:
        text = self.editor.toPlainText()
        if self.render_mode is RenderMode.MERMAID:
            self.capture.capture_region(callback, DIAGRAM_SELECTOR, source_text=text)
        else:
            self.capture.capture_viewport(callback, source_text=text)

    def _capture_long(self, callback) -> None:
        text = self.editor.toPlainText()
        self.capture.capture_full_content(callback, self._page_factory(text), source_text=text)

    def _finish_capture(self, result: CaptureResult) -> bool:
        self._set_state(WindowState.IDLE)
        if not result.ok:
            self._toast(f"Capture failed: {result.error or 'no image'}", self.TOAST_LONG_MS)
            return False
        return True

    def _capture_note(self, result: CaptureResult) -> str:
        return " (text fallback, the page could not be captured)" if result.degraded else ""

    def copy_image(self) -> None:
        if self._begin_capture():
            self._capture_visible(self._copy_result)

    def copy_long_image(self) -> None:
        if self._begin_capture():
            self._capture_long(self._copy_result)

    def _copy_result(self, result: CaptureResult) -> None:
        if not self._finish_capture(result):
            return
        QGuiApplication.clipboard().setImage(result.image)
        self._toast(f"Image copied{self._capture_note(result)}", self.TOAST_LONG_MS if result.degraded else None)

    def _ask_save_path(self, caption: str, default_name: str, file_filter: str) -> Path | None:
        path_text, _selected = QFileDialog.getSaveFileName(self, caption, default_name, file_filter)
        return Path(path_text) if path_text else None

    def save_image(self) -> None:
        target = self._ask_save_path("Save image", "askpop.png", IMAGE_FILE_FILTER)
        if target is not None and self._begin_capture():
            self._capture_visible(lambda result, target=target: self._save_result(result, target))

    def save_long_image(self) -> None:
        target = self._ask_save_path("Save long image", "askpop-long.png", IMAGE_FILE_FILTER)
        if target is not None and self._begin_capture():
            self._capture_long(lambda result, target=target: self._save_result(result, target))

    def _save_result(self, result: CaptureResult, target: Path) -> None:
        if not self._finish_capture(result):
            return
        try:
            written = save_image(result.image, target)
        except (OSError, ValueError) as exc:
            self._toast(f"Save failed: {self._truncate_error_text(str(exc))}", self.TOAST_LONG_MS)
            return
        self._toast(f"Saved {written.name}{self._capture_note(result)}", self.TOAST_LONG_MS)

    # Document exports

    def save_html(self) -> None:
        if self._state is not WindowState.IDLE or not self._exportable:
            self._toast("Render the document before exporting")
            return
        target = self._ask_save_path("Save HTML", "askpop.html", HTML_FILE_FILTER)
        if target is None:
            return
        self.surface.evaluate(SERIALIZE_DOCUMENT_JS, lambda html_text, target=target: self._on_html_ready(target, html_text))

    def _on_html_ready(self, target: Path, html_text) -> None:
        try:
            written = save_html(html_text if isinstance(html_text, str) else "", target)
        except (OSError, ValueError) as exc:
            self._toast(f"Save failed: {self._truncate_error_text(str(exc))}", self.TOAST_LONG_MS)
            return
        self._toast(f"Saved {written.name}", self.TOAST_LONG_MS)

    def export_pdf(self) -> None:
        """Print the preview to PDF and stamp page numbers in the background."""
        if self._state is not WindowState.IDLE or not self._exportable:
            self._toast("Render the document before exporting")
            return
        target = self._ask_save_path("Export PDF", "askpop.pdf", PDF_FILE_FILTER)
        if target is None:
            return
        if target.suffix.lower() != ".pdf":
            target = target.with_name(target.name + ".pdf")
        self._set_state(WindowState.EXPORTING)
        self.statusBar().showMessage(f"Rendering PDF snapshot: {target.name}...")
        self.preview.page().printToPdf(lambda pdf_data, target=target: self._on_pdf_render_ready(target, pdf_data))

    def _on_pdf_render_ready(self, output_path: Path, pdf_data) -> None:
        raw_pdf = bytes(pdf_data) if pdf_data is not None else b""
        if not raw_pdf:
            self._set_state(WindowState.IDLE)
            self._toast("PDF export failed: the engine returned an empty PDF", self.TOAST_LONG_MS)
            return
        worker = PdfExportWorker(output_path, raw_pdf)
        self._active_pdf_workers.add(worker)
        worker.signals.finished.connect(
            lambda path_text, error_text, current_worker=worker: self._on_pdf_export_finished(
                current_worker, path_text, error_text
            )
        )
        self._pdf_pool.start(worker)
        self.statusBar().showMessage(f"Writing numbered PDF: {output_path.name}...")

    def _on_pdf_export_finished(self, worker: PdfExportWorker, output_path_text: str, error_text: str) -> None:
        self._active_pdf_workers.discard(worker)
        self._set_state(WindowState.IDLE)
        if error_text:
            self._toast(f"PDF export failed: {self._truncate_error_text(error_text)}", self.TOAST_LONG_MS)
            return
        self._toast(f"Exported PDF: {output_path_text}", self.TOAST_LONG_MS)

    def closeEvent(self, event) -> None:  # noqa: N802
        self.correction.shutdown()
        self.capture.close()
        for worker in list(self._active_ask_workers):
            try:
                worker.signals.finished.disconnect(self._on_ask_finished)
            except (RuntimeError, TypeError):
                pass
            worker.call.cancel()
        self._active_ask_workers.clear()
        self.viewport.clear_listeners()
        self.surface.close()
        super().closeEvent(event)
