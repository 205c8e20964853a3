from __future__ import annotations

import unittest
from unittest import mock

import requests
from PySide6.QtCore import QObject, Signal
from PySide6.QtGui import QGuiApplication
from PySide6.QtWidgets import QWidget

from askpop.completion import CompletionClient
from askpop.config import AppConfig
from askpop.renderer import DOCUMENT_TEXT_JS, RenderMode
from askpop.tracking import (
    RENDER_STATUS_ASSUMED,
    RENDER_STATUS_EMPTY,
    RENDER_STATUS_ERROR,
    RENDER_STATUS_SUCCESS,
)
from askpop.window import RendererWindow, WindowState
from fakes import ManualPool


class FakeWindowSurface(QObject):
    """Records renders instead of loading them into WebEngine."""

    render_finished = Signal(int, str, str)

    def __init__(self) -> None:
        super().__init__()
        self.view = QWidget()
        self.render_pending = False
        self.pages: list[str] = []
        self.scripts: list[str] = []
        self.answer = None
        self.closed = False

    def render(self, page_factory, on_finished=None) -> int:
        self.pages.append(page_factory(len(self.pages) + 1))
        return len(self.pages)

    def attach_viewport(self, viewport) -> None:
        pass

    def apply_viewport(self, reset: bool = False) -> None:
        pass

    def evaluate(self, script, callback=None) -> None:
        self.scripts.append(script)
        if callback is not None:
            callback(self.answer)

    def close(self) -> None:
        self.closed = True


def _answer(text: str):
    response = mock.Mock()
    response.status_code = 200
    response.text = ""
    response.json.return_value = {"choices": [{"message": {"content": text}}]}
    return response


class RendererWindowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.config = AppConfig(api_key="k", api_url="https://example.test/v1/chat/completions", model="m")
        self.client = CompletionClient(self.config, session_factory=lambda: self.session)
        self.surface = FakeWindowSurface()

    def _window(self, text: str = "", *, ask_mode: bool = False) -> RendererWindow:
        window = RendererWindow(
            self.config,
            RenderMode.MARKDOWN,
            initial_text=text,
            client=self.client,
            surface=self.surface,
            ask_mode=ask_mode,
        )
        self.addCleanup(window.deleteLater)
        self.addCleanup(window.close)
        return window

    def _export_enabled(self, window: RendererWindow) -> list[bool]:
        return [button.isEnabled() for button in window._export_buttons()]

    def test_empty_input_keeps_exports_disabled(self) -> None:
        window = self._window("")
        window.render_current()
        self.assertIn("Please enter Markdown content", self.surface.pages[-1])
        self.assertIs(window.state, WindowState.RENDERING)

        self.surface.render_finished.emit(1, RENDER_STATUS_EMPTY, "")
        self.assertIs(window.state, WindowState.IDLE)
        self.assertEqual(set(self._export_enabled(window)), {False})

        window.copy_image()
        self.assertEqual(window.statusBar().currentMessage(), "Render the document before exporting")
        self.assertIs(window.state, WindowState.IDLE)

    def test_only_successful_or_assumed_renders_are_exportable(self) -> None:
        window = self._window("# Title")
        cases = (
            (RENDER_STATUS_SUCCESS, True),
            (RENDER_STATUS_ERROR, False),
            (RENDER_STATUS_ASSUMED, True),
        )
        for token, (status, exportable) in enumerate(cases, start=1):
            with self.subTest(status=status):
                window.render_current()
                self.assertEqual(set(self._export_enabled(window)), {False})
                self.surface.render_finished.emit(token, status, "")
                self.assertEqual(set(self._export_enabled(window)), {exportable})

    def test_follow_up_resends_conversation(self) -> None:
        window = self._window(ask_mode=True)
        pool = ManualPool()
        window._ask_pool = pool
        self.session.post.side_effect = [_answer("First answer"), _answer("Second answer")]
        self.assertFalse(window.follow_up_widget.isHidden())

        window.ask("Explain: ", "selected text")
        self.assertIs(window.state, WindowState.ASKING)
        pool.workers.pop().run()
        self.assertEqual(window.editor.toPlainText(), "First answer\n")
        self.assertIs(window.state, WindowState.RENDERING)

        window.follow_up_edit.setText("  Why?  ")
        window.send_follow_up()
        self.assertEqual(window.follow_up_edit.text(), "")
        pool.workers.pop().run()

        messages = self.session.post.call_args.kwargs["json"]["messages"]
        self.assertEqual(
            messages,
            [
                {"role": "user", "content": "Explain: selected text"},
                {"role": "assistant", "content": "First answer"},
                {"role": "user", "content": "Why?"},
            ],
        )
        self.assertEqual(window.editor.toPlainText(), "First answer\n\n---\n\n> Why?\n\nSecond answer\n")
        self.assertEqual(len(window.conversation), 4)

    def test_failed_follow_up_is_kept_for_resend(self) -> None:
        window = self._window(ask_mode=True)
        pool = ManualPool()
        window._ask_pool = pool
        self.session.post.side_effect = [_answer("First answer"), requests.exceptions.ConnectionError("down")]

        window.ask("", "question")
        pool.workers.pop().run()
        window.follow_up_edit.setText("More?")
        window.send_follow_up()
        pool.workers.pop().run()

        self.assertEqual(window.follow_up_edit.text(), "More?")
        self.assertEqual(len(window.conversation), 2)
        self.assertIn("Network connection unavailable", window.statusBar().currentMessage())

    def test_follow_up_row_hidden_outside_ask_mode(self) -> None:
        window = self._window("# Title")
        self.assertTrue(window.follow_up_widget.isHidden())

    def test_copy_text_puts_rendered_text_on_clipboard(self) -> None:
        window = self._window("Hello **world**")
        window.render_current()
        self.surface.render_finished.emit(1, RENDER_STATUS_SUCCESS, "")
        self.surface.answer = "Hello world"

        window.copy_text()

        self.assertEqual(self.surface.scripts[-1], DOCUMENT_TEXT_JS)
        self.assertEqual(QGuiApplication.clipboard().text(), "Hello world")
        self.assertEqual(window.statusBar().currentMessage(), "Text copied")

    def test_copy_text_refused_before_render(self) -> None:
        window = self._window("Hello")
        window.copy_text()
        self.assertEqual(self.surface.scripts, [])
        self.assertEqual(window.statusBar().currentMessage(), "Render the document before copying")


if __name__ == "__main__":
    unittest.main()
