from __future__ import annotations

import unittest
from unittest import mock

from PySide6.QtCore import QCoreApplication, QEvent, QObject, QTimer, Signal
from PySide6.QtTest import QTest

from askpop.surface import RENDER_FALLBACK_MS, QtScheduler, SurfaceBridge, WebSurface
from askpop.tracking import (
    RENDER_STATUS_ASSUMED,
    RENDER_STATUS_ERROR,
    RENDER_STATUS_SUCCESS,
)
from askpop.viewport import ViewportController
from fakes import ManualScheduler


class FakePage(QObject):
    def __init__(self) -> None:
        super().__init__()
        self.channel = None
        self.scripts: list[str] = []
        self.answer = None

    def setWebChannel(self, channel) -> None:  # noqa: N802
        self.channel = channel

    def runJavaScript(self, script, callback=None) -> None:  # noqa: N802
        self.scripts.append(script)
        if callback is not None:
            callback(self.answer)


class FakeView(QObject):
    """Just enough of QWebEngineView for WebSurface."""

    loadFinished = Signal(bool)

    def __init__(self) -> None:
        super().__init__()
        self._page = FakePage()
        self._settings = mock.Mock()
        self.pages: list[str] = []
        self.stops = 0

    def page(self) -> FakePage:
        return self._page

    def settings(self):
        return self._settings

    def stop(self) -> None:
        self.stops += 1

    def setHtml(self, html_doc, base_url) -> None:  # noqa: N802
        self.pages.append(html_doc)


class WebSurfaceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.view = FakeView()
        self.scheduler = ManualScheduler()
        self.surface = WebSurface(self.view, scheduler=self.scheduler)
        self.finished: list[tuple[int, str, str]] = []
        self.surface.render_finished.connect(lambda token, status, detail: self.finished.append((token, status, detail)))

    def tearDown(self) -> None:
        self.surface.close()

    def test_render_installs_channel_and_loads_page(self) -> None:
        self.assertIsNotNone(self.view.page().channel)
        token = self.surface.render(lambda t: f"<p>{t}</p>")
        self.assertEqual(self.view.pages, [f"<p>{token}</p>"])
        self.assertEqual(self.view.stops, 1)
        self.assertTrue(self.surface.render_pending)

    def test_missing_signal_is_assumed_after_fallback(self) -> None:
        token = self.surface.render(lambda t: "<p></p>")
        self.scheduler.advance(RENDER_FALLBACK_MS - 1)
        self.assertEqual(self.finished, [])

        self.scheduler.advance(1)
        self.assertEqual(len(self.finished), 1)
        self.assertEqual(self.finished[0][:2], (token, RENDER_STATUS_ASSUMED))
        self.assertFalse(self.surface.render_pending)

    def test_page_signal_cancels_fallback(self) -> None:
        callback = mock.Mock()
        token = self.surface.render(lambda t: "<p></p>", callback)
        SurfaceBridge(self.surface).renderFinished(token, RENDER_STATUS_SUCCESS, "")

        self.assertEqual(self.finished, [(token, RENDER_STATUS_SUCCESS, "")])
        self.assertEqual(self.scheduler.live, [])
        self.scheduler.advance(RENDER_FALLBACK_MS)
        self.assertEqual(len(self.finished), 1)
        callback.assert_called_once_with(RENDER_STATUS_SUCCESS, "")

    def test_failed_load_reports_error(self) -> None:
        token = self.surface.render(lambda t: "<p></p>")
        self.view.loadFinished.emit(True)
        self.assertEqual(self.finished, [])

        self.view.loadFinished.emit(False)
        self.assertEqual(self.finished, [(token, RENDER_STATUS_ERROR, "Page failed to load")])
        self.view.loadFinished.emit(False)
        self.assertEqual(len(self.finished), 1)

    def test_superseded_render_signal_is_ignored(self) -> None:
        first = self.surface.render(lambda t: "<p>1</p>")
        second = self.surface.render(lambda t: "<p>2</p>")

        self.assertFalse(self.surface.complete_render(first, RENDER_STATUS_SUCCESS))
        self.assertEqual(self.finished, [])
        self.assertEqual(len(self.scheduler.live), 1)

        self.assertTrue(self.surface.complete_render(second, RENDER_STATUS_SUCCESS))
        self.assertEqual(self.finished, [(second, RENDER_STATUS_SUCCESS, "")])

    def test_signals_after_close_are_ignored(self) -> None:
        bridge = SurfaceBridge(self.surface)
        token = self.surface.render(lambda t: "<p></p>")
        self.surface.close()

        bridge.renderFinished(token, RENDER_STATUS_SUCCESS, "")
        self.assertFalse(self.surface.complete_render(token, RENDER_STATUS_SUCCESS))
        self.view.loadFinished.emit(False)
        self.scheduler.advance(RENDER_FALLBACK_MS)
        self.assertEqual(self.finished, [])
        with self.assertRaises(RuntimeError):
            self.surface.render(lambda t: "")

    def test_restore_position_undoes_viewport_moves(self) -> None:
        viewport = ViewportController()
        self.surface.attach_viewport(viewport)
        viewport.zoom_by(2.0)
        viewport.pan_by(15, 5)
        saved = viewport.transform
        done = mock.Mock()

        self.surface.reposition(-100, -40, done)
        self.surface.reposition(-20, 0, done)
        self.assertEqual(done.call_count, 2)
        self.assertNotEqual(viewport.transform, saved)

        self.surface.restore_position()
        self.assertEqual(viewport.transform, saved)
        self.assertIn("scale(2.0000)", self.view.page().scripts[-1])

    def test_restore_position_scrolls_back_by_applied_amount(self) -> None:
        done = mock.Mock()
        # The page could only scroll part of the way.
        self.view.page().answer = [60, 25]
        self.surface.reposition(-100, -40, done)
        done.assert_called_once_with()

        self.surface.restore_position()
        self.assertEqual(self.view.page().scripts[-1], "window.scrollBy(-60.0, -25.0); true;")

        scripts = len(self.view.page().scripts)
        self.surface.restore_position()
        self.assertEqual(len(self.view.page().scripts), scripts)


class QtSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.parent = QObject()

    def _drain(self) -> None:
        QCoreApplication.sendPostedEvents(None, QEvent.Type.DeferredDelete)

    def test_fired_timer_is_released(self) -> None:
        calls: list[int] = []
        handle = QtScheduler(self.parent).call_later(0, lambda: calls.append(1))
        self.assertTrue(handle.active)

        for _ in range(50):
            if calls:
                break
            QTest.qWait(10)
        self._drain()

        self.assertEqual(calls, [1])
        self.assertFalse(handle.active)
        self.assertEqual(self.parent.findChildren(QTimer), [])
        handle.cancel()

    def test_cancelled_timer_never_fires(self) -> None:
        calls: list[int] = []
        handle = QtScheduler(self.parent).call_later(20, lambda: calls.append(1))
        handle.cancel()
        QTest.qWait(60)
        self._drain()

        self.assertEqual(calls, [])
        self.assertFalse(handle.active)
        self.assertEqual(self.parent.findChildren(QTimer), [])


if __name__ == "__main__":
    unittest.main()
