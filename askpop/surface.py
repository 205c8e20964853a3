"""Qt WebEngine rendering surface with an explicit render-complete channel."""

from __future__ import annotations

import json
import logging
import weakref
from pathlib import Path
from typing import Callable

from PySide6.QtCore import QObject, QRect, QSize, Qt, QTimer, QUrl, Signal, Slot
from PySide6.QtGui import QImage
from PySide6.QtWebChannel import QWebChannel
from PySide6.QtWebEngineCore import QWebEngineSettings
from PySide6.QtWebEngineWidgets import QWebEngineView

from askpop.renderer import BRIDGE_OBJECT_NAME
from askpop.tracking import (
    RENDER_STATUS_ASSUMED,
    RENDER_STATUS_ERROR,
    RenderTracker,
)
from askpop.viewport import ViewportController

log = logging.getLogger(__name__)

RENDER_FALLBACK_MS = 4000
# Generated pages are local content so they may load vendored scripts from disk.
PAGE_BASE_URL = QUrl.fromLocalFile(str(Path(__file__).resolve().parent) + "/")


def configure_view_settings(view: QWebEngineView) -> None:
    """Let locally generated pages pull Mermaid/MathJax from a CDN."""
    settings = view.settings()
    settings.setAttribute(QWebEngineSettings.WebAttribute.LocalContentCanAccessRemoteUrls, True)
    settings.setAttribute(QWebEngineSettings.WebAttribute.LocalContentCanAccessFileUrls, True)
    settings.setAttribute(QWebEngineSettings.WebAttribute.PrintElementBackgrounds, True)


class TimerHandle:
    """Cancellable single-shot timer; the timer is released once it fires."""

    def __init__(self, timer: QTimer):
        self._timer = timer

    @property
    def active(self) -> bool:
        return self._timer is not None

    def cancel(self) -> None:
        if self._timer is None:
            return
        self._timer.stop()
        self.release()

    def release(self) -> None:
        if self._timer is None:
            return
        self._timer.deleteLater()
        self._timer = None


class QtScheduler:
    """Run callbacks on the Qt event loop after a delay."""

    def __init__(self, parent: QObject | None = None):
        self._parent = parent

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        timer = QTimer(self._parent)
        timer.setSingleShot(True)
        handle = TimerHandle(timer)

        def fire() -> None:
            handle.release()
            callback()

        timer.timeout.connect(fire)
        timer.start(max(0, int(delay_ms)))
        return handle


class SurfaceBridge(QObject):
    """Object exposed to page scripts over QWebChannel.

    Holds only a weak reference to its surface so a page callback arriving
    after the window is gone is a no-op.
    """

    def __init__(self, surface: "WebSurface"):
        super().__init__()
        self._surface_ref = weakref.ref(surface)

    def _surface(self) -> "WebSurface | None":
        return self._surface_ref()

    def detach(self) -> None:
        self._surface_ref = lambda: None

    @Slot(int, str, str)
    def renderFinished(self, token: int, status: str, detail: str) -> None:  # noqa: N802
        surface = self._surface()
        if surface is not None:
            surface.complete_render(token, status, detail)

    @Slot(float, float)
    def beginPan(self, x: float, y: float) -> None:  # noqa: N802
        viewport = self._viewport()
        if viewport is not None:
            viewport.begin_pan(x, y)

    @Slot(float, float)
    def updatePan(self, x: float, y: float) -> None:  # noqa: N802
        viewport = self._viewport()
        if viewport is not None:
            viewport.update_pan(x, y)

    @Slot()
    def endPan(self) -> None:  # noqa: N802
        viewport = self._viewport()
        if viewport is not None:
            viewport.end_pan()

    @Slot(float, float, float)
    def wheelZoom(self, delta_y: float, x: float, y: float) -> None:  # noqa: N802
        viewport = self._viewport()
        if viewport is not None:
            viewport.wheel(delta_y, (x, y))

    def _viewport(self) -> ViewportController | None:
        surface = self._surface()
        return surface.viewport if surface is not None else None


class WebSurface(QObject):
    """A QWebEngineView that renders one document at a time and reports completion."""

    render_finished = Signal(int, str, str)

    def __init__(
        self,
        view: QWebEngineView | None = None,
        *,
        scheduler: QtScheduler | None = None,
        owns_view: bool = False,
        parent: QObject | None = None,
    ):
        super().__init__(parent)
        self.view = view if view is not None else QWebEngineView()
        self._owns_view = owns_view or view is None
        self._scheduler = scheduler or QtScheduler(self)
        self.tracker = RenderTracker()
        self.viewport: ViewportController | None = None
        self._fallback_handle: TimerHandle | None = None
        self._on_finished: Callable[[str, str], None] | None = None
        self._closed = False
        self._saved_transform = None
        self._scrolled = [0.0, 0.0]

        configure_view_settings(self.view)
        self._bridge = SurfaceBridge(self)
        self._channel = QWebChannel(self.view.page())
        self._channel.registerObject(BRIDGE_OBJECT_NAME, self._bridge)
        self.view.page().setWebChannel(self._channel)
        self.view.loadFinished.connect(self._on_load_finished)

    @property
    def render_pending(self) -> bool:
        return self.tracker.pending

    @property
    def closed(self) -> bool:
        return self._closed

    def attach_viewport(self, viewport: ViewportController) -> None:
        """Route page pointer input to `viewport` and mirror its transform into the page."""
        self.viewport = viewport
        viewport.add_listener(lambda _transform: self.apply_viewport())

    def apply_viewport(self, reset: bool = False) -> None:
        if self.viewport is None or self._closed:
            return
        script = self.viewport.reset_script() if reset else self.viewport.apply_script()
        self.view.page().runJavaScript(script)

    def render(self, page_factory: Callable[[int], str], on_finished: Callable[[str, str], None] | None = None) -> int:
        """Replace the scene with the page built for a fresh render token."""
        if self._closed:
            raise RuntimeError("surface is closed")
        # Stop the previous document before starting a new one.
        self.view.stop()
        self._cancel_fallback()
        token = self.tracker.begin()
        self._saved_transform = None
        self._scrolled = [0.0, 0.0]
        self._on_finished = on_finished
        html_doc = page_factory(token)
        log.debug("Render %d started (%d bytes of HTML)", token, len(html_doc))
        self.view.setHtml(html_doc, PAGE_BASE_URL)
        self._fallback_handle = self._scheduler.call_later(
            RENDER_FALLBACK_MS,
            lambda expected=token: self.complete_render(
                expected, RENDER_STATUS_ASSUMED, "No completion signal; assuming the scene is ready"
            ),
        )
        return token

    def complete_render(self, token: int, status: str, detail: str = "") -> bool:
        """Accept the first completion for the current token; ignore all others."""
        if self._closed or not self.tracker.complete(token, status, detail):
            return False
        self._cancel_fallback()
        log.info("Render %d finished: %s %s", token, status, detail)
        callback = self._on_finished
        self._on_finished = None
        self.render_finished.emit(token, status, detail)
        if callback is not None:
            callback(status, detail)
        return True

    def _on_load_finished(self, ok: bool) -> None:
        if not ok and self.tracker.pending:
            self.complete_render(self.tracker.current_token, RENDER_STATUS_ERROR, "Page failed to load")

    def _cancel_fallback(self) -> None:
        if self._fallback_handle is not None:
            self._fallback_handle.cancel()
            self._fallback_handle = None

    def evaluate(self, script: str, callback: Callable[[object], None] | None = None) -> None:
        if self._closed:
            return
        if callback is None:
            self.view.page().runJavaScript(script)
            return
        self.view.page().runJavaScript(script, callback)

    def viewport_size(self) -> tuple[int, int]:
        size = self.view.size()
        return size.width(), size.height()

    def resize(self, width: int, height: int) -> None:
        self.view.resize(QSize(int(width), int(height)))

    def reposition(self, shift_x: float, shift_y: float, done: Callable[[], None]) -> None:
        """Move the content on screen by (shift_x, shift_y) and call `done` once applied.

        The first move after a render or restore remembers where the content
        was so `restore_position()` can put it back.
        """
        if self.viewport is not None:
            if self._saved_transform is None:
                self._saved_transform = self.viewport.transform
            self.viewport.pan_by(shift_x, shift_y)
            self.evaluate(self.viewport.apply_script(), lambda _result: done())
            return

        def applied(result: object) -> None:
            if isinstance(result, (list, tuple)) and len(result) == 2:
                self._scrolled[0] += float(result[0] or 0)
                self._scrolled[1] += float(result[1] or 0)
            done()

        script = (
            "(() => { const x = window.scrollX, y = window.scrollY; "
            f"window.scrollBy({json.dumps(-float(shift_x))}, {json.dumps(-float(shift_y))}); "
            "return [window.scrollX - x, window.scrollY - y]; })()"
        )
        self.evaluate(script, applied)

    def restore_position(self) -> None:
        """Undo every `reposition()` since the last restore."""
        saved, self._saved_transform = self._saved_transform, None
        scrolled_x, scrolled_y = self._scrolled
        self._scrolled = [0.0, 0.0]
        if saved is not None and self.viewport is not None:
            self.viewport.restore(saved)
        if scrolled_x or scrolled_y:
            self.evaluate(f"window.scrollBy({json.dumps(-scrolled_x)}, {json.dumps(-scrolled_y)}); true;")

    def grab(self, rect: tuple[int, int, int, int] | None = None) -> QImage:
        if rect is None:
            return self.view.grab().toImage()
        x, y, width, height = rect
        return self.view.grab(QRect(int(x), int(y), int(width), int(height))).toImage()

    def close(self) -> None:
        """Detach the channel, drop pending callbacks and release the view if owned."""
        if self._closed:
            return
        self._closed = True
        self._cancel_fallback()
        self.tracker.invalidate()
        self._on_finished = None
        self._bridge.detach()
        try:
            self.view.loadFinished.disconnect(self._on_load_finished)
        except (RuntimeError, TypeError):
            pass
        self.view.stop()
        if self._owns_view:
            self.view.close()
            self.view.deleteLater()


def create_offscreen_surface(width: int, height: int, parent: QObject | None = None) -> WebSurface:
    """Build a hidden, fixed-size surface for full-content capture."""
    view = QWebEngineView()
    view.setAttribute(Qt.WidgetAttribute.WA_DontShowOnScreen, True)
    view.resize(QSize(int(width), int(height)))
    view.show()
    return WebSurface(view, owns_view=True, parent=parent)
