"""Snapshot the rendered scene: visible viewport, a region, or the full content.

Every capture resolves exactly once, either with a real image or, when the
engine cannot produce one in time, with a synthetic text image marked as
degraded.
"""

from __future__ import annotations

import json
import logging
import math
import re
import unicodedata
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from PySide6.QtGui import QColor, QFont, QImage, QPainter

from askpop.renderer import CONTENT_ELEMENT_ID, DIAGRAM_SELECTOR, STAGE_ELEMENT_ID
from askpop.tracking import EXPORTABLE_RENDER_STATUSES, CompleteOnce

log = logging.getLogger(__name__)

LONG_IMAGE_WIDTH = 800
PROVISIONAL_HEIGHT = 1000
MIN_CONTENT_HEIGHT = 400
CONTENT_PADDING = 80
SETTLE_DELAY_MS = 350
LONG_CAPTURE_TIMEOUT_MS = 15000
SHORT_CAPTURE_TIMEOUT_MS = 5000
REGION_MARGIN = 8

FALLBACK_LINE_HEIGHT = 25
FALLBACK_VERTICAL_PADDING = 100
FALLBACK_MIN_HEIGHT = 400
FALLBACK_MAX_HEIGHT = 3000
FALLBACK_MIN_WIDTH = 600
FALLBACK_MAX_WIDTH = 1200
FALLBACK_HORIZONTAL_PADDING = 60
FALLBACK_FONT_PX = 14

_LINE_SPLIT = re.compile(r"\r\n|\r|\n")
_HEADING_SIZES = (("### ", 16), ("## ", 18), ("# ", 20))


class CaptureMode(Enum):
    VIEWPORT = "viewport"
    REGION = "region"
    FULL_CONTENT = "full_content"


@dataclass(frozen=True)
class CaptureRequest:
    mode: CaptureMode
    source_text: str = ""
    selector: str | None = None
    page_factory: Callable[[int], str] | None = None


@dataclass
class CaptureResult:
    image: QImage | None
    degraded: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.image is not None and not self.image.isNull()


@dataclass(frozen=True)
class RegionPlan:
    shift_x: float
    shift_y: float
    clip: tuple[int, int, int, int] | None

    @property
    def needs_reposition(self) -> bool:
        return self.shift_x != 0 or self.shift_y != 0


def _axis_shift(start: float, length: float, extent: float, margin: float) -> float:
    low = margin
    high = extent - margin
    if length >= high - low or start < low:
        return low - start
    if start + length > high:
        return high - (start + length)
    return 0.0


def clip_to_viewport(bbox: tuple[float, float, float, float], viewport_size: tuple[int, int]):
    """Integer rect of `bbox` intersected with the viewport, or None when empty."""
    x, y, width, height = bbox
    view_width, view_height = viewport_size
    left = max(0, int(math.floor(x)))
    top = max(0, int(math.floor(y)))
    right = min(int(view_width), int(math.ceil(x + width)))
    bottom = min(int(view_height), int(math.ceil(y + height)))
    if right <= left or bottom <= top:
        return None
    return left, top, right - left, bottom - top


def plan_region_capture(
    bbox: tuple[float, float, float, float],
    viewport_size: tuple[int, int],
    margin: int = REGION_MARGIN,
) -> RegionPlan:
    """Work out how far to move the content so `bbox` sits inside the margins."""
    x, y, width, height = bbox
    view_width, view_height = viewport_size
    shift_x = _axis_shift(x, width, view_width, margin)
    shift_y = _axis_shift(y, height, view_height, margin)
    clip = clip_to_viewport((x + shift_x, y + shift_y, width, height), viewport_size)
    return RegionPlan(shift_x, shift_y, clip)


def _glyph_width(char: str) -> float:
    if unicodedata.east_asian_width(char) in ("W", "F"):
        return 1.0
    return 0.55


def _line_font_size(line: str) -> tuple[str, int]:
    for prefix, size in _HEADING_SIZES:
        if line.startswith(prefix):
            return line[len(prefix):], size
    return line, FALLBACK_FONT_PX


def fallback_image_size(text: str) -> tuple[int, int]:
    """Estimate (width, height) for the synthetic image of `text`."""
    lines = _LINE_SPLIT.split(text or "")
    height = len(lines) * FALLBACK_LINE_HEIGHT + FALLBACK_VERTICAL_PADDING
    height = max(FALLBACK_MIN_HEIGHT, min(FALLBACK_MAX_HEIGHT, height))

    widest = 0.0
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        body, size = _line_font_size(line)
        widest = max(widest, sum(_glyph_width(char) for char in body) * size)

    suggested = widest + FALLBACK_HORIZONTAL_PADDING
    if widest < 400:
        width = max(FALLBACK_MIN_WIDTH, suggested)
    elif widest > 1000:
        width = FALLBACK_MAX_WIDTH
    else:
        width = min(max(FALLBACK_MIN_WIDTH, suggested * 1.1), FALLBACK_MAX_WIDTH)
    return int(round(width)), int(height)


def render_fallback_image(text: str) -> QImage:
    """Draw the source text onto a white image; used when the engine fails."""
    width, height = fallback_image_size(text)
    image = QImage(width, height, QImage.Format.Format_ARGB32)
    image.fill(QColor("white"))
    painter = QPainter(image)
    try:
        painter.setRenderHint(QPainter.RenderHint.TextAntialiasing, True)
        painter.setPen(QColor("#24292f"))
        left = FALLBACK_HORIZONTAL_PADDING // 2
        baseline = FALLBACK_VERTICAL_PADDING // 2
        for raw in _LINE_SPLIT.split(text or ""):
            if baseline > height - FALLBACK_LINE_HEIGHT // 2:
                break
            body, size = _line_font_size(raw.strip())
            font = QFont()
            font.setPixelSize(size)
            font.setBold(size != FALLBACK_FONT_PX)
            painter.setFont(font)
            painter.drawText(left, baseline, body if size != FALLBACK_FONT_PX else raw.rstrip())
            baseline += FALLBACK_LINE_HEIGHT
    finally:
        painter.end()
    return image


def measure_element_script(selector: str) -> str:
    return f"""
(() => {{
  const node = document.querySelector({json.dumps(selector)});
  if (!node) {{
    return null;
  }}
  const rect = node.getBoundingClientRect();
  return {{ x: rect.left, y: rect.top, width: rect.width, height: rect.height }};
}})();
"""


CONTENT_HEIGHT_JS = f"""
(() => {{
  const svg = document.querySelector({json.dumps(DIAGRAM_SELECTOR)});
  const stage = document.getElementById({json.dumps(STAGE_ELEMENT_ID)});
  if (svg && stage) {{
    const viewBox = svg.viewBox && svg.viewBox.baseVal;
    const box = viewBox && viewBox.width > 0 ? viewBox : svg.getBBox();
    if (box.width > 0 && box.height > 0) {{
      const fit = Math.min(1.0, (stage.clientWidth * 0.94) / box.width);
      return Math.ceil((box.height * fit) / 0.94);
    }}
  }}
  const content = document.getElementById({json.dumps(CONTENT_ELEMENT_ID)});
  return Math.max(
    document.body ? document.body.scrollHeight : 0,
    document.documentElement ? document.documentElement.scrollHeight : 0,
    content ? content.scrollHeight : 0
  );
}})();
"""

REFIT_JS = """
(() => {
  if (typeof window.__askpopFitScene === "function") {
    window.__askpopFitScene();
  }
  return true;
})();
"""


def _parse_bbox(value) -> tuple[float, float, float, float] | None:
    if not isinstance(value, dict):
        return None
    try:
        bbox = tuple(float(value[key]) for key in ("x", "y", "width", "height"))
    except (KeyError, TypeError, ValueError):
        return None
    if not all(math.isfinite(part) for part in bbox) or bbox[2] <= 0 or bbox[3] <= 0:
        return None
    return bbox


def _parse_height(value) -> int | None:
    try:
        height = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(height) or height <= 0:
        return None
    return int(math.ceil(height))


class _CaptureJob:
    def __init__(self, request: CaptureRequest, callback: Callable[[CaptureResult], None]):
        self.request = request
        self.callback = callback
        self.guard: CompleteOnce | None = None
        self.timeout_handle = None
        self.offscreen = None
        self.repositioned = False

    @property
    def done(self) -> bool:
        return self.guard is None or self.guard.fired


class CaptureEngine:
    """Serialises capture requests against one interactive surface.

    `surface_factory(width, height)` builds the throwaway offscreen surface
    used for long images; it is closed on every exit path.
    """

    def __init__(self, surface, scheduler, surface_factory=None, *, settle_delay_ms: int = SETTLE_DELAY_MS):
        self.surface = surface
        self.scheduler = scheduler
        self.surface_factory = surface_factory
        self.settle_delay_ms = settle_delay_ms
        self._queue: deque[_CaptureJob] = deque()
        self._active: _CaptureJob | None = None
        self._closed = False

    @property
    def busy(self) -> bool:
        return self._active is not None

    def capture_viewport(self, callback, source_text: str = "") -> None:
        self.submit(CaptureRequest(CaptureMode.VIEWPORT, source_text=source_text), callback)

    def capture_region(self, callback, selector: str, source_text: str = "") -> None:
        self.submit(CaptureRequest(CaptureMode.REGION, source_text=source_text, selector=selector), callback)

    def capture_full_content(self, callback, page_factory: Callable[[int], str], source_text: str = "") -> None:
        self.submit(
            CaptureRequest(CaptureMode.FULL_CONTENT, source_text=source_text, page_factory=page_factory),
            callback,
        )

    def submit(self, request: CaptureRequest, callback: Callable[[CaptureResult], None]) -> None:
        if self._closed:
            raise RuntimeError("capture engine is closed")
        self._queue.append(_CaptureJob(request, callback))
        self._pump()

    def close(self) -> None:
        """Abandon queued and running captures; their callbacks never fire."""
        self._closed = True
        self._queue.clear()
        job = self._active
        self._active = None
        if job is not None:
            if job.guard is not None:
                job.guard.cancel()
            self._release(job)

    def _pump(self) -> None:
        if self._closed or self._active is not None or not self._queue:
            return
        job = self._queue.popleft()
        self._active = job
        job.guard = CompleteOnce(lambda result, job=job: self._finish(job, result))
        request = job.request

        if request.mode is not CaptureMode.FULL_CONTENT and self.surface.render_pending:
            job.guard.fire(CaptureResult(None, error="render in progress"))
            return

        budget = LONG_CAPTURE_TIMEOUT_MS if request.mode is CaptureMode.FULL_CONTENT else SHORT_CAPTURE_TIMEOUT_MS
        job.timeout_handle = self.scheduler.call_later(
            budget, lambda job=job: self._degrade(job, f"Capture timed out after {budget} ms")
        )
        log.debug("Capture started: %s", request.mode.value)
        try:
            if request.mode is CaptureMode.VIEWPORT:
                self._grab_viewport(job)
            elif request.mode is CaptureMode.REGION:
                self._measure_region(job, first_pass=True)
            else:
                self._start_full_content(job)
        except Exception as exc:
            log.exception("Capture failed to start")
            self._degrade(job, str(exc))

    def _finish(self, job: _CaptureJob, result: CaptureResult) -> None:
        self._release(job)
        if self._active is job:
            self._active = None
        if result.degraded:
            log.warning("Capture degraded to synthetic image: %s", result.error)
        elif result.error:
            log.info("Capture rejected: %s", result.error)
        if not self._closed:
            job.callback(result)
        self._pump()

    def _release(self, job: _CaptureJob) -> None:
        if job.timeout_handle is not None:
            job.timeout_handle.cancel()
            job.timeout_handle = None
        if job.offscreen is not None:
            offscreen = job.offscreen
            job.offscreen = None
            offscreen.close()
        if job.repositioned:
            job.repositioned = False
            self.surface.restore_position()

    def _degrade(self, job: _CaptureJob, reason: str) -> None:
        if job.done:
            return
        image = render_fallback_image(job.request.source_text)
        job.guard.fire(CaptureResult(image, degraded=True, error=reason))

    def _deliver(self, job: _CaptureJob, image: QImage | None, reason: str) -> None:
        if job.done:
            return
        if image is None or image.isNull() or image.width() <= 0 or image.height() <= 0:
            self._degrade(job, reason)
            return
        job.guard.fire(CaptureResult(image))

    # Viewport

    def _grab_viewport(self, job: _CaptureJob) -> None:
        self._deliver(job, self.surface.grab(), "Viewport snapshot was empty")

    # Region

    def _measure_region(self, job: _CaptureJob, first_pass: bool) -> None:
        selector = job.request.selector or DIAGRAM_SELECTOR
        self.surface.evaluate(
            measure_element_script(selector),
            lambda value, job=job: self._on_region_measured(job, value, first_pass),
        )

    def _on_region_measured(self, job: _CaptureJob, value, first_pass: bool) -> None:
        if job.done:
            return
        bbox = _parse_bbox(value)
        if bbox is None:
            log.info("Region not found; capturing the whole viewport")
            self._grab_viewport(job)
            return
        viewport_size = self.surface.viewport_size()
        plan = plan_region_capture(bbox, viewport_size)
        if first_pass and plan.needs_reposition:
            log.debug("Region outside viewport; moving content by (%.1f, %.1f)", plan.shift_x, plan.shift_y)
            job.repositioned = True
            self.surface.reposition(
                plan.shift_x,
                plan.shift_y,
                lambda job=job: self._settle(job, lambda: self._measure_region(job, first_pass=False)),
            )
            return
        # Content that cannot fit is clipped to what is visible.
        clip = clip_to_viewport(bbox, viewport_size)
        if clip is None:
            self._degrade(job, "Region is not visible")
            return
        self._deliver(job, self.surface.grab(clip), "Region snapshot was empty")

    def _settle(self, job: _CaptureJob, then: Callable[[], None]) -> None:
        if job.done:
            return
        self.scheduler.call_later(self.settle_delay_ms, lambda: None if job.done else then())

    # Full content

    def _start_full_content(self, job: _CaptureJob) -> None:
        request = job.request
        if not (request.source_text or "").strip():
            self._degrade(job, "Nothing to capture")
            return
        if self.surface_factory is None or request.page_factory is None:
            self._degrade(job, "Offscreen rendering is unavailable")
            return
        job.offscreen = self.surface_factory(LONG_IMAGE_WIDTH, PROVISIONAL_HEIGHT)
        job.offscreen.render(
            request.page_factory,
            on_finished=lambda status, detail, job=job: self._on_offscreen_rendered(job, status, detail),
        )

    def _on_offscreen_rendered(self, job: _CaptureJob, status: str, detail: str) -> None:
        if job.done or job.offscreen is None:
            return
        if status not in EXPORTABLE_RENDER_STATUSES:
            self._degrade(job, f"Offscreen render ended with {status}: {detail}")
            return
        job.offscreen.evaluate(CONTENT_HEIGHT_JS, lambda value, job=job: self._on_content_measured(job, value))

    def _on_content_measured(self, job: _CaptureJob, value) -> None:
        if job.done or job.offscreen is None:
            return
        measured = _parse_height(value)
        if measured is None:
            log.info("Content height unavailable; keeping provisional height")
            height = PROVISIONAL_HEIGHT
        else:
            height = max(measured, MIN_CONTENT_HEIGHT) + CONTENT_PADDING
        job.offscreen.resize(LONG_IMAGE_WIDTH, height)
        job.offscreen.evaluate(REFIT_JS, lambda _value, job=job: self._settle(job, lambda: self._snapshot_offscreen(job)))

    def _snapshot_offscreen(self, job: _CaptureJob) -> None:
        if job.done or job.offscreen is None:
            return
        self._deliver(job, job.offscreen.grab(), "Offscreen snapshot was empty")
