"""Pan/zoom state for the diagram preview.

The transform is applied as a CSS overlay on the scene element, so the
rendered SVG keeps its own coordinate system and nothing has to be laid out
again while the user drags or zooms.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable

MIN_SCALE = 0.1
MAX_SCALE = 5.0
ZOOM_STEP = 1.2
WHEEL_ZOOM_STEP = 1.1
SCENE_ELEMENT_ID = "askpop-scene"


def clamp_scale(value: float) -> float:
    if not math.isfinite(value):
        return 1.0
    return max(MIN_SCALE, min(MAX_SCALE, value))


class PanState(Enum):
    IDLE = "idle"
    PANNING = "panning"


@dataclass(frozen=True)
class ViewportTransform:
    offset_x: float = 0.0
    offset_y: float = 0.0
    scale: float = 1.0

    @property
    def is_identity(self) -> bool:
        return self.offset_x == 0.0 and self.offset_y == 0.0 and self.scale == 1.0

    def css(self) -> str:
        return f"translate({self.offset_x:.2f}px, {self.offset_y:.2f}px) scale({self.scale:.4f})"


IDENTITY = ViewportTransform()


class ViewportController:
    """Translate drag, wheel and button input into a bounded view transform."""

    def __init__(self) -> None:
        self._transform = IDENTITY
        self._state = PanState.IDLE
        self._last_pointer: tuple[float, float] | None = None
        self._listeners: list[Callable[[ViewportTransform], None]] = []

    @property
    def transform(self) -> ViewportTransform:
        return self._transform

    @property
    def state(self) -> PanState:
        return self._state

    def add_listener(self, callback: Callable[[ViewportTransform], None]) -> None:
        self._listeners.append(callback)

    def clear_listeners(self) -> None:
        self._listeners.clear()

    def _set(self, transform: ViewportTransform) -> None:
        if transform == self._transform:
            return
        self._transform = transform
        for callback in list(self._listeners):
            callback(transform)

    # Panning

    def begin_pan(self, x: float, y: float) -> None:
        self._state = PanState.PANNING
        self._last_pointer = (x, y)

    def update_pan(self, x: float, y: float) -> None:
        """Accumulate pointer movement; ignored unless a drag is in progress."""
        if self._state is not PanState.PANNING or self._last_pointer is None:
            return
        last_x, last_y = self._last_pointer
        self._last_pointer = (x, y)
        self.pan_by(x - last_x, y - last_y)

    def end_pan(self) -> None:
        self._state = PanState.IDLE
        self._last_pointer = None

    def pan_by(self, dx: float, dy: float) -> None:
        if not (math.isfinite(dx) and math.isfinite(dy)):
            return
        current = self._transform
        self._set(ViewportTransform(current.offset_x + dx, current.offset_y + dy, current.scale))

    # Zooming

    def zoom_in(self) -> None:
        self.zoom_by(ZOOM_STEP)

    def zoom_out(self) -> None:
        self.zoom_by(1.0 / ZOOM_STEP)

    def zoom_by(self, factor: float, anchor: tuple[float, float] | None = None) -> None:
        """Scale by `factor`, keeping `anchor` (view coordinates) stationary."""
        if not math.isfinite(factor) or factor <= 0:
            return
        current = self._transform
        new_scale = clamp_scale(current.scale * factor)
        if anchor is None:
            self._set(ViewportTransform(current.offset_x, current.offset_y, new_scale))
            return
        ratio = new_scale / current.scale
        ax, ay = anchor
        self._set(
            ViewportTransform(
                ax - (ax - current.offset_x) * ratio,
                ay - (ay - current.offset_y) * ratio,
                new_scale,
            )
        )

    def wheel(self, delta_y: float, anchor: tuple[float, float] | None = None) -> None:
        """Map one wheel event to a continuous zoom step."""
        if delta_y == 0:
            return
        notches = max(-5.0, min(5.0, -delta_y / 120.0))
        self.zoom_by(WHEEL_ZOOM_STEP ** notches, anchor)

    def reset(self) -> None:
        self._state = PanState.IDLE
        self._last_pointer = None
        self._set(IDENTITY)

    def reset_for_new_render(self) -> None:
        self.reset()

    def restore(self, transform: ViewportTransform) -> None:
        """Put back a transform saved earlier, clamping its scale."""
        if not (math.isfinite(transform.offset_x) and math.isfinite(transform.offset_y)):
            return
        self._set(ViewportTransform(transform.offset_x, transform.offset_y, clamp_scale(transform.scale)))

    # Page scripts

    def apply_script(self) -> str:
        css = json.dumps(self._transform.css())
        element_id = json.dumps(SCENE_ELEMENT_ID)
        return f"""
(() => {{
  const scene = document.getElementById({element_id});
  if (!scene) {{
    return false;
  }}
  scene.style.transformOrigin = "0 0";
  scene.style.transform = {css};
  return true;
}})();
"""

    def reset_script(self) -> str:
        return (
            self.apply_script()
            + """
(() => {
  if (typeof window.__askpopFitScene === "function") {
    window.__askpopFitScene();
  }
})();
"""
        )
