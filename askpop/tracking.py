"""Single-fire completion guards shared by the renderer and the capture engine."""

from __future__ import annotations

from typing import Callable

RENDER_STATUS_SUCCESS = "success"
RENDER_STATUS_ERROR = "error"
RENDER_STATUS_TIMEOUT = "timeout"
RENDER_STATUS_EMPTY = "empty"
RENDER_STATUS_ASSUMED = "assumed"

# Statuses after which the scene is worth exporting.
EXPORTABLE_RENDER_STATUSES = frozenset({RENDER_STATUS_SUCCESS, RENDER_STATUS_ASSUMED})


class CompleteOnce:
    """Forward the first `fire()` to the callback and swallow the rest.

    Several sources race to finish the same operation (an in-page message, a
    fallback timer, an overall timeout); whichever fires first wins.
    """

    def __init__(self, callback: Callable[..., None]):
        self._callback: Callable[..., None] | None = callback
        self.fired = False

    def fire(self, *args, **kwargs) -> bool:
        if self.fired:
            return False
        self.fired = True
        callback = self._callback
        self._callback = None
        if callback is not None:
            callback(*args, **kwargs)
        return True

    def cancel(self) -> None:
        """Mark as done without invoking the callback."""
        self.fired = True
        self._callback = None


class RenderTracker:
    """Hand out render tokens; only the newest token may complete, and only once."""

    def __init__(self) -> None:
        self._current_token = 0
        self._completed = True
        self.last_status: str | None = None
        self.last_detail = ""

    @property
    def current_token(self) -> int:
        return self._current_token

    @property
    def pending(self) -> bool:
        return not self._completed

    def begin(self) -> int:
        """Start a new render, superseding whatever was in flight."""
        self._current_token += 1
        self._completed = False
        self.last_status = None
        self.last_detail = ""
        return self._current_token

    def complete(self, token: int, status: str, detail: str = "") -> bool:
        """Record completion; False for stale tokens or repeated signals."""
        if token != self._current_token or self._completed:
            return False
        self._completed = True
        self.last_status = status
        self.last_detail = detail
        return True

    def invalidate(self) -> None:
        """Forget the in-flight render without recording a result."""
        self._current_token += 1
        self._completed = True
