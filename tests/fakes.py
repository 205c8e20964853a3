"""Deterministic stand-ins shared by the Qt-facing tests."""

from __future__ import annotations


class _Handle:
    def __init__(self, due: int, callback) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic stand-in for the Qt timer scheduler."""

    def __init__(self) -> None:
        self.now = 0
        self.handles: list[_Handle] = []

    def call_later(self, delay_ms: int, callback) -> _Handle:
        handle = _Handle(self.now + delay_ms, callback)
        self.handles.append(handle)
        return handle

    def advance(self, ms: int) -> None:
        target = self.now + ms
        while True:
            due = [h for h in self.handles if not h.cancelled and h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self.handles.remove(handle)
            self.now = handle.due
            handle.callback()
        self.now = target

    @property
    def live(self) -> list[_Handle]:
        return [h for h in self.handles if not h.cancelled]


class ManualPool:
    """Collects workers instead of running them on threads."""

    def __init__(self) -> None:
        self.workers = []

    def start(self, worker) -> None:
        self.workers.append(worker)
