"""AI-assisted repair of Mermaid source that fails to render."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from PySide6.QtCore import QObject, QRunnable, QThreadPool, Signal, Slot

from askpop.completion import CancelledError, CompletionCall, CompletionClient, CompletionError

log = logging.getLogger(__name__)

FIX_PROMPT_TEMPLATE = (
    "Check the following Mermaid code for syntax errors and fix them. "
    "If the code is already correct, return it unchanged. "
    "Return only the Mermaid code, without any explanation or markdown formatting.\n"
    "\n"
    "Mermaid code:\n"
    "{source}"
)

_FENCE_PATTERN = re.compile(r"\A```[ \t]*([A-Za-z0-9_-]*)[ \t]*\n(.*?)\n?```\Z", re.DOTALL)


def build_fix_prompt(source_text: str) -> str:
    return FIX_PROMPT_TEMPLATE.format(source=source_text)


def clean_fixed_source(text: str) -> str:
    """Trim model output and unwrap one surrounding code fence if present."""
    stripped = (text or "").strip()
    match = _FENCE_PATTERN.match(stripped)
    if match:
        return match.group(2).strip()
    return stripped


class CorrectionState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class CorrectionAttempt:
    attempt_id: int
    source_text: str
    prompt: str
    call: CompletionCall


class CompletionWorkerSignals(QObject):
    """Signals emitted by background completion workers."""

    finished = Signal(int, str, str)


class CompletionWorker(QRunnable):
    """Run one blocking completion request off the UI thread."""

    def __init__(
        self,
        request_id: int,
        client: CompletionClient,
        prompt: str,
        call: CompletionCall,
        history: list[dict[str, str]] | None = None,
    ):
        super().__init__()
        self.request_id = request_id
        self.client = client
        self.prompt = prompt
        self.call = call
        self.history = history
        self.signals = CompletionWorkerSignals()

    def run(self) -> None:
        try:
            text = self.client.complete(self.prompt, call=self.call, history=self.history)
            self.signals.finished.emit(self.request_id, text, "")
        except CancelledError as exc:
            self.signals.finished.emit(self.request_id, "", exc.message)
        except CompletionError as exc:
            self.signals.finished.emit(self.request_id, "", exc.message)
        except Exception as exc:
            log.exception("Completion worker crashed")
            self.signals.finished.emit(self.request_id, "", f"Unexpected error: {exc}")


class CorrectionLoop(QObject):
    """Owns at most one outstanding fix-it request and reports its outcome.

    `succeeded` carries the cleaned replacement source; the caller decides
    when to re-render. Results from cancelled or superseded attempts are
    dropped.
    """

    state_changed = Signal(str)
    succeeded = Signal(str)
    failed = Signal(str)

    def __init__(self, client: CompletionClient, parent: QObject | None = None, pool=None):
        super().__init__(parent)
        self.client = client
        if pool is None:
            pool = QThreadPool(self)
            # An aborted request may still be unwinding while its replacement starts.
            pool.setMaxThreadCount(2)
        self._pool = pool
        self._attempt: CorrectionAttempt | None = None
        self._next_attempt_id = 1
        self._active_workers: set[CompletionWorker] = set()
        self._closed = False

    @property
    def state(self) -> CorrectionState:
        return CorrectionState.RUNNING if self._attempt is not None else CorrectionState.IDLE

    @property
    def current_attempt(self) -> CorrectionAttempt | None:
        return self._attempt

    def request_fix(self, source_text: str, *, replace: bool = False) -> bool:
        """Start a correction; rejected while one is running unless `replace` is set."""
        if self._closed:
            return False
        source = (source_text or "").strip()
        if not source:
            self.failed.emit("Please enter diagram code first")
            return False
        if self._attempt is not None:
            if not replace:
                log.info("Correction already running (attempt %d); request ignored", self._attempt.attempt_id)
                return False
            self._cancel_attempt()

        attempt_id = self._next_attempt_id
        self._next_attempt_id += 1
        prompt = build_fix_prompt(source)
        attempt = CorrectionAttempt(attempt_id, source, prompt, self.client.new_call())
        self._attempt = attempt

        worker = CompletionWorker(attempt_id, self.client, prompt, attempt.call)
        self._active_workers.add(worker)
        worker.signals.finished.connect(self._on_worker_finished)
        log.info("Correction attempt %d started (%d chars)", attempt_id, len(source))
        self.state_changed.emit(CorrectionState.RUNNING.value)
        self._pool.start(worker)
        return True

    def cancel(self) -> bool:
        if self._attempt is None:
            return False
        self._cancel_attempt()
        self.state_changed.emit(CorrectionState.IDLE.value)
        return True

    def shutdown(self) -> None:
        """Cancel any outstanding request and ignore every later result."""
        if self._attempt is not None:
            self._cancel_attempt()
        self._closed = True
        for worker in list(self._active_workers):
            try:
                worker.signals.finished.disconnect(self._on_worker_finished)
            except (RuntimeError, TypeError):
                pass
        self._active_workers.clear()

    def _cancel_attempt(self) -> None:
        attempt = self._attempt
        self._attempt = None
        if attempt is None:
            return
        log.info("Correction attempt %d cancelled", attempt.attempt_id)
        attempt.call.cancel()

    @Slot(int, str, str)
    def _on_worker_finished(self, attempt_id: int, text: str, error_text: str) -> None:
        for worker in list(self._active_workers):
            if worker.request_id == attempt_id:
                self._active_workers.discard(worker)
        if self._closed:
            return
        attempt = self._attempt
        if attempt is None or attempt.attempt_id != attempt_id:
            log.debug("Dropping result of stale correction attempt %d", attempt_id)
            return

        self._attempt = None
        self.state_changed.emit(CorrectionState.IDLE.value)
        if error_text:
            log.warning("Correction attempt %d failed: %s", attempt_id, error_text)
            self.failed.emit(f"AI fix failed: {error_text}")
            return

        fixed = clean_fixed_source(text)
        if not fixed:
            self.failed.emit("AI fix failed: the response was empty")
            return
        log.info("Correction attempt %d succeeded (%d chars)", attempt_id, len(fixed))
        self.succeeded.emit(fixed)
