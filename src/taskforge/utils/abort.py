"""Job-wide cancellation signal wired into subprocesses and agent calls."""

from __future__ import annotations

import threading
from typing import Callable, List


class TaskAbortedError(RuntimeError):
    """Raised when the job-wide abort signal fires mid-task."""

    def __init__(self, message: str = "Task execution aborted.", *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class AbortSignal:
    """Thread-safe abort flag with listeners.

    Subprocess helpers register a callback (usually ``Popen.terminate``) for
    the duration of a call so that :meth:`abort` takes effect within the
    current phase instead of at the next loop boundary.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            listeners = list(self._listeners)
        for listener in listeners:
            listener()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_aborted(self, where: str | None = None) -> None:
        if not self._event.is_set():
            return
        label = f" during {where}" if where else ""
        detail = f": {self.reason}" if self.reason else ""
        raise TaskAbortedError(f"Task execution aborted{label}{detail}", reason=self.reason)

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""

        with self._lock:
            self._listeners.append(callback)
            fire_now = self._event.is_set()
        if fire_now:
            callback()

        def _remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _remove


__all__ = ["AbortSignal", "TaskAbortedError"]
