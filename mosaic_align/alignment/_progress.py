"""Progress reporting and cooperative cancellation.

A :class:`ProgressSignal` is a monotonic ``(completed, total)`` counter plus an
interrupt flag. Workers and orchestrators poll :meth:`ProgressSignal.check_cancelled`
at their yield points.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from tqdm import tqdm

logger = logging.getLogger(__name__)


class AlignmentCancelledError(RuntimeError):
    """Raised when an alignment phase is interrupted or one of its tasks fails."""


@dataclass
class ProgressCallbacks:
    update_progress: Callable[[int, int], None]
    phase_changed: Callable[[str], None]

    @classmethod
    def no_op(cls) -> "ProgressCallbacks":
        return cls(update_progress=lambda _a, _b: None, phase_changed=lambda _p: None)


class ProgressSignal:
    """Thread-safe progress counter with an interrupt flag.

    Copies sent to another process keep the counts but lose the connection to
    the original flag and callbacks.
    """

    def __init__(
        self,
        callbacks: Optional[ProgressCallbacks] = None,
        show_progress_bar: bool = False,
    ):
        self.callbacks = callbacks or ProgressCallbacks.no_op()
        self.show_progress_bar = show_progress_bar
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._bar: Optional[tqdm] = None
        self.completed = 0
        self.total = 0

    def start(self, total: int, phase: str) -> None:
        with self._lock:
            self.completed = 0
            self.total = total
            if self._bar is not None:
                self._bar.close()
            self._bar = tqdm(total=total, desc=phase) if self.show_progress_bar else None
        self.callbacks.phase_changed(phase)
        self.callbacks.update_progress(0, total)

    def advance(self, n: int = 1) -> None:
        with self._lock:
            self.completed += n
            completed, total = self.completed, self.total
            if self._bar is not None:
                self._bar.update(n)
        self.callbacks.update_progress(completed, total)

    def finish(self) -> None:
        with self._lock:
            if self._bar is not None:
                self._bar.close()
                self._bar = None

    def cancel(self) -> None:
        logger.info("Alignment cancellation requested")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise AlignmentCancelledError("Alignment was cancelled")

    def __getstate__(self):
        return {"completed": self.completed, "total": self.total, "cancelled": self.cancelled}

    def __setstate__(self, state) -> None:
        self.__init__()
        self.completed = state["completed"]
        self.total = state["total"]
        if state["cancelled"]:
            self._cancelled.set()
