from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Debouncer(Generic[T]):
    """Coalesce rapid submissions into one callback carrying the latest value.

    Each ``submit`` restarts the quiet period; when it elapses the callback
    runs once with whatever was submitted last. Intermediate values are
    dropped, not queued.
    """

    def __init__(
        self,
        callback: Callable[[T], None],
        delay_seconds: float = 0.25,
        *,
        timer_factory: Callable[[float, Callable[[], None]], threading.Timer] = threading.Timer,
    ):
        self.callback = callback
        self.delay_seconds = delay_seconds
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[T] = None
        self._has_pending = False

    @property
    def pending(self) -> bool:
        return self._has_pending

    def submit(self, value: T) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = value
            self._has_pending = True
            timer = self._timer_factory(self.delay_seconds, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _take(self) -> tuple:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._has_pending:
                return False, None
            value, self._pending, self._has_pending = self._pending, None, False
            return True, value

    def _fire(self) -> None:
        ready, value = self._take()
        if not ready:
            return
        try:
            self.callback(value)
        except Exception:
            logger.exception("debounced callback failed")

    def flush(self) -> bool:
        """Run the pending callback now; returns False when nothing was pending."""
        ready, value = self._take()
        if ready:
            self.callback(value)
        return ready

    def cancel(self) -> None:
        self._take()


class GenerationCounter:
    """Tags requests so results from superseded requests can be discarded."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def next(self) -> int:
        with self._lock:
            self._current += 1
            return self._current

    def is_current(self, generation: int) -> bool:
        return generation == self._current
