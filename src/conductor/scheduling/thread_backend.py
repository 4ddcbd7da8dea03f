"""Threading-based timing backend for the task scheduler.

The backend only decides WHEN a tick happens; :class:`TaskScheduler`
decides what a tick does. One daemon thread waits on a stop event with
the interval as timeout, so ``stop()`` interrupts the wait immediately::

    while not stop_event.wait(interval):
        tick_count += 1
        tick_callback()

A tick that raises is logged and the loop keeps going.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from conductor.core.logging import get_logger
from conductor.core.timestamps import to_iso8601, utc_now

logger = get_logger(__name__)

TickCallback = Callable[[], Any]


class ThreadSchedulerBackend:
    """Calls a tick callback on a fixed interval from a daemon thread.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(lambda: print("tick"), interval_seconds=5.0)
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, join_timeout: float = 5.0) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 10.0
        self._join_timeout = join_timeout
        self._lock = threading.Lock()

    def start(self, tick_callback: TickCallback, interval_seconds: float = 10.0) -> None:
        if self.is_running:
            logger.warning("scheduler_backend.already_started")
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("scheduler_backend.started", interval_seconds=interval_seconds)
            while not self._stop_event.wait(interval_seconds):
                with self._lock:
                    self._tick_count += 1
                    self._last_tick = utc_now()
                try:
                    tick_callback()
                except Exception:
                    logger.exception("scheduler_backend.tick_failed")
            logger.info("scheduler_backend.stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name="conductor-scheduler")
        self._thread.start()

    def stop(self) -> None:
        """Stop the loop, waiting for a tick in progress to finish."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=self._join_timeout)
        if self._thread.is_alive():
            logger.warning("scheduler_backend.stop_timeout")
        self._thread = None

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.is_running,
            "backend": self.name,
            "tick_count": self._tick_count,
            "last_tick": to_iso8601(self._last_tick),
            "interval_seconds": self._interval,
        }

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count
