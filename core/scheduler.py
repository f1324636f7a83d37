"""
core/scheduler.py -- Cancellable repeating timer for background maintenance.

Both the cache and the security engine own one of these to run their
periodic sweeps. The timer runs its function on a daemon thread every
`interval` seconds until cancel() is called. Waiting on a threading.Event
instead of time.sleep() means cancel() takes effect immediately rather than
after the current interval runs out.

Usage:
    timer = RepeatingTimer(60, cache.purge_expired, name="cache-sweep")
    timer.start()
    ...
    timer.cancel()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger("prodreport.scheduler")


class RepeatingTimer:
    """Run `function` every `interval` seconds on a daemon thread."""

    def __init__(self, interval: float, function: Callable[[], object], name: str = "sweep") -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.function = function
        self.name = name
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the timer thread. Calling start() on a running timer is a no-op."""
        if self.running:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def cancel(self, timeout: float | None = 5.0) -> None:
        """Stop the timer and wait for an in-flight run to finish."""
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        # Event.wait returns True once cancel() sets the flag.
        while not self._stopped.wait(self.interval):
            try:
                self.function()
            except Exception:
                # A failing sweep must not kill the timer thread.
                logger.exception("Scheduled task %s failed", self.name)
