"""
Long-running poll + health sweep loop.
"""

import logging
import signal
import time
from collections.abc import Callable
from typing import Optional

from ..health import HealthMonitor
from ..poller import Poller

logger = logging.getLogger(__name__)

# Wait after an unexpected error in the loop (seconds)
ERROR_BACKOFF_SECONDS = 30


class IntakeDaemon:
    """
    Polls all connections every `poll_interval_minutes` and runs a health
    sweep every `sweep_interval_minutes`.

    SIGINT/SIGTERM request a graceful shutdown: the current poll or sweep
    finishes and the loop exits at the next check, sleeping in one-second
    steps so shutdown is never delayed by a full interval.
    """

    def __init__(
        self,
        poller: Poller,
        monitor: HealthMonitor,
        poll_interval_minutes: int,
        sweep_interval_minutes: int,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.poller = poller
        self.monitor = monitor
        self.poll_interval = poll_interval_minutes * 60
        self.sweep_interval = sweep_interval_minutes * 60
        self._clock = clock
        self._sleep = sleep
        self._shutdown_requested = False
        self._next_poll = 0.0
        self._next_sweep = 0.0

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info("Shutdown requested, finishing current work...")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        self._shutdown_requested = True

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def run_once(self) -> tuple[bool, bool]:
        """
        Run whatever is due. Returns (polled, swept).

        A failing poll does not block the sweep; its error is re-raised once
        the sweep has run.
        """
        now = self._clock()
        polled = swept = False
        poll_error: Optional[Exception] = None

        if now >= self._next_poll:
            try:
                results = self.poller.poll_all()
            except Exception as e:
                poll_error = e
            else:
                failed = sum(1 for r in results if not r.ok)
                logger.info(f"Poll cycle: {len(results)} connections, {failed} failed")
                self._next_poll = now + self.poll_interval
                polled = True

        if now >= self._next_sweep and not self._shutdown_requested:
            self.monitor.sweep()
            self._next_sweep = now + self.sweep_interval
            swept = True

        if poll_error is not None:
            raise poll_error
        return polled, swept

    def run(self, max_cycles: Optional[int] = None) -> None:
        """Loop until shutdown (or `max_cycles` iterations)."""
        cycles = 0
        while not self._shutdown_requested:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in daemon loop: {e}")
                self._sleep(ERROR_BACKOFF_SECONDS)

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            # Sleep until the next due job (interruptible)
            wake_at = min(self._next_poll, self._next_sweep)
            while self._clock() < wake_at and not self._shutdown_requested:
                self._sleep(1)

        logger.info("Daemon shutdown complete")
