"""
Minimum display time gate

Keeps the generation-in-progress view up for a floor duration. Only the
success path goes through the gate; failures surface immediately.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class MinimumDisplayGate:
    """Single-shot, cancellable deferral measured from start()."""

    def __init__(self, min_duration: float, clock: Callable[[], float] = time.monotonic):
        self.min_duration = min_duration
        self._clock = clock
        self._started_at: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def started(self) -> bool:
        return self._started_at is not None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def start(self):
        self.cancel()
        self._started_at = self._clock()

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def remaining(self) -> float:
        # Never started means nothing to wait for
        if self._started_at is None:
            return 0.0
        return max(0.0, self.min_duration - self.elapsed())

    def schedule(self, callback: Callable[[], None]) -> bool:
        """
        Run ``callback`` once the floor has passed.

        Returns:
            True if the callback ran immediately, False if it was deferred
        """
        self._cancel_handle()
        remaining = self.remaining()
        self._started_at = None

        if remaining <= 0:
            callback()
            return True

        logger.info(f"⏱️ Holding progress view for another {remaining:.2f}s")
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(remaining, self._fire, callback)
        return False

    def cancel(self):
        self._cancel_handle()
        self._started_at = None

    def _cancel_handle(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, callback: Callable[[], None]):
        self._handle = None
        callback()
