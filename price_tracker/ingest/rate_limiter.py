"""Dispatch pacing for vendor-facing worker pools."""

import asyncio
import logging
import random
import time

logger = logging.getLogger(__name__)


class DispatchPacer:
    """
    Enforces a minimum interval between consecutive dispatches.

    Only the start of each unit is gated; how long a unit runs afterwards is
    not constrained. Callers are released one at a time in arrival order.
    """

    def __init__(self, min_interval: float, jitter: float = 0.0):
        """
        Args:
            min_interval: Minimum seconds between two dispatches
            jitter: Extra random delay in seconds (0..jitter) added to each interval
        """
        self.min_interval = max(0.0, min_interval)
        self.jitter = max(0.0, jitter)
        self._lock = asyncio.Lock()
        self._last_dispatch: float | None = None

    async def acquire(self) -> float:
        """
        Wait until the next dispatch slot.

        Returns:
            Seconds actually waited
        """
        if self.min_interval <= 0 and self.jitter <= 0:
            return 0.0

        async with self._lock:
            now = time.monotonic()
            waited = 0.0

            if self._last_dispatch is not None:
                interval = self.min_interval
                if self.jitter > 0:
                    interval += random.uniform(0, self.jitter)

                elapsed = now - self._last_dispatch
                waited = max(0.0, interval - elapsed)
                if waited > 0:
                    await asyncio.sleep(waited)

            self._last_dispatch = time.monotonic()
            return waited

    def reset(self) -> None:
        """Forget the last dispatch so the next caller starts immediately."""
        self._last_dispatch = None
