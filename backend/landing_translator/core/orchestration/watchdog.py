"""Advisory stall watchdog for long-running batches."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class StallWatchdog:
    """Flips ``stalled`` if not disarmed within ``timeout`` seconds.

    Never cancels anything; it only lets the operator know a batch is
    taking unusually long. ``sleep`` and ``clock`` are injectable so tests
    can drive it without waiting.
    """

    def __init__(
        self,
        timeout: float,
        on_stall: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.on_stall = on_stall
        self._sleep = sleep
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._armed_at: Optional[float] = None
        self.stalled = False

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self) -> None:
        """Start the timer; re-arming restarts it."""
        self.disarm()
        self.stalled = False
        self._armed_at = self._clock()
        self._task = asyncio.create_task(self._watch())

    def disarm(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def elapsed(self) -> float:
        """Seconds since the watchdog was armed."""
        if self._armed_at is None:
            return 0.0
        return max(0.0, self._clock() - self._armed_at)

    async def _watch(self) -> None:
        await self._sleep(self.timeout)
        self.stalled = True
        logger.warning(f"[Batch] Still running after {self.elapsed():.0f}s, marked as stalled")
        if self.on_stall is not None:
            try:
                self.on_stall()
            except Exception as e:
                logger.warning(f"[Batch] Stall callback failed: {e}")
