"""
Deadline - one timer per hydration cycle with a single "exceeded" event.

Both safety nets subscribe to a Deadline instead of keeping timers of their
own: the busy indicator arms one for the global busy timeout, the watchdog
arms one per domain.

    deadline = Deadline(25, name="busy:energy")
    deadline.on_exceeded(lambda d: recover(d.name, d.elapsed))
    deadline.arm()
    ...
    deadline.cancel()       # cycle finished in time
"""
import asyncio
import logging
import time
from typing import Callable, List, Optional

log = logging.getLogger(__name__)


class Deadline:

    def __init__(self, timeout: float, name: str = "deadline",
                 clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self.name = name
        self.clock = clock
        self.started_at: Optional[float] = None
        self.exceeded = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._callbacks: List[Callable[["Deadline"], None]] = []

    def on_exceeded(self, callback: Callable[["Deadline"], None]) -> "Deadline":
        self._callbacks.append(callback)
        return self

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self.clock() - self.started_at

    @property
    def remaining(self) -> float:
        return max(0.0, self.timeout - self.elapsed)

    def arm(self) -> "Deadline":
        """Start (or restart) the countdown."""
        self.cancel()
        self.exceeded = False
        self.started_at = self.clock()
        self._handle = asyncio.get_running_loop().call_later(self.timeout, self._fire)
        return self

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def _fire(self):
        self._handle = None
        self.exceeded = True
        log.warning(f"Deadline {self.name} exceeded after {self.elapsed:.1f}s")
        for callback in list(self._callbacks):
            try:
                callback(self)
            except Exception as exc:
                log.error(f"Deadline {self.name} callback failed: {exc}")
