"""
Busy indicator state machine and per-domain watchdog.

    Idle --show()--> Showing --hide()--> Idle
                        |
                        +--deadline--> TimedOut --recovery--> Idle

The busy indicator is process wide.  ``show()`` while already Showing only
re-arms the deadline and overwrites domain and message; ``hide()`` from any
state returns to Idle and is a no-op when already Idle, so every Idle to
Showing transition is matched by exactly one transition back.

The watchdog is a second safety net: one Deadline per hydrating domain whose
expiry logs a diagnostic snapshot and force-hides the indicator.
"""
import logging
import time
from typing import Callable, Dict, List, Optional

from pyhydrator.const import BUSY_MESSAGE
from pyhydrator.deadline import Deadline
from pyhydrator.models import BusyState

log = logging.getLogger(__name__)

IDLE = "idle"
SHOWING = "showing"
TIMED_OUT = "timed_out"


class BusyStateMachine:

    def __init__(self, timeout: float = 25.0,
                 on_timeout: Optional[Callable[[str, float], None]] = None,
                 clock: Callable[[], float] = time.time):
        self.timeout = timeout
        self.on_timeout = on_timeout
        self.clock = clock
        self.state = IDLE
        self.shown = 0
        self.hidden = 0
        self.recoveries = 0
        self._busy = BusyState()
        self._deadline: Optional[Deadline] = None

    @property
    def is_visible(self) -> bool:
        return self._busy.is_visible

    @property
    def current_domain(self) -> Optional[str]:
        return self._busy.current_domain

    def snapshot(self) -> BusyState:
        return self._busy.model_copy()

    def show(self, domain: str, message: str = BUSY_MESSAGE) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
        if self.state != SHOWING:
            self.state = SHOWING
            self.shown += 1
            self._busy.is_visible = True
            self._busy.start_time = self.clock()
            self._busy.request_count += 1
            log.debug(f"Global busy shown for {domain}")
        else:
            log.debug(f"Global busy re-armed for {domain} (was {self._busy.current_domain})")
        self._busy.current_domain = domain
        self._busy.message = message
        self._deadline = Deadline(self.timeout, name=f"busy:{domain}")
        self._deadline.on_exceeded(self._timed_out)
        self._deadline.arm()
        self._busy.timeout_handle = self._deadline

    def hide(self) -> bool:
        """Return to Idle.  True when this call performed the transition."""
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
        self._busy.timeout_handle = None
        if self.state == IDLE:
            return False
        self.state = IDLE
        self.hidden += 1
        self._busy.is_visible = False
        self._busy.current_domain = None
        self._busy.message = None
        self._busy.start_time = None
        log.debug("Global busy hidden")
        return True

    def _timed_out(self, deadline: Deadline):
        if self.state != SHOWING or deadline is not self._deadline:
            return
        domain = self._busy.current_domain
        duration = self.clock() - (self._busy.start_time or self.clock())
        self.state = TIMED_OUT
        self.recoveries += 1
        log.warning(f"BUSY TIMEOUT ({self.timeout:g}s) for domain {domain} - recovering")
        try:
            if self.on_timeout is not None:
                self.on_timeout(domain, duration)
        finally:
            self.hide()

    def destroy(self):
        self.hide()
        self.on_timeout = None


class WatchdogMonitor:
    """Per-domain stuck-hydration detector."""

    def __init__(self, timeout: float = 30.0,
                 on_stuck: Optional[Callable[[str], None]] = None,
                 diagnostics: Optional[Callable[[str], dict]] = None):
        self.timeout = timeout
        self.on_stuck = on_stuck
        self.diagnostics = diagnostics
        self.fired: List[str] = []
        self._deadlines: Dict[str, Deadline] = {}

    @property
    def active(self) -> List[str]:
        return list(self._deadlines.keys())

    def start(self, domain: str) -> None:
        self.stop(domain)
        deadline = Deadline(self.timeout, name=f"watchdog:{domain}")
        deadline.on_exceeded(lambda d, domain=domain: self._stuck(domain, d))
        self._deadlines[domain] = deadline.arm()

    def stop(self, domain: str) -> bool:
        deadline = self._deadlines.pop(domain, None)
        if deadline is None:
            return False
        deadline.cancel()
        return True

    def stop_all(self) -> None:
        for domain in list(self._deadlines):
            self.stop(domain)

    def _stuck(self, domain: str, deadline: Deadline):
        if self._deadlines.get(domain) is not deadline:
            return
        del self._deadlines[domain]
        self.fired.append(domain)
        snapshot = self.diagnostics(domain) if self.diagnostics is not None else {}
        log.warning(f"Watchdog: {domain} still hydrating after {self.timeout:g}s - forcing busy hide. "
                    f"Diagnostics: {snapshot}")
        if self.on_stuck is not None:
            self.on_stuck(domain)
