import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from pyhydrator.models import ProvidePayload, WidgetRegistration

log = logging.getLogger(__name__)

PendingListener = Callable[[Optional[ProvidePayload]], Any]


class WidgetRegistry:
    """
    Registration order of consumer widgets and the queue of callbacks
    waiting for a hydration already under way, one queue per cache key.

    Priority is the 1-based position in registration order across all
    domains; registering the same widget twice keeps the first entry.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._widgets: Dict[str, WidgetRegistration] = {}
        self._pending: Dict[str, List[PendingListener]] = defaultdict(list)

    def __len__(self) -> int:
        return len(self._widgets)

    def register(self, widget_id: str, domain: str) -> WidgetRegistration:
        existing = self._widgets.get(widget_id)
        if existing is not None:
            return existing
        registration = WidgetRegistration(widget_id=widget_id, domain=domain,
                                          registered_at=self.clock(),
                                          priority=len(self._widgets) + 1)
        self._widgets[widget_id] = registration
        log.debug(f"Widget registered: {widget_id} ({domain}) priority {registration.priority}")
        return registration

    def get(self, widget_id: str) -> Optional[WidgetRegistration]:
        return self._widgets.get(widget_id)

    def widgets(self, domain: Optional[str] = None) -> List[WidgetRegistration]:
        """Registrations in priority order, optionally for one domain."""
        return [w for w in self._widgets.values() if domain is None or w.domain == domain]

    def add_pending(self, key: str, listener: PendingListener) -> int:
        """Queue listener until the hydration of cache key ``key`` settles."""
        self._pending[key].append(listener)
        log.debug(f"Pending listener queued for {key} ({len(self._pending[key])} waiting)")
        return len(self._pending[key])

    def pending_count(self, key: Optional[str] = None) -> int:
        if key is not None:
            return len(self._pending.get(key, []))
        return sum(len(q) for q in self._pending.values())

    def flush_pending(self, key: str, payload: Optional[ProvidePayload]) -> int:
        """Invoke and clear every listener queued for key.

        payload is None when the cycle produced nothing to show.
        """
        listeners = self._pending.pop(key, [])
        for listener in listeners:
            try:
                listener(payload)
            except Exception as exc:
                log.error(f"Pending listener for {key} failed: {exc}")
        if listeners:
            version = f"v{payload.version}" if payload is not None else "no data"
            log.debug(f"Delivered {key} ({version}) to {len(listeners)} pending listeners")
        return len(listeners)

    def clear(self) -> int:
        """Forget every widget; queued listeners are answered with None."""
        released = 0
        for key in list(self._pending):
            released += self.flush_pending(key, None)
        self._widgets.clear()
        self._pending.clear()
        return released
