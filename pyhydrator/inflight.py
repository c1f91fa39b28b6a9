"""In-flight registry: at most one outstanding fetch per cache key."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from pyhydrator.cache import key_domain

log = logging.getLogger(__name__)


class InFlightRegistry:
    """Maps a cache key to the task fetching it.

    ``run(key, factory)`` joins the existing task when there is one and only
    calls ``factory`` otherwise.  The entry is registered before the first
    suspension point and removed when the task settles, whatever the outcome.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def keys(self) -> List[str]:
        return list(self._tasks.keys())

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def domain_busy(self, domain: str) -> bool:
        return any(key_domain(k) == domain for k in self._tasks)

    async def run(self, key: str, factory: Callable[[], Awaitable]):
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda t, k=key: self._settled(k, t))
            log.debug(f"In-flight registered: {key}")
        else:
            log.debug(f"Coalescing request for {key} onto in-flight fetch")
        # callers share the task; cancelling one caller leaves it running
        return await asyncio.shield(task)

    def _settled(self, key: str, task: asyncio.Task):
        if self._tasks.get(key) is task:
            del self._tasks[key]
            log.debug(f"In-flight removed: {key}")
        if not task.cancelled() and task.exception() is not None:
            log.debug(f"In-flight {key} failed: {task.exception()!r}")

    def cancel_all(self):
        for task in list(self._tasks.values()):
            task.cancel()
