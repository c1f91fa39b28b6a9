import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Deque, Optional

from pyhydrator.exceptions import LockTimeout

log = logging.getLogger(__name__)


class HydrationLock:
    """
    Cooperative mutex serialising hydration cycles on one event loop.

    Waiters are queued and woken one at a time in arrival order: ``release()``
    hands ownership directly to the oldest live waiter, so there is no polling
    and a newcomer can never overtake a queued caller.

    Args:
        name (str, optional): Used in log messages. Defaults to "hydration".
    """

    def __init__(self, name: str = "hydration"):
        self.name = name
        self._locked = False
        self._owner: Optional[str] = None
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self, owner: Optional[str] = None, timeout: Optional[float] = None) -> bool:
        """
        Suspend until the lock is ours.

        Raises:
            LockTimeout: if ``timeout`` seconds pass before ownership is handed over.
        """
        if not self._locked and not self.waiting:
            self._locked = True
            self._owner = owner
            return True
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        log.debug(f"{self.name} lock busy (held by {self._owner}) - {owner} queued at {len(self._waiters)}")
        try:
            if timeout is None:
                await fut
            else:
                await asyncio.wait_for(asyncio.shield(fut), timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            if fut.done() and not fut.cancelled():
                # ownership was handed over while we gave up: pass it on
                self._locked = True
                self.release()
            else:
                fut.cancel()
            if isinstance(exc, asyncio.TimeoutError):
                raise LockTimeout(f"Unable to acquire {self.name} lock within {timeout}s")
            raise
        finally:
            try:
                self._waiters.remove(fut)
            except ValueError:
                pass
        self._owner = owner
        return True

    def release(self) -> None:
        if not self._locked:
            raise RuntimeError(f"{self.name} lock released while not held")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # ownership passes straight to the waiter, the flag stays set
                self._owner = None
                waiter.set_result(True)
                return
        self._locked = False
        self._owner = None

    @asynccontextmanager
    async def hold(self, owner: Optional[str] = None, timeout: Optional[float] = None):
        await self.acquire(owner, timeout)
        try:
            yield self
        finally:
            self.release()
