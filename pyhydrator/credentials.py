import asyncio
import logging
from typing import NamedTuple, Optional

from pyhydrator.exceptions import CredentialsNotConfigured

log = logging.getLogger(__name__)


class Credentials(NamedTuple):
    customer_id: Optional[str]
    client_id: Optional[str]
    client_secret: Optional[str]


class CredentialGate:
    """One-shot barrier released by the first set_credentials() call.

    Later calls overwrite the stored values but the gate stays open; waiters
    that already passed are not affected.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._released = asyncio.Event()
        self._credentials = Credentials(None, None, None)

    @property
    def is_set(self) -> bool:
        return self._released.is_set()

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    def set_credentials(self, customer_id: str, client_id: str, client_secret: str) -> None:
        self._credentials = Credentials(customer_id, client_id, client_secret)
        log.info(f"Credentials set (customer={customer_id}, client={str(client_id)[:10]}..., "
                 f"secret_length={len(client_secret or '')})")
        if not self._released.is_set():
            self._released.set()
            log.debug("Credential gate released - unblocking pending fetches")

    async def wait(self, timeout: Optional[float] = None) -> Credentials:
        if self._released.is_set():
            return self._credentials
        timeout = self.timeout if timeout is None else timeout
        log.debug(f"Waiting up to {timeout}s for credentials...")
        try:
            await asyncio.wait_for(self._released.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            log.error(f"Credentials timeout after {timeout}s")
            raise CredentialsNotConfigured(timeout)
        return self._credentials
