"""Ingestion API token provider (client-credentials grant)."""
import abc
import asyncio
import logging
import time
from typing import Callable, Optional

import requests

from pyhydrator.exceptions import AuthError

log = logging.getLogger(__name__)

RENEW_SKEW = 60  # renew this many seconds before expiry
RETRY_BASE = 0.5
RETRY_MAX_ATTEMPTS = 3


class TokenProvider(abc.ABC):
    """Anything able to hand out a bearer token for the telemetry API."""

    @abc.abstractmethod
    async def get_token(self) -> str:
        raise NotImplementedError

    def clear(self) -> None:
        pass


class StaticTokenProvider(TokenProvider):

    def __init__(self, token: str):
        self.token = token

    async def get_token(self) -> str:
        return self.token


class IngestionAuth(TokenProvider):
    """Caches the access token and renews it shortly before it expires.

    Concurrent callers share a single renewal request.
    """

    def __init__(self, token_url: str, client_id: str, client_secret: str,
                 session: Optional[requests.Session] = None, timeout: float = 30.0,
                 renew_skew: float = RENEW_SKEW, retry_base: float = RETRY_BASE,
                 max_attempts: int = RETRY_MAX_ATTEMPTS,
                 clock: Callable[[], float] = time.time):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.timeout = timeout
        self.renew_skew = renew_skew
        self.retry_base = retry_base
        self.max_attempts = max_attempts
        self.clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._inflight: Optional[asyncio.Future] = None

    @property
    def expires_in(self) -> int:
        return max(0, int(self._expires_at - self.clock()))

    def _about_to_expire(self) -> bool:
        if not self._token:
            return True
        return self.clock() >= self._expires_at - self.renew_skew

    async def get_token(self) -> str:
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)
        if not self._about_to_expire():
            return self._token
        self._inflight = asyncio.ensure_future(self._request_new_token())
        self._inflight.add_done_callback(self._renewal_done)
        return await asyncio.shield(self._inflight)

    def _renewal_done(self, future: asyncio.Future):
        if self._inflight is future:
            self._inflight = None

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0
        self._inflight = None

    def _post(self) -> dict:
        r = self.session.post(self.token_url,
                              json={"client_id": self.client_id, "client_secret": self.client_secret},
                              timeout=self.timeout)
        if r.status_code != 200:
            raise AuthError(f"Auth failed: HTTP {r.status_code} {r.text[:200]}")
        try:
            return r.json()
        except ValueError as exc:
            raise AuthError(f"Auth response is not JSON: {exc}")

    async def _request_new_token(self) -> str:
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            try:
                data = await loop.run_in_executor(None, self._post)
                if not isinstance(data, dict) or not data.get("access_token") or not data.get("expires_in"):
                    raise AuthError("Auth response missing access_token/expires_in")
                self._token = data["access_token"]
                self._expires_at = self.clock() + float(data["expires_in"])
                log.debug(f"New ingestion token obtained - expires in ~{round(float(data['expires_in']) / 60)} min")
                return self._token
            except (AuthError, requests.exceptions.RequestException) as exc:
                attempt += 1
                log.warning(f"Error getting ingestion token (attempt {attempt}/{self.max_attempts}): {exc}")
                if attempt >= self.max_attempts:
                    if isinstance(exc, AuthError):
                        raise
                    raise AuthError(str(exc))
                await asyncio.sleep(self.retry_base * 2 ** (attempt - 1))
