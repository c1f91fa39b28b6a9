"""
Telemetry fetcher - authenticated totals requests against the ingestion API.

    GET {host}/api/v1/telemetry/customers/{customer_id}/{domain}/devices/totals
        ?startTime=...&endTime=...&deep=1
    Authorization: Bearer <token>

The blocking requests call runs in a dedicated thread pool and is raced
against a per-key CancellationToken.  Starting a fetch for a key cancels the
previous token for that key, so a superseded request can never deliver a
stale answer.  The response body may be a bare list of rows or a
``{"data": [...]}`` envelope; rows are normalised into DeviceTotal.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests
from requests import Response

from pyhydrator.auth import IngestionAuth, TokenProvider
from pyhydrator.cache import cache_key, key_domain
from pyhydrator.const import DEFAULT_DATA_API_HOST, TOTALS_PATH
from pyhydrator.credentials import CredentialGate, Credentials
from pyhydrator.exceptions import (AuthError, AuthExpiredError, FetchCancelled, FetchError,
                                   MissingCredentialError)
from pyhydrator.models import DeviceTotal, Period

log = logging.getLogger(__name__)

TokenProviderFactory = Callable[[Credentials], TokenProvider]


class CancellationToken:
    """Abort signal for one outstanding fetch."""

    def __init__(self, key: str):
        self.key = key
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def parse_rows(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return data
    log.debug(f"Unexpected totals payload type: {type(payload)}")
    return []


def normalise_rows(rows: List[Dict[str, Any]], domain: str) -> List[DeviceTotal]:
    items = []
    for row in rows:
        item = DeviceTotal.from_row(row, domain)
        if item is None:
            log.debug(f"Skipping totals row without id: {row!r}")
            continue
        items.append(item)
    return items


class TelemetryFetcher:

    def __init__(self, gate: CredentialGate, host: str = DEFAULT_DATA_API_HOST,
                 token_url: Optional[str] = None, timeout: float = 30.0, pool_maxsize: int = 10,
                 session: Optional[requests.Session] = None,
                 token_provider_factory: Optional[TokenProviderFactory] = None,
                 on_auth_failure: Optional[Callable[[int], None]] = None):
        self.gate = gate
        self.host = host.rstrip("/")
        self.token_url = token_url or f"{self.host}/api/v1/auth"
        self.timeout = timeout
        self.on_auth_failure = on_auth_failure
        self.tokens: Dict[str, CancellationToken] = {}
        self._token_provider_factory = token_provider_factory
        self._providers: Dict[tuple, TokenProvider] = {}
        if session is not None:
            self.session = session
        elif pool_maxsize > 0:
            # Session object for http connection re-use
            self.session = requests.Session()
            # noinspection PyUnresolvedReferences
            adapter = requests.adapters.HTTPAdapter(pool_maxsize=pool_maxsize)
            self.session.mount("https://", adapter)
        else:
            # Disable http persistent connections
            self.session = requests
        self._executor = ThreadPoolExecutor(max_workers=max(4, pool_maxsize),
                                            thread_name_prefix="pyhydrator")

    def close(self):
        self.abort_all("fetcher closed")
        self._executor.shutdown(wait=False)
        if isinstance(self.session, requests.Session):
            self.session.close()

    def token_provider(self, creds: Credentials) -> TokenProvider:
        ident = (creds.client_id, creds.client_secret)
        provider = self._providers.get(ident)
        if provider is None:
            if self._token_provider_factory is not None:
                provider = self._token_provider_factory(creds)
            else:
                provider = IngestionAuth(self.token_url, creds.client_id, creds.client_secret,
                                         timeout=self.timeout)
            self._providers = {ident: provider}
        return provider

    def clear_tokens(self):
        for provider in self._providers.values():
            provider.clear()

    def abort(self, key: str, reason: str = "aborted") -> bool:
        token = self.tokens.pop(key, None)
        if token is None:
            return False
        token.cancel(reason)
        log.debug(f"Fetch aborted: {key} ({reason})")
        return True

    def abort_domain(self, domain: str, reason: str = "aborted") -> int:
        keys = [k for k in self.tokens if key_domain(k) == domain]
        for key in keys:
            self.abort(key, reason)
        return len(keys)

    def abort_all(self, reason: str = "aborted") -> int:
        keys = list(self.tokens.keys())
        for key in keys:
            self.abort(key, reason)
        return len(keys)

    @staticmethod
    def validate(creds: Credentials) -> None:
        for field, value in (("CLIENT_ID", creds.client_id),
                             ("CLIENT_SECRET", creds.client_secret),
                             ("CUSTOMER_ID", creds.customer_id)):
            if not value:
                raise MissingCredentialError(field)

    def totals_url(self, customer_id: str, domain: str) -> str:
        return self.host + TOTALS_PATH.format(customer_id=customer_id, domain=domain)

    async def _race(self, awaitable: Awaitable, ctoken: CancellationToken):
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(ctoken.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        raise FetchCancelled(f"Fetch for {ctoken.key} cancelled: {ctoken.reason}")

    def _get(self, url: str, params: dict, bearer: str) -> Response:
        return self.session.get(url, params=params, headers={"Authorization": f"Bearer {bearer}"},
                                timeout=self.timeout)

    async def fetch_and_enrich(self, domain: str, period: Period,
                               key: Optional[str] = None) -> List[DeviceTotal]:
        key = key or cache_key(domain, period)
        creds = await self.gate.wait()
        self.validate(creds)

        self.abort(key, "superseded")
        ctoken = CancellationToken(key)
        self.tokens[key] = ctoken
        try:
            try:
                bearer = await self._race(self.token_provider(creds).get_token(), ctoken)
            except AuthError as exc:
                raise FetchError(f"Failed to get ingestion token: {exc}", status=401)
            if not bearer:
                raise FetchError("Failed to get ingestion token", status=401)

            url = self.totals_url(creds.customer_id, domain)
            params = {"startTime": period.start_iso, "endTime": period.end_iso, "deep": "1"}
            log.debug(f"Fetching {domain} totals from {url} {params}")
            loop = asyncio.get_running_loop()
            try:
                r = await self._race(loop.run_in_executor(self._executor, self._get, url, params, bearer),
                                     ctoken)
            except requests.exceptions.Timeout:
                raise FetchError(f"Timeout waiting for telemetry API {url}")
            except requests.exceptions.RequestException as exc:
                raise FetchError(f"Unable to connect to telemetry API at {url}: {exc}")

            if r.status_code in (401, 403):
                log.warning(f"{r.status_code} from telemetry API for {domain} - token expired or rejected")
                if self.on_auth_failure is not None:
                    self.on_auth_failure(r.status_code)
                raise AuthExpiredError(f"API error: {r.status_code}", status=r.status_code)
            if not 200 <= r.status_code < 300:
                raise FetchError(f"API error: {r.status_code}", status=r.status_code)
            try:
                payload = r.json()
            except ValueError as exc:
                raise FetchError(f"Invalid JSON from telemetry API: {exc}", status=r.status_code)

            items = normalise_rows(parse_rows(payload), domain)
            log.debug(f"fetch_and_enrich: fetched {len(items)} items for domain {domain}")
            return items
        finally:
            if self.tokens.get(key) is ctoken:
                del self.tokens[key]
