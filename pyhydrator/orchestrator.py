"""
Telemetry hydration orchestrator.

One Orchestrator instance coordinates every consumer of a dashboard: it serves
fresh cache entries without locking, coalesces concurrent requests for a key
into one fetch, runs at most one hydration cycle at a time, publishes results
on the event bus and recovers from stuck cycles.

    orchestrator = Orchestrator(Settings(busy_timeout=25))
    await orchestrator.init()
    orchestrator.set_credentials(customer_id, client_id, client_secret)
    items = await orchestrator.hydrate_domain("energy", {"startISO": ..., "endISO": ...})
    ...
    await orchestrator.destroy()

Consumers that prefer signals publish request-data / update-date /
dashboard-state / widget:register / clear on ``orchestrator.bus`` and listen
for provide-data.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from pyhydrator.auth import TokenProvider
from pyhydrator.bus import ContextTransport, EventBus, EventContext, Transport
from pyhydrator.busy import BusyStateMachine, WatchdogMonitor
from pyhydrator.cache import CacheStore, cache_key, key_domain
from pyhydrator.config import Settings
from pyhydrator.const import (BUSY_MESSAGE, CREDENTIALS_MESSAGE, DEFAULT_DOMAIN,
                              RECOVERY_MESSAGE, SIGNAL_BUSY_TIMEOUT_RECOVERY, SIGNAL_CACHE_HYDRATED,
                              SIGNAL_CLEAR, SIGNAL_DASHBOARD_STATE, SIGNAL_ERROR, SIGNAL_NOTIFICATION,
                              SIGNAL_PROVIDE_DATA, SIGNAL_READY, SIGNAL_REQUEST_DATA, SIGNAL_TOKEN_EXPIRED,
                              SIGNAL_TOKEN_ROTATED, SIGNAL_UPDATE_DATE, SIGNAL_WIDGET_REGISTER)
from pyhydrator.credentials import CredentialGate, Credentials
from pyhydrator.exceptions import ConfigurationError, FetchCancelled, HydratorError, LockTimeout
from pyhydrator.fetcher import TelemetryFetcher
from pyhydrator.inflight import InFlightRegistry
from pyhydrator.lock import HydrationLock
from pyhydrator.metrics import MetricsRecorder
from pyhydrator.models import BusyState, DeviceTotal, Notification, Period, ProvidePayload
from pyhydrator.registry import WidgetRegistry
from pyhydrator.storage import JsonFileStore, KeyValueStore

log = logging.getLogger(__name__)


class Orchestrator:

    def __init__(self, settings: Optional[Settings] = None,
                 token_provider_factory: Optional[Callable[[Credentials], TokenProvider]] = None,
                 session=None,
                 store: Optional[KeyValueStore] = None,
                 transports: Optional[List[Transport]] = None,
                 context: Optional[EventContext] = None,
                 notifier: Optional[Callable[[Notification], Any]] = None,
                 telemetry_sink: Optional[Callable[[dict], Any]] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings or Settings()
        s = self.settings
        self.clock = clock
        self.notifier = notifier
        self.telemetry_sink = telemetry_sink
        if store is None and s.persist:
            store = JsonFileStore(s.persist_path)

        self.gate = CredentialGate(timeout=s.credentials_timeout)
        self.cache = CacheStore(ttl_minutes=s.ttl_minutes, max_size=s.max_cache_size, store=store,
                                namespace=s.customer_id or "default",
                                persist_max_bytes=s.persist_max_bytes, clock=clock)
        self.fetcher = TelemetryFetcher(self.gate, host=s.data_api_host, token_url=s.token_url,
                                        timeout=s.request_timeout, pool_maxsize=s.pool_maxsize,
                                        session=session, token_provider_factory=token_provider_factory,
                                        on_auth_failure=self._auth_failed)
        self.inflight = InFlightRegistry()
        self.lock = HydrationLock()
        self.busy = BusyStateMachine(timeout=s.busy_timeout, on_timeout=self._busy_timed_out, clock=clock)
        self.watchdog = WatchdogMonitor(timeout=s.watchdog_timeout, on_stuck=self._domain_stuck,
                                        diagnostics=self._diagnostics)
        transports = list(transports or [])
        if context is not None:
            transports.append(ContextTransport(context, retry_delay=s.subcontext_retry_delay,
                                               retry_attempts=s.subcontext_retry_attempts))
        self.bus = EventBus(transports=transports, dedup_window=s.emit_dedup_window)
        self.widgets = WidgetRegistry(clock=clock)
        self.metrics = MetricsRecorder(history=s.metrics_history, clock=clock)

        self.tokens: Dict[str, str] = {}
        self.visible_tab: Optional[str] = None
        self.current_period: Optional[Period] = None
        self.running = False
        self._hydrating: Set[str] = set()
        self._token_expired_at: Optional[float] = None
        self._unsubscribe: List[Callable[[], None]] = []
        self._tasks: List[asyncio.Task] = []

    # -- lifecycle -------------------------------------------------------

    async def init(self) -> "Orchestrator":
        if self.running:
            return self
        self.running = True
        if self.cache.store is not None:
            self.cache.load_persisted()
        if self.settings.has_credentials:
            self.set_credentials(self.settings.customer_id, self.settings.client_id,
                                 self.settings.client_secret)
        handlers = {
            SIGNAL_REQUEST_DATA: self._on_request_data,
            SIGNAL_UPDATE_DATE: self._on_update_date,
            SIGNAL_DASHBOARD_STATE: self._on_dashboard_state,
            SIGNAL_WIDGET_REGISTER: self._on_widget_register,
            SIGNAL_CLEAR: self._on_clear,
        }
        for signal, handler in handlers.items():
            self._unsubscribe.append(self.bus.subscribe(signal, handler))
        self._tasks.append(asyncio.ensure_future(self._sweep_loop()))
        if self.telemetry_sink is not None:
            self._tasks.append(asyncio.ensure_future(self._telemetry_loop()))
        log.info(f"Orchestrator ready (ttl={self.settings.ttl_minutes:g}min, "
                 f"max_cache={self.settings.max_cache_size}, domains={self.settings.domain_list})")
        self.bus.publish(SIGNAL_READY, {"timestamp": self.clock()})
        return self

    async def destroy(self) -> None:
        if not self.running:
            return
        self.running = False
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self.fetcher.abort_all("orchestrator destroyed")
        self.inflight.cancel_all()
        self.watchdog.stop_all()
        self.busy.destroy()
        released = self.widgets.clear()
        if released:
            log.debug(f"Answered {released} queued requests with no data")
        self.fetcher.close()
        self.bus.close()
        log.info("Orchestrator destroyed")

    async def __aenter__(self) -> "Orchestrator":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb):
        await self.destroy()

    # -- credentials & tokens --------------------------------------------

    def set_credentials(self, customer_id: str, client_id: str, client_secret: str) -> None:
        self.cache.switch_namespace(customer_id)
        self.gate.set_credentials(customer_id, client_id, client_secret)

    def update_tokens(self, tokens: Dict[str, str]) -> None:
        """Store rotated tokens and drop everything fetched with the old ones."""
        self.tokens.update(tokens or {})
        aborted = self.fetcher.abort_all("tokens rotated")
        self.fetcher.clear_tokens()
        self.cache.invalidate("*")
        self.bus.clear_latest("*")
        self.bus.publish(SIGNAL_TOKEN_ROTATED, {})
        log.info(f"Tokens rotated - aborted {aborted} in-flight fetches")

    def get_token(self, kind: str) -> Optional[str]:
        return self.tokens.get(kind)

    def _auth_failed(self, status: int) -> None:
        now = time.monotonic()
        if self._token_expired_at is not None and \
                now - self._token_expired_at < self.settings.token_expired_debounce:
            log.debug(f"token-expired suppressed (debounce {self.settings.token_expired_debounce:g}s)")
            return
        self._token_expired_at = now
        self.bus.publish(SIGNAL_TOKEN_EXPIRED, {})

    # -- hydration -------------------------------------------------------

    async def hydrate_domain(self, domain: str, period) -> List[DeviceTotal]:
        """
        Return the totals of domain for period, from cache when fresh.

        Concurrent calls for the same key share one fetch.  An empty list
        means "no data yet" (empty answer, non-fetchable domain or a fetch
        cancelled by invalidation).

        Raises:
            ConfigurationError: credentials missing or never supplied.
            FetchError: transport failure or non-2xx answer.
            LockTimeout: the hydration lock stayed held for lock_timeout seconds.
        """
        period = Period.parse(period)
        if period is None:
            raise ValueError(f"No period given for {domain}")
        key = cache_key(domain, period)
        if not self.settings.is_fetchable(domain):
            log.debug(f"{domain} is not served by the totals API - nothing to hydrate")
            return []

        entry = self.cache.read(key)
        if entry is not None:
            self.metrics.record_request(cache_hit=True)
            log.debug(f"Cache hit for {key} ({len(entry.items)} items)")
            self.bus.emit_provide(domain, period.key, entry.items)
            return entry.items

        self.metrics.record_request()
        return await self.inflight.run(key, lambda: self._hydrate(domain, period, key))

    async def _hydrate(self, domain: str, period: Period, key: str) -> List[DeviceTotal]:
        self._hydrating.add(key)
        try:
            try:
                async with self.lock.hold(owner=key, timeout=self.settings.lock_timeout):
                    entry = self.cache.read(key)
                    if entry is not None:
                        log.debug(f"{key} hydrated while waiting for the lock")
                        self.bus.emit_provide(domain, period.key, entry.items)
                        return entry.items
                    return await self._fetch_cycle(domain, period, key)
            except LockTimeout as exc:
                log.warning(f"Hydration of {key} abandoned: {exc}")
                self._report_error(domain, exc)
                raise
        finally:
            self._hydrating.discard(key)
            self.widgets.flush_pending(key, self._result_payload(domain, period.key))

    async def _fetch_cycle(self, domain: str, period: Period, key: str) -> List[DeviceTotal]:
        started = time.monotonic()
        self.busy.show(domain, BUSY_MESSAGE)
        self.watchdog.start(domain)
        try:
            try:
                items = await self.fetcher.fetch_and_enrich(domain, period, key)
            except FetchCancelled as exc:
                log.info(f"Hydration of {key} cancelled: {exc}")
                return []
            except Exception as exc:
                self._report_error(domain, exc)
                raise
            self.metrics.record_hydration(domain, (time.monotonic() - started) * 1000)
            if not items:
                log.info(f"No data yet for {key} - nothing cached or published")
                return []
            self.cache.write(key, items)
            self.bus.publish(SIGNAL_CACHE_HYDRATED,
                             {"domain": domain, "periodKey": period.key, "count": len(items)})
            self.bus.emit_provide(domain, period.key, items)
            log.info(f"Data fetched for {domain} in {(time.monotonic() - started) * 1000:.0f}ms "
                     f"({len(items)} items)")
            return items
        finally:
            self.watchdog.stop(domain)
            self.busy.hide()

    def _result_payload(self, domain: str, period_key: str) -> Optional[ProvidePayload]:
        latest = self.bus.latest(domain)
        if latest is not None and latest.period_key == period_key:
            return latest
        return None

    def _report_error(self, domain: str, exc: Exception):
        self.metrics.record_error(domain, exc)
        self.bus.publish(SIGNAL_ERROR, {"domain": domain, "error": str(exc),
                                        "code": getattr(exc, "status", None) or 500})
        if isinstance(exc, ConfigurationError):
            self.notify(f"{CREDENTIALS_MESSAGE} {exc}", level="error", blocking=True)

    async def request_data(self, domain: str, period=None, widget_id: Optional[str] = None,
                           priority: Optional[int] = None,
                           callback: Optional[Callable[[Optional[ProvidePayload]], Any]] = None
                           ) -> Optional[ProvidePayload]:
        """
        Answer a consumer's request for data.

        While the same domain and period (or the current period) is being
        hydrated the request is queued and answered once with that cycle's
        result; otherwise it is hydrated now.  Returns the provide payload, or
        None when there is nothing to show.
        """
        period = Period.parse(period) if period is not None else self.current_period
        log.debug(f"Data request from {widget_id} (domain={domain}, priority={priority})")
        if period is None:
            log.debug(f"request-data for {domain} skipped (no period)")
            return None
        key = cache_key(domain, period)
        if key in self._hydrating:
            answered = asyncio.get_running_loop().create_future()

            def listener(payload: Optional[ProvidePayload]):
                if not answered.done():
                    answered.set_result(payload)
                if callback is not None:
                    callback(payload)

            self.widgets.add_pending(key, listener)
            return await answered
        try:
            await self.hydrate_domain(domain, period)
        except HydratorError as exc:
            log.debug(f"request-data for {domain} failed: {exc}")
        payload = self._result_payload(domain, period.key)
        if callback is not None:
            callback(payload)
        return payload

    async def _hydrate_quietly(self, domain: str, period: Period):
        try:
            await self.hydrate_domain(domain, period)
        except HydratorError as exc:
            log.debug(f"Hydration of {domain} failed: {exc}")

    # -- inbound signals -------------------------------------------------

    async def _on_request_data(self, signal: str, payload: Dict[str, Any]):
        domain = payload.get("domain") or DEFAULT_DOMAIN
        widget_id = payload.get("widgetId")
        try:
            period = Period.parse(payload.get("period")) or self.current_period
            queued = period is not None and cache_key(domain, period) in self._hydrating

            def reply(result: Optional[ProvidePayload]):
                # queued requesters missed the broadcast; answer them directly
                if queued and result is not None:
                    self.bus.publish(SIGNAL_PROVIDE_DATA, {**result.to_signal(), "widgetId": widget_id})

            await self.request_data(domain, period, widget_id, payload.get("priority"), callback=reply)
        except ValueError as exc:
            log.warning(f"Invalid request-data from {widget_id}: {exc}")
            self.bus.publish(SIGNAL_ERROR, {"domain": domain, "error": str(exc), "code": 400})

    async def _on_update_date(self, signal: str, payload: Dict[str, Any]):
        try:
            self.current_period = Period.parse(payload.get("period"))
        except ValueError as exc:
            log.warning(f"Invalid update-date period: {exc}")
            return
        log.debug(f"update-date -> {self.current_period.key if self.current_period else None}")
        if self.visible_tab and self.current_period:
            await self._hydrate_quietly(self.visible_tab, self.current_period)

    async def _on_dashboard_state(self, signal: str, payload: Dict[str, Any]):
        self.visible_tab = payload.get("tab")
        if self.visible_tab and self.current_period:
            await self._hydrate_quietly(self.visible_tab, self.current_period)
        else:
            log.debug(f"dashboard-state skipped (tab={self.visible_tab}, "
                      f"period={self.current_period is not None})")

    def _on_widget_register(self, signal: str, payload: Dict[str, Any]):
        widget_id = payload.get("widgetId")
        if not widget_id:
            log.warning(f"widget:register without widgetId: {payload}")
            return
        self.widgets.register(widget_id, payload.get("domain") or DEFAULT_DOMAIN)

    def _on_clear(self, signal: str, payload: Dict[str, Any]):
        self.invalidate_cache(payload.get("domain") or "*")

    # -- cache & state ---------------------------------------------------

    def invalidate_cache(self, domain: str = "*") -> int:
        """Drop cached entries (memory and mirror) and abort matching fetches."""
        removed = self.cache.invalidate(domain)
        if domain == "*":
            self.fetcher.abort_all("cache invalidated")
        else:
            self.fetcher.abort_domain(domain, "cache invalidated")
        self.bus.clear_latest(domain)
        log.info(f"Cache invalidated for {domain}: {len(removed)} entries")
        return len(removed)

    def get_busy_state(self) -> BusyState:
        return self.busy.snapshot()

    def get_stats(self) -> dict:
        return {
            "hit_rate": round(self.metrics.hit_rate, 4),
            "total_requests": self.metrics.total_requests,
            "cache_size": len(self.cache),
            "inflight_count": len(self.inflight),
            "busy": self.busy.is_visible,
            "widgets": len(self.widgets),
        }

    def notify(self, message: str, level: str = "info", blocking: bool = False) -> Notification:
        notification = Notification(message=message, level=level, blocking=blocking)
        self.bus.publish(SIGNAL_NOTIFICATION, notification.model_dump())
        if self.notifier is not None:
            try:
                self.notifier(notification)
            except Exception as exc:
                log.error(f"Notifier failed: {exc}")
        return notification

    # -- safety nets -----------------------------------------------------

    def _busy_timed_out(self, domain: str, duration: float):
        self.bus.publish(SIGNAL_BUSY_TIMEOUT_RECOVERY, {"domain": domain, "duration": round(duration * 1000)})
        if domain:
            self.cache.invalidate(domain)
            self.fetcher.abort_domain(domain, "busy timeout")
        self.notify(RECOVERY_MESSAGE, level="warning", blocking=False)

    def _domain_stuck(self, domain: str):
        self.busy.hide()

    def _diagnostics(self, domain: str) -> dict:
        return {
            "busy": self.busy.snapshot().model_dump(),
            "cache_keys": [k for k in self.cache.keys() if key_domain(k) == domain],
            "inflight": [k for k in self.inflight.keys() if key_domain(k) == domain],
            "lock_owner": self.lock.owner,
        }

    # -- background tasks ------------------------------------------------

    async def _sweep_loop(self):
        while True:
            try:
                await asyncio.sleep(self.settings.sweep_interval)
                self.cache.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.error(f"Error in cache sweep: {e}")

    async def _telemetry_loop(self):
        while True:
            try:
                await asyncio.sleep(self.settings.telemetry_interval)
                result = self.telemetry_sink(self.metrics.summary())
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.warning(f"Failed to send telemetry: {e}")
