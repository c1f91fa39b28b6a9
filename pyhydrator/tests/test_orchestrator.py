"""End to end tests for the orchestrator against a fake telemetry API."""
import asyncio
import time
from unittest.mock import Mock

import pytest

from pyhydrator.auth import StaticTokenProvider
from pyhydrator.bus import EventContext
from pyhydrator.cache import cache_key
from pyhydrator.const import RECOVERY_MESSAGE, SIGNAL_PROVIDE_DATA
from pyhydrator.exceptions import AuthExpiredError, CredentialsNotConfigured, LockTimeout
from pyhydrator.models import Period
from pyhydrator.orchestrator import Orchestrator
from pyhydrator.storage import MemoryKeyValueStore
from pyhydrator.tests.fakes import FakeSession, SignalRecorder, make_response

JANUARY = {"startISO": "2024-01-01T00:00:00Z", "endISO": "2024-01-31T23:59:59Z"}
FEBRUARY = {"startISO": "2024-02-01T00:00:00Z", "endISO": "2024-02-29T23:59:59Z"}


async def wait_for_signal(recorder, name, count=1, timeout=1.0):
    deadline = time.monotonic() + timeout
    while len(recorder.of(name)) < count:
        if time.monotonic() > deadline:
            raise AssertionError(f"{name} not published {count} time(s): {recorder.signals}")
        await asyncio.sleep(0.01)
    return recorder.of(name)


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_fetch(make_orchestrator):
    session = FakeSession(delay=0.1)
    async with make_orchestrator(session=session) as orch:
        results = await asyncio.gather(*[orch.hydrate_domain("energy", JANUARY) for _ in range(5)])

    assert len(session.calls) == 1
    assert all(len(r) == 3 for r in results)
    assert len(orch.inflight) == 0


@pytest.mark.asyncio
async def test_missing_credentials_fail_fast(make_orchestrator):
    session = FakeSession()
    orch = make_orchestrator(session=session, credentials=False)
    signals = SignalRecorder(orch.bus)
    notifier = Mock()
    orch.notifier = notifier
    async with orch:
        started = time.monotonic()
        with pytest.raises(CredentialsNotConfigured) as excinfo:
            await orch.hydrate_domain("energy", JANUARY)
        assert time.monotonic() - started < 1.0

    assert "credentials not configured" in str(excinfo.value)
    assert session.calls == []
    [error] = signals.of("error")
    assert error["domain"] == "energy"
    assert error["code"] == 500
    [notification] = signals.of("notification")
    assert notification["blocking"] is True
    assert notification["level"] == "error"
    notifier.assert_called_once()
    assert not orch.busy.is_visible


@pytest.mark.asyncio
async def test_late_credentials_release_waiting_fetch(make_orchestrator):
    session = FakeSession()
    orch = make_orchestrator(session=session, credentials=False)
    async with orch:
        task = asyncio.ensure_future(orch.hydrate_domain("energy", JANUARY))
        await asyncio.sleep(0.05)
        orch.set_credentials("cust-1", "client-1", "secret-1")
        assert len(await task) == 3
    assert "/customers/cust-1/energy/" in session.calls[0]["url"]


@pytest.mark.asyncio
async def test_fresh_cache_hit_skips_network(make_orchestrator, items):
    session = FakeSession()
    orch = make_orchestrator(session=session)
    signals = SignalRecorder(orch.bus)
    async with orch:
        period = Period.parse(JANUARY)
        orch.cache.write(cache_key("water", period), items)
        result = await orch.hydrate_domain("water", JANUARY)

    assert len(result) == 3
    assert session.calls == []
    assert orch.metrics.cache_hits == 1
    [provided] = signals.of("provide-data")
    assert provided["domain"] == "water"
    assert provided["periodKey"] == period.key


@pytest.mark.asyncio
async def test_empty_answer_is_not_cached_or_published(make_orchestrator):
    session = FakeSession(make_response(200, {"data": []}))
    orch = make_orchestrator(session=session)
    signals = SignalRecorder(orch.bus)
    async with orch:
        assert await orch.hydrate_domain("energy", JANUARY) == []
        assert len(orch.cache) == 0
        # next request goes back to the API
        assert await orch.hydrate_domain("energy", JANUARY) == []

    assert len(session.calls) == 2
    assert signals.of("provide-data") == []
    assert signals.of("cache-hydrated") == []


@pytest.mark.asyncio
async def test_fetch_publishes_cache_hydrated_then_provide_data(make_orchestrator):
    orch = make_orchestrator()
    signals = SignalRecorder(orch.bus)
    async with orch:
        await orch.hydrate_domain("energy", JANUARY)
        names = [name for name, _ in signals.signals]

    assert names.index("cache-hydrated") < names.index("provide-data")
    [hydrated] = signals.of("cache-hydrated")
    assert hydrated["count"] == 3
    [provided] = signals.of("provide-data")
    assert provided["version"] == 1
    assert [i["label"] for i in provided["items"]] == ["Chiller 1", "Escada Rolante", "PUMP-03"]
    assert orch.bus.latest("energy").version == 1


@pytest.mark.asyncio
async def test_busy_timeout_recovers_stuck_fetch(make_orchestrator):
    session = FakeSession(delay=1.0)
    orch = make_orchestrator(session=session, busy_timeout=0.2)
    signals = SignalRecorder(orch.bus)
    async with orch:
        started = time.monotonic()
        result = await orch.hydrate_domain("energy", JANUARY)
        elapsed = time.monotonic() - started

        assert result == []
        assert elapsed < 0.8
        [recovery] = signals.of("busy-timeout-recovery")
        assert recovery["domain"] == "energy"
        assert recovery["duration"] >= 150
        [notification] = signals.of("notification")
        assert notification["message"] == RECOVERY_MESSAGE
        assert notification["level"] == "warning"
        assert notification["blocking"] is False
        assert not orch.busy.is_visible
        assert len(orch.cache) == 0
        assert not orch.lock.locked


@pytest.mark.asyncio
async def test_hydration_cycles_never_overlap(make_orchestrator):
    session = FakeSession(delay=0.1)
    async with make_orchestrator(session=session) as orch:
        await asyncio.gather(
            orch.hydrate_domain("energy", JANUARY),
            orch.hydrate_domain("water", JANUARY),
            orch.hydrate_domain("energy", FEBRUARY),
        )

    windows = sorted(session.windows)
    assert len(windows) == 3
    for (_, end), (start, _) in zip(windows, windows[1:]):
        assert end <= start
    assert orch.busy.shown == orch.busy.hidden == 3


@pytest.mark.asyncio
async def test_request_during_hydration_is_answered_once(make_orchestrator):
    session = FakeSession(delay=0.1)
    async with make_orchestrator(session=session) as orch:
        hydration = asyncio.ensure_future(orch.hydrate_domain("energy", JANUARY))
        await asyncio.sleep(0.02)
        callback = Mock()
        payload = await orch.request_data("energy", JANUARY, widget_id="w-1", callback=callback)
        await hydration

    assert len(session.calls) == 1
    assert payload.domain == "energy"
    assert len(payload.items) == 3
    callback.assert_called_once_with(payload)
    assert orch.widgets.pending_count() == 0


@pytest.mark.asyncio
async def test_request_data_without_period_returns_nothing(make_orchestrator):
    session = FakeSession()
    async with make_orchestrator(session=session) as orch:
        assert await orch.request_data("energy") is None
    assert session.calls == []


@pytest.mark.asyncio
async def test_request_for_other_period_is_not_answered_with_running_one(make_orchestrator):
    session = FakeSession(delay=0.1)
    async with make_orchestrator(session=session) as orch:
        hydration = asyncio.ensure_future(orch.hydrate_domain("energy", JANUARY))
        await asyncio.sleep(0.02)
        payload = await orch.request_data("energy", FEBRUARY, widget_id="w-feb")
        await hydration

    assert payload.period_key == Period.parse(FEBRUARY).key
    assert [c["params"]["startTime"] for c in session.calls] == [JANUARY["startISO"], FEBRUARY["startISO"]]
    assert orch.widgets.pending_count() == 0


@pytest.mark.asyncio
async def test_destroy_answers_queued_requests(make_orchestrator):
    orch = make_orchestrator(session=FakeSession(delay=0.5))
    await orch.init()
    hydration = asyncio.ensure_future(orch.hydrate_domain("energy", JANUARY))
    await asyncio.sleep(0.02)
    request = asyncio.ensure_future(orch.request_data("energy", JANUARY, widget_id="w-1"))
    await asyncio.sleep(0.02)
    assert orch.widgets.pending_count() == 1

    await orch.destroy()
    assert await asyncio.wait_for(request, 0.5) is None
    await asyncio.gather(hydration, return_exceptions=True)
    assert orch.widgets.pending_count() == 0


@pytest.mark.asyncio
async def test_watchdog_hides_busy_for_stuck_domain(make_orchestrator, items):
    session = FakeSession(delay=0.5)
    orch = make_orchestrator(session=session, busy_timeout=5, watchdog_timeout=0.15)
    snapshots = []
    diagnostics = orch.watchdog.diagnostics

    def record(domain):
        snapshots.append(diagnostics(domain))
        return snapshots[-1]

    orch.watchdog.diagnostics = record
    january_key = cache_key("energy", Period.parse(JANUARY))
    february_key = cache_key("energy", Period.parse(FEBRUARY))
    async with orch:
        orch.cache.write(february_key, items)
        task = asyncio.ensure_future(orch.hydrate_domain("energy", JANUARY))
        await asyncio.sleep(0.25)

        assert not orch.busy.is_visible
        assert not task.done()
        assert orch.watchdog.fired == ["energy"]
        [snapshot] = snapshots
        assert snapshot["busy"]["is_visible"] is True
        assert snapshot["cache_keys"] == [february_key]
        assert snapshot["inflight"] == [january_key]
        assert snapshot["lock_owner"] == january_key

        assert len(await task) == 3
    assert orch.busy.shown == orch.busy.hidden == 1
    assert orch.busy.recoveries == 0


@pytest.mark.asyncio
async def test_lock_timeout_is_reported(make_orchestrator):
    session = FakeSession(delay=0.3)
    orch = make_orchestrator(session=session, lock_timeout=0.1)
    signals = SignalRecorder(orch.bus)
    async with orch:
        energy, water = await asyncio.gather(orch.hydrate_domain("energy", JANUARY),
                                             orch.hydrate_domain("water", JANUARY),
                                             return_exceptions=True)

    assert len(energy) == 3
    assert isinstance(water, LockTimeout)
    assert len(session.calls) == 1
    [error] = signals.of("error")
    assert error["domain"] == "water"
    assert "lock" in error["error"]
    assert not orch.lock.locked


@pytest.mark.asyncio
async def test_provide_data_reaches_embedded_contexts(settings):
    page = EventContext("page")
    frame = page.embed(EventContext("frame", ready=False))
    orch = Orchestrator(settings, session=FakeSession(), context=page,
                        token_provider_factory=lambda creds: StaticTokenProvider("test-token"))
    orch.set_credentials("cust-1", "client-1", "secret-1")
    async with orch:
        await orch.hydrate_domain("energy", JANUARY)
        assert frame.received == []
        frame.ready = True
        await asyncio.sleep(settings.subcontext_retry_delay * 2)

    assert SIGNAL_PROVIDE_DATA in [signal for signal, _ in frame.received]


@pytest.mark.asyncio
async def test_token_expired_is_debounced(make_orchestrator):
    orch = make_orchestrator(session=FakeSession(make_response(401, {})))
    signals = SignalRecorder(orch.bus)
    async with orch:
        for period in (JANUARY, FEBRUARY):
            with pytest.raises(AuthExpiredError):
                await orch.hydrate_domain("energy", period)

    assert len(signals.of("token-expired")) == 1
    assert [e["code"] for e in signals.of("error")] == [401, 401]


@pytest.mark.asyncio
async def test_invalidate_aborts_in_flight_fetch(make_orchestrator, items):
    session = FakeSession(delay=0.5)
    async with make_orchestrator(session=session) as orch:
        orch.cache.write(cache_key("energy", Period.parse(FEBRUARY)), items)
        task = asyncio.ensure_future(orch.hydrate_domain("energy", JANUARY))
        await asyncio.sleep(0.05)
        assert orch.invalidate_cache("energy") == 1
        assert await asyncio.wait_for(task, 0.3) == []
        assert len(orch.cache) == 0
        assert orch.fetcher.tokens == {}


@pytest.mark.asyncio
async def test_update_tokens_drops_cache_and_latest(make_orchestrator):
    orch = make_orchestrator()
    signals = SignalRecorder(orch.bus)
    async with orch:
        await orch.hydrate_domain("energy", JANUARY)
        assert orch.bus.latest("energy") is not None
        orch.update_tokens({"ingestionToken": "rotated"})

        assert len(orch.cache) == 0
        assert orch.bus.latest("energy") is None
        assert orch.get_token("ingestionToken") == "rotated"
        assert orch.get_token("jwt") is None
        assert len(signals.of("token-rotated")) == 1


@pytest.mark.asyncio
async def test_non_fetchable_domain(make_orchestrator):
    session = FakeSession()
    async with make_orchestrator(session=session) as orch:
        assert await orch.hydrate_domain("temperature", JANUARY) == []
    assert session.calls == []


@pytest.mark.asyncio
async def test_non_fetchable_domains_come_from_settings(make_orchestrator):
    session = FakeSession()
    async with make_orchestrator(session=session, non_fetchable_domains="energy") as orch:
        assert await orch.hydrate_domain("energy", JANUARY) == []
        assert len(await orch.hydrate_domain("temperature", JANUARY)) == 3
    assert len(session.calls) == 1
    assert "/temperature/" in session.calls[0]["url"]


@pytest.mark.asyncio
async def test_hydrate_requires_period(make_orchestrator):
    async with make_orchestrator() as orch:
        with pytest.raises(ValueError):
            await orch.hydrate_domain("energy", None)


@pytest.mark.asyncio
async def test_ready_signal_and_stats(make_orchestrator):
    orch = make_orchestrator()
    signals = SignalRecorder(orch.bus)
    async with orch:
        [ready] = signals.of("orchestrator:ready")
        assert ready["timestamp"] > 0
        await orch.hydrate_domain("energy", JANUARY)
        await orch.hydrate_domain("energy", JANUARY)
        stats = orch.get_stats()

    assert stats == {
        "hit_rate": 0.5,
        "total_requests": 2,
        "cache_size": 1,
        "inflight_count": 0,
        "busy": False,
        "widgets": 0,
    }


@pytest.mark.asyncio
async def test_inbound_signals(make_orchestrator):
    session = FakeSession()
    orch = make_orchestrator(session=session)
    signals = SignalRecorder(orch.bus)
    async with orch:
        orch.bus.publish("widget:register", {"widgetId": "w-water", "domain": "water"})
        assert orch.widgets.get("w-water").priority == 1

        orch.bus.publish("request-data", {"domain": "energy", "widgetId": "w-1", "period": JANUARY})
        await wait_for_signal(signals, "provide-data")

        orch.bus.publish("request-data", {"domain": "energy", "widgetId": "w-2", "period": {}})
        [error] = await wait_for_signal(signals, "error")
        assert error["code"] == 400

        orch.bus.publish("update-date", {"period": FEBRUARY})
        await asyncio.sleep(0.02)
        assert orch.current_period.start_iso == FEBRUARY["startISO"]
        assert len(session.calls) == 1

        orch.bus.publish("dashboard-state", {"tab": "water"})
        hydrated = await wait_for_signal(signals, "cache-hydrated", count=2)
        assert hydrated[-1]["domain"] == "water"
        assert "/water/" in session.calls[-1]["url"]

        orch.bus.publish("clear", {"domain": "water"})
        assert [k.split(":")[0] for k in orch.cache.keys()] == ["energy"]
        assert orch.bus.latest("water") is None


@pytest.mark.asyncio
async def test_destroy_stops_handling_signals(make_orchestrator):
    orch = make_orchestrator()
    await orch.init()
    await orch.destroy()
    await orch.destroy()
    orch.bus.publish("widget:register", {"widgetId": "w-1"})
    assert len(orch.widgets) == 0
    assert not orch.running


@pytest.mark.asyncio
async def test_warm_restart_from_persisted_store(make_orchestrator):
    store = MemoryKeyValueStore()
    async with make_orchestrator(store=store) as first:
        await first.hydrate_domain("energy", JANUARY)

    session = FakeSession()
    async with make_orchestrator(session=session, store=store) as second:
        assert len(await second.hydrate_domain("energy", JANUARY)) == 3
    assert session.calls == []


@pytest.mark.asyncio
async def test_telemetry_sink_receives_summary(settings):
    sink = Mock()
    orch = Orchestrator(settings.model_copy(update={"telemetry_interval": 0.05}), session=FakeSession(),
                        token_provider_factory=lambda creds: StaticTokenProvider("test-token"),
                        telemetry_sink=sink)
    async with orch:
        await asyncio.sleep(0.12)
    assert sink.call_count >= 1
    assert "orchestrator_cache_hit_ratio" in sink.call_args[0][0]
