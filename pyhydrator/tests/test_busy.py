"""Tests for the busy indicator, the watchdog and the shared Deadline."""
import asyncio
from unittest.mock import Mock

import pytest

from pyhydrator.busy import IDLE, SHOWING, BusyStateMachine, WatchdogMonitor
from pyhydrator.deadline import Deadline


@pytest.mark.asyncio
async def test_deadline_fires_once_and_can_be_cancelled():
    fired = Mock()
    deadline = Deadline(0.05, name="test").on_exceeded(fired)
    deadline.arm()
    assert deadline.armed
    await asyncio.sleep(0.1)
    fired.assert_called_once_with(deadline)
    assert deadline.exceeded
    assert not deadline.armed

    quiet = Mock()
    other = Deadline(0.05).on_exceeded(quiet).arm()
    assert other.cancel()
    await asyncio.sleep(0.1)
    quiet.assert_not_called()
    assert not other.cancel()


@pytest.mark.asyncio
async def test_deadline_callback_errors_do_not_stop_others():
    second = Mock()
    deadline = Deadline(0.01).on_exceeded(Mock(side_effect=RuntimeError("boom"))).on_exceeded(second)
    deadline.arm()
    await asyncio.sleep(0.05)
    second.assert_called_once()


@pytest.mark.asyncio
async def test_show_hide_pairing():
    busy = BusyStateMachine(timeout=5)
    busy.show("energy", "Loading")
    snapshot = busy.snapshot()
    assert snapshot.is_visible
    assert snapshot.current_domain == "energy"
    assert snapshot.request_count == 1
    assert busy.state == SHOWING

    assert busy.hide() is True
    assert busy.hide() is False
    assert busy.state == IDLE
    assert (busy.shown, busy.hidden) == (1, 1)
    assert not busy.snapshot().is_visible


@pytest.mark.asyncio
async def test_reentrant_show_overwrites_and_rearms():
    on_timeout = Mock()
    busy = BusyStateMachine(timeout=0.1, on_timeout=on_timeout)
    busy.show("energy", "first")
    await asyncio.sleep(0.06)
    busy.show("water", "second")
    await asyncio.sleep(0.06)
    # the first deadline would have fired by now
    on_timeout.assert_not_called()
    snapshot = busy.snapshot()
    assert snapshot.current_domain == "water"
    assert snapshot.message == "second"
    assert snapshot.request_count == 1
    assert busy.shown == 1
    busy.hide()


@pytest.mark.asyncio
async def test_timeout_recovers_to_idle():
    on_timeout = Mock()
    busy = BusyStateMachine(timeout=0.05, on_timeout=on_timeout)
    busy.show("energy")
    await asyncio.sleep(0.1)

    on_timeout.assert_called_once()
    domain, duration = on_timeout.call_args[0]
    assert domain == "energy"
    assert duration >= 0
    assert busy.state == IDLE
    assert not busy.is_visible
    assert busy.recoveries == 1
    assert busy.shown == busy.hidden == 1


@pytest.mark.asyncio
async def test_timeout_hides_even_if_recovery_fails():
    busy = BusyStateMachine(timeout=0.02, on_timeout=Mock(side_effect=RuntimeError("boom")))
    busy.show("energy")
    await asyncio.sleep(0.06)
    assert busy.state == IDLE


@pytest.mark.asyncio
async def test_hide_cancels_timeout():
    on_timeout = Mock()
    busy = BusyStateMachine(timeout=0.05, on_timeout=on_timeout)
    busy.show("energy")
    busy.hide()
    await asyncio.sleep(0.1)
    on_timeout.assert_not_called()


@pytest.mark.asyncio
async def test_watchdog_forces_recovery_with_diagnostics():
    on_stuck = Mock()
    diagnostics = Mock(return_value={"cache_keys": []})
    watchdog = WatchdogMonitor(timeout=0.05, on_stuck=on_stuck, diagnostics=diagnostics)
    watchdog.start("energy")
    watchdog.start("water")
    assert watchdog.stop("water")
    await asyncio.sleep(0.1)

    on_stuck.assert_called_once_with("energy")
    diagnostics.assert_called_once_with("energy")
    assert watchdog.fired == ["energy"]
    assert watchdog.active == []


@pytest.mark.asyncio
async def test_watchdog_restart_resets_timer():
    on_stuck = Mock()
    watchdog = WatchdogMonitor(timeout=0.08, on_stuck=on_stuck)
    watchdog.start("energy")
    await asyncio.sleep(0.05)
    watchdog.start("energy")
    await asyncio.sleep(0.05)
    on_stuck.assert_not_called()
    watchdog.stop_all()
    assert watchdog.active == []
