import asyncio
import time

import pytest

from pyhydrator.credentials import CredentialGate, Credentials
from pyhydrator.exceptions import ConfigurationError, CredentialsNotConfigured


@pytest.mark.asyncio
async def test_wait_times_out_with_configuration_error():
    gate = CredentialGate(timeout=0.1)
    started = time.monotonic()
    with pytest.raises(CredentialsNotConfigured) as excinfo:
        await gate.wait()
    assert time.monotonic() - started < 1
    assert "credentials not configured" in str(excinfo.value)
    assert isinstance(excinfo.value, ConfigurationError)
    assert excinfo.value.timeout == 0.1


@pytest.mark.asyncio
async def test_set_credentials_releases_waiters():
    gate = CredentialGate(timeout=2)
    waiters = [asyncio.ensure_future(gate.wait()) for _ in range(3)]
    await asyncio.sleep(0.01)
    assert not any(w.done() for w in waiters)

    gate.set_credentials("cust", "client", "secret")
    results = await asyncio.gather(*waiters)
    assert results == [Credentials("cust", "client", "secret")] * 3
    assert gate.is_set


@pytest.mark.asyncio
async def test_later_calls_overwrite_values_only():
    gate = CredentialGate()
    gate.set_credentials("cust", "client", "secret")
    first = await gate.wait()
    gate.set_credentials("cust-2", "client-2", "secret-2")
    assert first.customer_id == "cust"
    assert (await gate.wait()).customer_id == "cust-2"


def test_secret_is_not_logged(caplog):
    caplog.set_level("INFO", logger="pyhydrator.credentials")
    CredentialGate().set_credentials("cust", "client-abcdefghijkl", "super-secret-value")
    assert "super-secret-value" not in caplog.text
    assert "client-abcdefghijkl" not in caplog.text
    assert "secret_length=18" in caplog.text
