"""Pytest configuration and fixtures."""
import pytest

from pyhydrator.auth import StaticTokenProvider
from pyhydrator.config import Settings
from pyhydrator.models import DeviceTotal, Period
from pyhydrator.orchestrator import Orchestrator
from pyhydrator.tests.fakes import ROWS, FakeSession


@pytest.fixture
def settings():
    """Settings with short safety-net timeouts and no .env."""
    return Settings(
        _env_file=None,
        credentials_timeout=0.3,
        busy_timeout=5,
        watchdog_timeout=6,
        sweep_interval=3600,
        subcontext_retry_delay=0.05,
    )


@pytest.fixture
def period():
    return Period.create("2024-01-01T00:00:00Z", "2024-01-31T23:59:59Z")


@pytest.fixture
def items():
    return [DeviceTotal.from_row(row, "energy") for row in ROWS]


@pytest.fixture
def make_orchestrator(settings):
    """Build orchestrators wired to a FakeSession and a static bearer token."""

    def factory(session=None, credentials=True, store=None, **overrides):
        s = settings.model_copy(update=overrides) if overrides else settings
        orchestrator = Orchestrator(
            s,
            session=session if session is not None else FakeSession(),
            store=store,
            token_provider_factory=lambda creds: StaticTokenProvider("test-token"),
        )
        if credentials:
            orchestrator.set_credentials("cust-1", "client-1", "secret-1")
        return orchestrator

    return factory
