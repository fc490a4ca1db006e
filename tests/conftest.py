"""Shared fixtures."""

import pytest

from fakes import FakeFetch, FakeUptimeKuma
from kumadash.transport import set_allow_insecure_tls


@pytest.fixture
def fake_fetch() -> FakeFetch:
    """A fake transport with no routes."""
    return FakeFetch()


@pytest.fixture
def upstream() -> FakeUptimeKuma:
    """A running fake Uptime Kuma server."""
    server = FakeUptimeKuma()
    server.start()
    yield server
    server.stop()


@pytest.fixture(autouse=True)
def _reset_tls() -> None:
    """Keep certificate verification on between tests."""
    yield
    set_allow_insecure_tls(False)
