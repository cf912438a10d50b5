"""Shared test fixtures.

Provides:
- ``hitl_dir`` -- an empty handshake directory under ``tmp_path``
- ``broker_options`` -- :class:`BrokerOptions` pointing at it
- ``make_client`` -- builds a ``TestClient`` for a freshly created app
"""

import pytest
from fastapi.testclient import TestClient

from hitl_broker.config import BrokerOptions
from hitl_broker.main import ServerOptions, create_app


def pytest_configure(config):
    """Register custom markers.

    Tests that bind real sockets or talk to a live runtime are marked
    ``@pytest.mark.integration``; run ``-m 'not integration'`` to skip them.
    """
    config.addinivalue_line(
        "markers",
        "integration: tests requiring a live server or runtime",
    )


@pytest.fixture()
def hitl_dir(tmp_path):
    path = tmp_path / "hitl"
    path.mkdir()
    return path


@pytest.fixture()
def broker_options(hitl_dir, tmp_path) -> BrokerOptions:
    return BrokerOptions(dir=str(hitl_dir), env={}, cwd=str(tmp_path))


@pytest.fixture()
def make_client(broker_options):
    """Factory: ``make_client(token=None, **server_options) -> TestClient``."""

    def _make(token: str | None = None, **kwargs) -> TestClient:
        app = create_app(ServerOptions(broker_options=broker_options, token=token, **kwargs))
        return TestClient(app, raise_server_exceptions=False)

    return _make
