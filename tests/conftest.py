"""Shared fixtures for the hookrelay test suite.

- settings: Settings with TESTING=1 (no database bootstrap, no heartbeat loop)
- store: MagicMock persistence store whose writes succeed
- app / client: FastAPI app wired to the mock store, wrapped in TestClient
"""

from __future__ import annotations

import hashlib
import hmac
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from hookrelay.config import Settings
from hookrelay.serve import create_app
from hookrelay.store import StoreResult


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        testing=True,
        asana_webhook_secret=None,
        public_url="http://receiver.test",
        webhook_max_history=50,
    )


@pytest.fixture()
def store() -> MagicMock:
    """Persistence collaborator; every write reports success."""
    mock = MagicMock()
    mock.save_webhook.return_value = StoreResult(success=True, data={"id": 1})
    mock.save_event.return_value = StoreResult(success=True, data={"id": 1})
    mock.update_webhook_stats.return_value = StoreResult(success=True)
    mock.cleanup_old_events.return_value = StoreResult(success=True, data={"deleted": 0})
    return mock


@pytest.fixture()
def app(settings, store):
    return create_app(settings, store=store)


@pytest.fixture()
def receiver(app):
    return app.state.receiver


@pytest.fixture()
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def sign():
    """Factory computing a valid X-Hook-Signature for a body."""

    def _sign(body: bytes, secret: str) -> str:
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    return _sign
