"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any inbox_sync import, and
the settings cache is cleared so they are picked up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_inbox.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-secret")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test-verify-token")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from inbox_sync.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from inbox_sync.channel import SandboxChannel
from inbox_sync.main import app
from inbox_sync.push import PushHub
from inbox_sync.storage import Base, engine


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    from inbox_sync import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    app.state.push_hub = PushHub()
    app.state.channel = SandboxChannel()

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def hub(client) -> PushHub:
    """Push hub the app publishes to during the current test."""
    return app.state.push_hub


@pytest.fixture
def channel(client) -> SandboxChannel:
    """Delivery channel the app sends through during the current test."""
    return app.state.channel
