"""
Chaos testing configuration and shared fixtures.

Provides common fixtures and configuration for chaos/failure injection tests.
"""

import random
from unittest.mock import AsyncMock

import pytest

from standby_verifier.config import Settings
from standby_verifier.logging import get_logger
from standby_verifier.management import ManagementClient


@pytest.fixture(autouse=True)
def seed_random():
    """Seed random for reproducible chaos scenarios."""
    random.seed(42)
    yield
    random.seed()  # Reset after test


@pytest.fixture
def chaos_client(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> ManagementClient:
    """Management client with retries enabled and backoff patched out."""
    monkeypatch.setattr("standby_verifier.management.client.asyncio.sleep", AsyncMock())
    return ManagementClient(
        settings.model_copy(update={"http_max_retries": 3}), get_logger("chaos")
    )
