"""Shared test fixtures for the Parlae PMS test suite."""

from __future__ import annotations

import os
from datetime import timedelta
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("SIKKA_APP_ID", "test-app-id")
    os.environ.setdefault("SIKKA_APP_KEY", "test-app-key")
    os.environ.setdefault("METRICS_ENABLED", "false")


@pytest.fixture
def mock_response():
    """Factory fixture for creating mock Sikka API responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make


@pytest.fixture
def credential_store():
    from parlae_pms.services.store import InMemoryCredentialStore

    return InMemoryCredentialStore()


@pytest.fixture
def writeback_store():
    from parlae_pms.services.store import InMemoryWritebackStore

    return InMemoryWritebackStore()


@pytest.fixture
def valid_credentials():
    """Credentials holding a request key that is good for another day."""
    from parlae_pms.models import SikkaCredentials, utcnow

    return SikkaCredentials(
        app_id="app-1",
        app_key="key-1",
        office_id="OFFICE1",
        secret_key="SECRET1",
        request_key="RK-valid",
        refresh_key="RF-valid",
        token_expiry=utcnow() + timedelta(days=1),
    )
