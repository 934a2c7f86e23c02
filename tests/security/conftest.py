"""HTTP-level fixtures.

Responsibilities:
- Builds the FastAPI `app` over in-memory storage and the FakePartnerClient
  (registered integrations come from the shared tests/conftest.py fixtures)
- Wraps it in client/authenticated_client/other_tenant_client
- Provides make_auth_header for tenant-scoped bearer tokens

Scoped to tests/security/ only.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from orderrelay.auth import create_token
from orderrelay.config import Settings
from orderrelay.locks import MemoryDispatchLock
from orderrelay.serve import build_relay, create_app

JWT_SECRET = "relay-test-jwt-secret-0123456789abcdef0123456789abcdef"
DASHBOARD_ORIGIN = "https://dashboard.example.com"


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        jwt_secret=JWT_SECRET,
        rate_limit="1000/minute",
        cors_origins=[DASHBOARD_ORIGIN],
        storage_backend="memory",
        lock_backend="memory",
    )


@pytest.fixture
def relay(app_settings, storage, partner):
    """Relay wired to the same storage the integration fixtures register into."""
    return build_relay(
        app_settings,
        storage=storage,
        client_factory=lambda integration: partner,
        dispatch_lock=MemoryDispatchLock(),
    )


@pytest.fixture
def app(app_settings, relay):
    return create_app(app_settings, relay=relay)


@pytest.fixture
def client(app):
    """Unauthenticated TestClient (webhook sender / attacker perspective)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def make_auth_header():
    """Factory for bearer headers scoped to a tenant.

    Pass a negative ``ttl`` for an already-expired token.
    """

    def _make(
        tenant_id: str = "tenant-kebab",
        ttl: timedelta = timedelta(hours=1),
        secret: str = JWT_SECRET,
    ) -> dict[str, str]:
        token = create_token(tenant_id, secret, subject=f"owner@{tenant_id}", ttl=ttl)
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def authenticated_client(app, make_auth_header):
    """TestClient acting as the kebab shop's dashboard."""
    with TestClient(app, raise_server_exceptions=False, headers=make_auth_header()) as c:
        yield c


@pytest.fixture
def other_tenant_client(app, make_auth_header):
    """TestClient acting as a different tenant's dashboard."""
    with TestClient(
        app, raise_server_exceptions=False, headers=make_auth_header("tenant-grocer")
    ) as c:
        yield c
