"""
tests/conftest.py -- Shared test fixtures for the SynthAI authorization service.

This module provides:
  - settings:       the Settings singleton built from the test environment below
  - session_store:  a fresh MemorySessionStore per test
  - ledger:         a LastLoginStore on a named shared-memory SQLite DB
  - provider:       a real IdentityProviderClient whose network-facing methods
                    are replaced by MagicMocks (build_authorization_url stays real)
  - flow:           AuthFlowController wired to the three fixtures above
  - client:         TestClient with a patched lifespan and follow_redirects=False
  - logged_in:      the same client after a complete login -> callback round trip

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

The environment must be set before any core/auth/api import so get_settings()
builds a development Settings (auto-generated secrets allowed, rate limits off).
"""

from __future__ import annotations

import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef")
os.environ.setdefault("KEYCLOAK_URL", "http://keycloak.test")
os.environ.setdefault("KEYCLOAK_REALM", "synthai")
os.environ.setdefault("KEYCLOAK_CLIENT_ID", "synthai-test-client")
os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.flow import AuthFlowController
from auth.models import TokenResponse
from auth.oidc import IdentityProviderClient
from auth.sessions import MemorySessionStore, SessionCookie
from auth.store import LastLoginStore
from core.config import Settings, get_settings

SUBJECT = "5f1c2a9e-0000-4000-8000-000000000001"
USERINFO = {
    "sub": SUBJECT,
    "preferred_username": "alice",
    "email": "alice@example.com",
    "email_verified": True,
    "name": "Alice Example",
    "given_name": "Alice",
    "family_name": "Example",
}
REALM_USERS = [
    {"id": SUBJECT, "username": "alice", "enabled": True},
    {"id": "5f1c2a9e-0000-4000-8000-000000000002", "username": "bob", "enabled": True},
]


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def session_store(settings: Settings) -> MemorySessionStore:
    return MemorySessionStore(settings.session_ttl_seconds)


@pytest.fixture
def ledger() -> Generator[LastLoginStore, None, None]:
    """Isolated ledger per test: the uuid keeps named in-memory DBs apart."""
    store = LastLoginStore(f"sqlite:///file:test_ledger_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield store
    store.close()


@pytest.fixture
def provider(settings: Settings) -> IdentityProviderClient:
    """IdentityProviderClient with every network call mocked.

    build_authorization_url() is the real implementation, so tests see real
    state/nonce values and real authorization URLs.
    """
    client = IdentityProviderClient(settings, http=MagicMock())
    client.exchange_code = MagicMock(
        return_value=TokenResponse(
            access_token="access-token-1",
            refresh_token="refresh-token-1",
            id_token="id-token-1",
            expires_in=300,
        )
    )
    client.verify_id_token = MagicMock(
        side_effect=lambda id_token, nonce, access_token=None: {
            "sub": SUBJECT,
            "nonce": nonce,
            "aud": settings.keycloak_client_id,
        }
    )
    client.fetch_user_info = MagicMock(return_value=dict(USERINFO))
    client.revoke_refresh_token = MagicMock(return_value=None)
    client.list_users = MagicMock(return_value=[dict(u) for u in REALM_USERS])
    client.delete_user = MagicMock(return_value=None)
    return client


@pytest.fixture
def flow(provider, session_store, ledger, settings) -> AuthFlowController:
    return AuthFlowController(provider, session_store, ledger, settings)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(provider, session_store, ledger, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the test collaborators into app.state so routes never touch a real
    provider, Redis or on-disk database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.started_at = time.monotonic()
        app.state.provider = provider
        app.state.session_store = session_store
        app.state.ledger = ledger
        app.state.session_cookie = SessionCookie(settings)
        app.state.flow = AuthFlowController(provider, session_store, ledger, settings)
        yield

    return test_lifespan


@pytest.fixture
def client(provider, session_store, ledger, settings) -> Generator[TestClient, None, None]:
    """TestClient over the real app with isolated collaborators.

    follow_redirects=False: tests assert on 302 Location headers, which are
    invisible once the client follows them. raise_server_exceptions=False so
    the catch-all 500 handler can be asserted on.
    """
    app.router.lifespan_context = _patch_lifespan(provider, session_store, ledger, settings)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=False) as c:
        yield c


def state_from_location(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


@pytest.fixture
def logged_in(client: TestClient) -> TestClient:
    """Client holding an authenticated session cookie for USERINFO's subject."""
    resp = client.get("/api/auth/login")
    assert resp.status_code == 302
    resp = client.get(
        "/api/auth/callback",
        params={"code": "test-code", "state": state_from_location(resp.headers["location"])},
    )
    assert resp.status_code == 302
    return client
