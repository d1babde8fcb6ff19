"""
tests/conftest.py -- Shared test fixtures for ipbound unit and integration tests.

This module provides:
  - signer / token_store / authority: unit-level fixtures on in-memory SQLite
  - _make_test_stores(): named shared-memory DBs for the HTTP stack
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient over the real FastAPI app
  - register_and_login: helper fixture returning a login response body

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the HTTP stack because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates signing secrets in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.sessions import SessionAuthority
from auth.store import TokenStore, UserStore
from auth.tokens import CredentialSigner

ACCESS_SECRET = "a" * 32 + "-access-test-secret"
REFRESH_SECRET = "r" * 32 + "-refresh-test-secret"

# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def signer() -> CredentialSigner:
    return CredentialSigner(ACCESS_SECRET, REFRESH_SECRET, access_ttl=900, refresh_ttl=7 * 24 * 3600)


@pytest.fixture
def token_store() -> Generator[TokenStore, None, None]:
    store = TokenStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def authority(signer: CredentialSigner, token_store: TokenStore) -> SessionAuthority:
    return SessionAuthority(signer, token_store)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, TokenStore]:
    """Create named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    url = f"sqlite:///file:test_ipbound_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(url), TokenStore(url)


def _patch_lifespan(user_store: UserStore, token_store: TokenStore, signer: CredentialSigner):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.token_store = token_store
        app.state.authority = SessionAuthority(signer, token_store)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped HTTP fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with isolated stores.

    TestClient's socket peer is "testclient", so tests choose their client IP
    explicitly with an X-Forwarded-For header.
    """
    user_store, token_store = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    test_signer = CredentialSigner(ACCESS_SECRET, REFRESH_SECRET)

    app.router.lifespan_context = _patch_lifespan(user_store, token_store, test_signer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    token_store.close()
    user_store.close()


@pytest.fixture
def register_and_login(api_client: TestClient) -> Callable[..., dict]:
    """Return a helper that registers a user and logs in from the given IP.

    Usage:
        body = register_and_login("alice", "secret1", ip="10.0.0.5")
        body = register_and_login("bob", "secret1", ip="10.0.0.5", allowed_ips=["10.0.0.*"])
    """

    def _do(username: str, password: str, ip: str, allowed_ips: list[str] | None = None) -> dict:
        resp = api_client.post("/api/auth/register", json={"username": username, "password": password})
        assert resp.status_code == 201, resp.text
        payload: dict = {"username": username, "password": password}
        if allowed_ips is not None:
            payload["allowedIps"] = allowed_ips
        resp = api_client.post("/api/auth/login", json=payload, headers={"X-Forwarded-For": ip})
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _do
