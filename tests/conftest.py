"""
tests/conftest.py -- Shared test fixtures for the builder auth service.

This module provides:
  - make_settings(): Settings with a fixed key, no .env file, no telemetry URL
  - store_factory: isolated in-memory AuthAdapter instances, closed after the test
  - running_app(): TestClient over create_app(settings) with a patched lifespan
  - api_client: module-scoped (client, store, settings) with default settings
  - session_headers(): Authorization header carrying a session JWT

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before api.main is imported: the module-level
app calls get_settings(), which refuses to start without SECRET_KEY otherwise.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator, Iterator
from contextlib import asynccontextmanager, contextmanager

# CRITICAL: Set DEBUG before any api/auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import create_app, init_app_state
from auth.models import User
from auth.store import AuthAdapter
from auth.tokens import create_session_token
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-that-is-long-enough-0123456789"


def make_settings(**overrides) -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET_KEY,
        "base_url": "http://testserver",
        "telemetry_url": "",
        "rate_limit_storage_url": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _db_url(db_suffix: str) -> str:
    return f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(store: AuthAdapter, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so TestClient routes see
    an isolated in-memory DB rather than the production database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_app_state(app, settings, store)
        yield

    return test_lifespan


@contextmanager
def running_app(settings: Settings, db_suffix: str | None = None) -> Iterator[tuple[TestClient, AuthAdapter]]:
    """Yield (client, store) for an app built from settings.

    follow_redirects=False: sign-in tests assert on redirect Location headers,
    which are invisible once the client follows the redirect.
    """
    store = AuthAdapter(db_url=_db_url(db_suffix or uuid.uuid4().hex), settings=settings)
    app = create_app(settings)
    app.router.lifespan_context = _patch_lifespan(store, settings)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, store
    store.close()


def session_headers(user: User, settings: Settings) -> dict[str, str]:
    token = create_session_token(user, settings.secret_key, 3600)
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store_factory() -> Generator[Callable[..., AuthAdapter], None, None]:
    """Yield a factory for isolated stores; every store it made is closed afterwards."""
    created: list[AuthAdapter] = []

    def factory(settings: Settings | None = None) -> AuthAdapter:
        store = AuthAdapter(db_url=_db_url(uuid.uuid4().hex), settings=settings or make_settings())
        created.append(store)
        return store

    yield factory

    for store in created:
        store.close()


@pytest.fixture
def store(store_factory) -> AuthAdapter:
    return store_factory()


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthAdapter, Settings], None, None]:
    """Yield (client, store, settings) for HTTP tests that need no special configuration."""
    settings = make_settings()
    with running_app(settings, db_suffix=f"api_{uuid.uuid4().hex}") as (client, store):
        yield client, store, settings
