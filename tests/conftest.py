"""
tests/conftest.py -- Shared test fixtures for SIGRISK tests.

This module provides:
  - store / cache / service: fresh in-memory registry, report cache and
    RiskService per test, for unit tests of the registry layer
  - _patch_lifespan(): wires test resources into app.state, bypassing real startup
  - api_client: module-scoped TestClient for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API client because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Rate limiting is switched off for the whole session; limits are per client
address and every TestClient request comes from the same one.
"""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from cache.store import ReportCache
from registry.risks import RiskService
from registry.store import RegistryStore

limiter.enabled = False


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[RegistryStore, None, None]:
    s = RegistryStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def cache() -> Generator[ReportCache, None, None]:
    c = ReportCache(":memory:")
    yield c
    c.close()


@pytest.fixture
def service(store: RegistryStore, cache: ReportCache) -> RiskService:
    return RiskService(store, cache=cache)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> RegistryStore:
    """Create an isolated named shared-memory registry.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'health').
    """
    return RegistryStore(f"sqlite:///file:test_registry_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: RegistryStore, cache: ReportCache):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.cache = cache
        app.state.service = RiskService(store, cache=cache)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def _client(db_suffix: str) -> Generator[TestClient, None, None]:
    store = _make_test_store(db_suffix)
    cache = ReportCache(":memory:")
    app.router.lifespan_context = _patch_lifespan(store, cache)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
    cache.close()
    store.close()


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """TestClient over the real app with an isolated registry and cache.

    One client per test module; tests in a module share the registry, so
    each test creates records with codes of its own.
    """
    yield from _client("api")


@pytest.fixture(scope="module")
def health_client() -> Generator[TestClient, None, None]:
    yield from _client("health")


@pytest.fixture(scope="module")
def dashboard_client() -> Generator[TestClient, None, None]:
    yield from _client("dashboard")
