"""
tests/conftest.py -- Shared test fixtures for Mingle integration tests.

This module provides:
  - _make_test_store(): creates an isolated in-memory UserStore
  - _patch_lifespan(): wires test handles into app.state, bypassing real startup
  - api_client: (client, store, avatars) for route integration tests
  - register: factory that signs up + signs in a fresh user and returns its headers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

DEBUG and RATE_LIMIT_ENABLED must be set before any app import so
get_settings() auto-generates SECRET_KEY and the signin limit never trips
during a test module.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.store import UserStore
from core.config import get_settings
from media.avatars import AvatarPipeline
from social.graph import RelationshipManager

PASSWORD = "secret1"


@dataclass
class Member:
    """A signed-up, signed-in test user."""

    id: str
    name: str
    email: str
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return UserStore(db_url=f"sqlite:///file:test_mingle_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: UserStore, avatars: AvatarPipeline):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.relationships = RelationshipManager(store)
        app.state.avatars = avatars
        yield

    return test_lifespan


def unique_email(name: str) -> str:
    return f"{name}-{uuid.uuid4().hex[:8]}@example.com"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request, tmp_path_factory) -> Generator[tuple[TestClient, UserStore, AvatarPipeline], None, None]:
    """Yield (client, store, avatars) backed by isolated per-module storage.

    Tests authenticate with Bearer headers from the register fixture; the
    cookie jar is cleared after every signin so one member's cookie never
    leaks into another member's request.
    """
    store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    avatars = AvatarPipeline(
        tmp_path_factory.mktemp("avatars"),
        url_prefix="/static/uploads/avatars",
        width=get_settings().avatar_width,
        max_bytes=get_settings().max_avatar_bytes,
        max_pixels=get_settings().avatar_max_pixels,
    )
    app.router.lifespan_context = _patch_lifespan(store, avatars)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store, avatars

    store.close()


@pytest.fixture
def register(api_client):
    """Return a factory: register("alice") -> Member signed in with its own session."""
    client, _store, _avatars = api_client

    def _register(name: str) -> Member:
        email = unique_email(name)
        resp = client.post("/api/v1/signup", json={"name": name, "email": email, "password": PASSWORD})
        assert resp.status_code == 201, resp.text
        user_id = resp.json()["id"]
        resp = client.post("/api/v1/signin", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        token = resp.cookies[get_settings().session_cookie_name]
        client.cookies.clear()
        return Member(id=user_id, name=name, email=email, token=token)

    return _register
