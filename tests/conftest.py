"""
tests/conftest.py -- Shared test fixtures for the pre-save service.

This module provides:
  - FixedClock: a settable stand-in for time.time so freshness checks are exact
  - codec / clock: a StateTokenCodec bound to a fixed secret and FixedClock
  - _patch_lifespan(): wires the test codec into app.state, bypassing real startup
  - api_client: TestClient with follow_redirects=False for route tests

Environment variables must be set before any api/ or core/ import:
get_settings() is read at module load by api/main.py (middleware config).
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before importing api.main. DEBUG lets Settings generate a dev
# key, ALLOWED_HOSTS admits TestClient's default Host header.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")
os.environ.setdefault("PRESAVE_CLIENT_ID", "test-client-id")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from presave.codec import StateTokenCodec

TEST_SECRET = "test-state-secret-0123456789abcdef0123456789"
OTHER_SECRET = "other-state-secret-fedcba9876543210fedcba987"
TEST_TTL = 600
START_TIME = 1_760_000_000.0


class FixedClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def codec(clock: FixedClock) -> StateTokenCodec:
    """Codec with a fixed secret, a 10-minute window, and a controllable clock."""
    return StateTokenCodec(TEST_SECRET, ttl_seconds=TEST_TTL, clock=clock)


def _patch_lifespan(codec: StateTokenCodec):
    """Return an async context manager that replaces the real lifespan.

    Puts the test codec on app.state so route handlers sign and verify with
    a known secret and clock.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.state_codec = codec
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, StateTokenCodec, FixedClock], None, None]:
    """Yield (client, codec, clock) for route integration tests.

    follow_redirects=False is essential: the authorize route answers with a
    302 to the provider, and we assert on the Location header itself.
    """
    module_clock = FixedClock()
    module_codec = StateTokenCodec(TEST_SECRET, ttl_seconds=TEST_TTL, clock=module_clock)

    app.router.lifespan_context = _patch_lifespan(module_codec)
    limiter.reset()

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, module_codec, module_clock
