"""
Pytest configuration for session_core. In-memory SQLite per test so nothing touches the filesystem;
virtual time via ManualClock so hours of idling take no wall time.
"""
import os

os.environ["SESSION_DATABASE_URL"] = "sqlite:///:memory:"
os.environ.pop("SESSION_IDLE_TIMEOUT_MINUTES", None)

import jwt
import pytest

from session_core.clock import ManualClock
from session_core.database import create_store_engine, init_db
from session_core.durable_store import DurableStore

SIGNING_SECRET = "portal-test-signing-secret-0123456789abcdef"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def engine():
    eng = create_store_engine("sqlite:///:memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return DurableStore(engine, origin="instance-a")


@pytest.fixture
def make_token(clock):
    """Build a portal-style token: {"user": {"id", "role"}, "exp"}; exp_in is relative to the clock."""

    def _make(exp_in: float | None = 3600, *, user_id=7, role="admin", **extra) -> str:
        payload = {"user": {"id": user_id, "role": role}, "iat": int(clock.now())}
        if exp_in is not None:
            payload["exp"] = int(clock.now() + exp_in)
        payload.update(extra)
        return jwt.encode(payload, SIGNING_SECRET, algorithm="HS256")

    return _make
