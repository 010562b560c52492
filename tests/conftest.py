"""Root test configuration for SessionRelay.

Provides:
  - a per-test JWT secret and SQLite path (RELAY_JWT_SECRET, RELAY_DB_PATH)
  - Supabase env vars removed, so create_store() always selects SQLite
  - a fresh slowapi per-address limiter for every test
  - FrozenClock: an explicit time source so expiry and window tests never sleep
  - make_token(): signs session JWTs the way the identity provider does
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Optional

import pytest
from jose import jwt  # type: ignore[import-untyped]

from sessionrelay.store.sqlite_backend import LocalSQLiteStore

TEST_JWT_SECRET = "test-secret-for-sessionrelay-suite"
TEST_AUDIENCE = "authenticated"


class FrozenClock:
    """Clock that only moves when advance() is called."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def relay_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    """Isolate every test from the host environment."""
    monkeypatch.setenv("RELAY_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("RELAY_DB_PATH", str(tmp_path / "relay.db"))
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_KEY", raising=False)
    monkeypatch.delenv("RELAY_CONFIG", raising=False)
    monkeypatch.delenv("RELAY_PORT", raising=False)


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory slowapi storage and per-address cap between tests.

    Prevents test-to-test bleed where several tests hitting the handoff
    endpoints within the same minute would trigger a 429.
    """
    from sessionrelay.auth.limiter import (
        DEFAULT_PER_ADDRESS_RATE_LIMIT,
        configure_per_address_rate_limit,
        limiter,
    )

    limiter._storage.reset()
    configure_per_address_rate_limit(DEFAULT_PER_ADDRESS_RATE_LIMIT)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def sqlite_store(tmp_path: Any) -> AsyncGenerator[LocalSQLiteStore, None]:
    store = LocalSQLiteStore(db_path=str(tmp_path / "store.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Return a factory for signed session tokens.

    make_token()                      → valid token for a fresh random subject
    make_token(sub="...")             → valid token for that subject
    make_token(expires_in=-60)        → expired token
    make_token(aud="anon")            → wrong audience
    make_token(secret="other")        → wrong signature
    """

    def _make(
        sub: Optional[str] = None,
        expires_in: int = 3600,
        aud: Optional[str] = TEST_AUDIENCE,
        secret: str = TEST_JWT_SECRET,
        **extra_claims: Any,
    ) -> str:
        claims: dict[str, Any] = {
            "sub": sub if sub is not None else str(uuid.uuid4()),
            "exp": int(time.time()) + expires_in,
            **extra_claims,
        }
        if aud is not None:
            claims["aud"] = aud
        return jwt.encode(claims, secret, algorithm="HS256")

    return _make


@pytest.fixture
def jwt_secret() -> str:
    return TEST_JWT_SECRET
