"""Integration fixtures: a fully started SessionRelay app over a temp SQLite DB.

The lifespan runs inside the test's event loop (router.lifespan_context), so
the aiosqlite connection and the requests share one loop. httpx's
ASGITransport does not run the lifespan itself.
"""

from __future__ import annotations

from typing import Any, AsyncGenerator, Callable

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from sessionrelay.config import Config
from sessionrelay.main import create_app


@pytest.fixture
def relay_config(tmp_path: Any) -> Config:
    config = Config.defaults()
    config.store.path = str(tmp_path / "relay.db")
    return config


@pytest.fixture
async def relay_app(relay_config: Config, clock: Any) -> AsyncGenerator[FastAPI, None]:
    application = create_app(relay_config)
    application.state.clock = clock
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def client(relay_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=relay_app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def auth_headers(make_token: Callable[..., str]) -> Callable[..., dict[str, str]]:
    """auth_headers(sub) → {"Authorization": "Bearer <valid token for sub>"}."""

    def _headers(sub: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(sub=sub)}"}

    return _headers
