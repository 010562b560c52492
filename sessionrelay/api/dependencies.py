"""Shared FastAPI dependencies for the API routers.

Service objects are built once by the lifespan and stored on ``app.state``;
these dependencies hand them to the handlers. Before the lifespan finishes
(``app.state.ready`` is False) every API route answers 503.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from sessionrelay.config import Config
from sessionrelay.handoff.service import HandoffCodeService
from sessionrelay.ratelimit.limiter import RateLimiter
from sessionrelay.store.protocol import RelayStore


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True.

    All API routes consume this dependency. /health handles the 503 case
    itself (to return a richer body).
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "code": "starting",
                "message": "SessionRelay is starting up.",
            },
        )


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_store(request: Request) -> RelayStore:
    return request.app.state.store


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_handoff_service(request: Request) -> HandoffCodeService:
    return request.app.state.handoff_service
