"""Health endpoint for SessionRelay.

Implements:
  GET /health — 503 before ``app.state.ready``, 200 with store status after

Polled by container/cloud health probes. The body never contains
configuration secrets or store paths.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from sessionrelay import __version__
from sessionrelay.store.protocol import RelayStore

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {
          "status": "ok" | "degraded",
          "store": "sqlite" | "supabase",
          "store_healthy": true | false,
          "version": "1.0.0"
        }

    Response body (503):
        {"error": {"code": "starting", "message": "SessionRelay is starting up."}}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "code": "starting",
                "message": "SessionRelay is starting up.",
            },
        )

    store: RelayStore = request.app.state.store
    store_healthy = await store.health_check()

    return {
        "status": "ok" if store_healthy else "degraded",
        "store": store.backend_name,
        "store_healthy": store_healthy,
        "version": __version__,
    }
