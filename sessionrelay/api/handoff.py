"""Handoff code endpoints.

Provides:
  POST /handoff/create  — authenticated; stores the caller's session under a
                          fresh single-use code, returns {code, expiresAt}
  POST /handoff/redeem  — unauthenticated (the code IS the capability);
                          returns {accessToken, refreshToken} exactly once

Both endpoints sit behind the slowapi per-address cap. Create is additionally
limited per subject (``handoff_create``), redeem per client address
(``handoff_redeem``), since the redeeming context has no session yet.

Tokens and codes are never logged.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from slowapi.util import get_remote_address

from sessionrelay.api.dependencies import get_handoff_service, get_rate_limiter
from sessionrelay.auth.limiter import limiter, per_address_rate_limit
from sessionrelay.auth.middleware import authenticate_request
from sessionrelay.handoff.service import HandoffCodeService
from sessionrelay.ratelimit.limiter import RateLimiter

router = APIRouter(prefix="/handoff", tags=["handoff"])

CREATE_ACTION = "handoff_create"
REDEEM_ACTION = "handoff_redeem"


# ─── Request Models ───────────────────────────────────────────────────────────


class CreateHandoffRequest(BaseModel):
    """Request body for POST /handoff/create.

    subject_id is always sourced from the verified bearer token, never from
    the body.
    """

    access_token: Optional[str] = Field(default=None, alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class RedeemHandoffRequest(BaseModel):
    """Request body for POST /handoff/redeem."""

    code: Optional[str] = None


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/create")
@limiter.limit(per_address_rate_limit)
async def create_handoff_code(
    request: Request,
    body: CreateHandoffRequest,
    subject_id: str = Depends(authenticate_request),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    service: HandoffCodeService = Depends(get_handoff_service),
) -> dict:
    """Issue a handoff code for the caller's current session.

    Returns:
        JSON: {"code": "AB12CD", "expiresAt": "<ISO 8601 UTC>"}
    """
    service.validate_tokens(body.access_token, body.refresh_token)
    await rate_limiter.enforce(subject_id, CREATE_ACTION)
    issued = await service.create(subject_id, body.access_token, body.refresh_token)
    return {
        "code": issued.code,
        "expiresAt": issued.expires_at.isoformat(),
    }


@router.post("/redeem")
@limiter.limit(per_address_rate_limit)
async def redeem_handoff_code(
    request: Request,
    body: RedeemHandoffRequest,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    service: HandoffCodeService = Depends(get_handoff_service),
) -> dict:
    """Redeem a handoff code. Succeeds at most once per code.

    Returns:
        JSON: {"accessToken": "...", "refreshToken": "..."}
    """
    code = service.validate_code(body.code)
    await rate_limiter.enforce(f"addr:{get_remote_address(request)}", REDEEM_ACTION)
    credentials = await service.redeem(code)
    return {
        "accessToken": credentials.access_token,
        "refreshToken": credentials.refresh_token,
    }
