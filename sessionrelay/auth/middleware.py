"""Bearer JWT authentication for SessionRelay.

Provides ``authenticate_request()``: a FastAPI Depends()-compatible async
dependency that verifies the caller's session JWT (issued by the external
identity provider) and returns the subject id.

CRITICAL INVARIANT: authenticate_request() raises UnauthenticatedError BEFORE
any rate-limit check, store access, or code generation. Handlers MUST depend
on it so that an auth failure short-circuits the handler.

Verification (python-jose):
  - signature: HS256 with RELAY_JWT_SECRET (env only, read per request)
  - ``exp`` in the future
  - ``aud`` == config.auth.audience (``authenticated`` by default)
  - ``sub`` present and a UUID

The raw token is never logged.
"""

from __future__ import annotations

import os
import re
import uuid
from typing import Optional

from fastapi import Request
from jose import JWTError, jwt  # type: ignore[import-untyped]

from sessionrelay.config import AuthConfig
from sessionrelay.models.errors import UnauthenticatedError
from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)

_ENV_JWT_SECRET = "RELAY_JWT_SECRET"

_BEARER_RE = re.compile(r"^Bearer\s+(\S+)$", re.IGNORECASE)


def _jwt_secret() -> Optional[str]:
    """Read RELAY_JWT_SECRET per request so tests can monkeypatch.setenv() it."""
    return os.environ.get(_ENV_JWT_SECRET) or None


def _extract_bearer(authorization: str) -> Optional[str]:
    if not authorization:
        return None
    m = _BEARER_RE.match(authorization.strip())
    return m.group(1) if m else None


def _auth_config(request: Request) -> AuthConfig:
    config = getattr(request.app.state, "config", None)
    return config.auth if config is not None else AuthConfig()


def verify_access_token(token: str, secret: str, auth_config: AuthConfig) -> str:
    """Verify ``token`` and return its ``sub`` claim.

    Raises:
        UnauthenticatedError: On any signature, expiry, audience or subject problem.
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=auth_config.algorithms,
            audience=auth_config.audience,
        )
    except JWTError as exc:
        logger.warning("jwt_rejected", error_type=type(exc).__name__)
        raise UnauthenticatedError() from exc

    subject = payload.get("sub")
    if not isinstance(subject, str):
        logger.warning("jwt_rejected", reason="missing_sub")
        raise UnauthenticatedError()
    try:
        uuid.UUID(subject)
    except ValueError as exc:
        logger.warning("jwt_rejected", reason="sub_not_uuid")
        raise UnauthenticatedError() from exc
    return subject


async def authenticate_request(request: Request) -> str:
    """FastAPI dependency: authenticate the caller's bearer session token.

    Returns:
        subject_id (str): The ``sub`` claim of the verified token.

    Raises:
        UnauthenticatedError(401): Missing header, malformed header, or a token
                                   that fails verification.
    """
    token = _extract_bearer(request.headers.get("Authorization", ""))
    if token is None:
        logger.warning(
            "bearer_token_missing",
            path=str(request.url.path),
            method=request.method,
        )
        raise UnauthenticatedError()

    secret = _jwt_secret()
    if secret is None:
        logger.error("jwt_secret_not_configured", env_var=_ENV_JWT_SECRET)
        raise UnauthenticatedError()

    return verify_access_token(token, secret, _auth_config(request))
