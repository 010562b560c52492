"""Shared per-address request cap for the handoff endpoints.

Uses slowapi (Starlette-compatible rate limiting) as a blanket cap in front of
the per-subject RateLimiter. It bounds unauthenticated redeem traffic from a
single address before any store work happens.

The Limiter instance is created here and shared between:
  - sessionrelay/api/handoff.py (route decorators)
  - sessionrelay/main.py        (app.state.limiter + RateLimitExceeded handler)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)

# Module-level limiter, imported by main.py and api/handoff.py
limiter = Limiter(key_func=get_remote_address)

DEFAULT_PER_ADDRESS_RATE_LIMIT = "60/minute"

_per_address_rate_limit = DEFAULT_PER_ADDRESS_RATE_LIMIT


def per_address_rate_limit() -> str:
    """Limit provider for ``@limiter.limit``; evaluated by slowapi per request."""
    return _per_address_rate_limit


def configure_per_address_rate_limit(value: str) -> None:
    """Set the blanket cap from config.rate_limits.per_address_limit."""
    global _per_address_rate_limit
    _per_address_rate_limit = value
    logger.debug("per_address_rate_limit_configured", limit=value)
