"""Sliding-window rate limiting backed by the store's event log."""

from sessionrelay.ratelimit.limiter import RateLimiter

__all__ = ["RateLimiter"]
