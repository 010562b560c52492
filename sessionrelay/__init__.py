"""SessionRelay: single-use authentication handoff codes and sliding-window rate limits.

Packages:
  - handoff/    — HandoffCodeService (create + exactly-once redeem)
  - ratelimit/  — RateLimiter (per-subject, per-action trailing window)
  - store/      — durable store Protocol + LocalSQLiteStore / SupabaseStore
  - api/        — FastAPI routers for /handoff/* and /search
  - auth/       — bearer-token authentication dependency
"""

__version__ = "1.0.0"
