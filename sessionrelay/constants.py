"""Shared constants for SessionRelay.

Fixed security parameters live here. Anything an operator may tune
(rate-limit policies, store timeouts, code length) lives in config.py instead.
"""

# ─── Handoff Codes ───────────────────────────────────────────────────────────

# Lifetime of a handoff code, measured from creation. Fixed; never per-request.
HANDOFF_CODE_TTL_SECONDS: int = 300  # 5 minutes

# Code alphabet: uppercase ASCII letters + digits (36 symbols).
# Codes are stored and compared in this canonical (uppercase) form.
HANDOFF_CODE_ALPHABET: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

# Default and minimum code length. 36**6 ≈ 2.2e9 combinations.
DEFAULT_HANDOFF_CODE_LENGTH: int = 6
MIN_HANDOFF_CODE_LENGTH: int = 6
MAX_HANDOFF_CODE_LENGTH: int = 32

# Bounded regeneration on UNIQUE collision before giving up with a transient error.
DEFAULT_MAX_COLLISION_RETRIES: int = 5

# ─── Rate Limiter Bounds ─────────────────────────────────────────────────────

RATE_LIMIT_ACTION_MAX_LEN: int = 64
RATE_LIMIT_MAX_COUNT_CEILING: int = 10_000
RATE_LIMIT_WINDOW_MINUTES_CEILING: int = 10_080  # 7 days

# ─── Profile Search ──────────────────────────────────────────────────────────

SEARCH_QUERY_MIN_LEN: int = 2
SEARCH_QUERY_MAX_LEN: int = 30
DEFAULT_SEARCH_MAX_RESULTS: int = 10

# ─── Store ───────────────────────────────────────────────────────────────────

# Every store call is wrapped in asyncio.wait_for(timeout=...).
DEFAULT_STORE_TIMEOUT_S: float = 5.0

# Interval between background sweeps of expired codes and stale rate-limit events.
DEFAULT_SWEEP_INTERVAL_S: float = 300.0
