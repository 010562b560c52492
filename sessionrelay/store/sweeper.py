"""Background expiry sweeper.

Deletes expired handoff rows and rate-limit events that can no longer fall
inside any window RateLimiter accepts. Redemption never depends on this task: the
expiry comparison inside the conditional consume is what rejects stale codes.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

from sessionrelay.constants import RATE_LIMIT_WINDOW_MINUTES_CEILING
from sessionrelay.store.protocol import RelayStore
from sessionrelay.utils.clock import Clock
from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)

_ERROR_RETRY_S = 60.0


async def sweep_once(
    store: RelayStore,
    clock: Clock,
    event_retention_minutes: int = RATE_LIMIT_WINDOW_MINUTES_CEILING,
) -> tuple[int, int]:
    """Run one sweep. Returns (deleted_codes, deleted_events).

    Events are kept for the largest window RateLimiter accepts.
    """
    now = clock.now()
    deleted_codes = await store.delete_expired_handoff_codes(now)
    deleted_events = await store.delete_rate_limit_events_before(
        now - timedelta(minutes=event_retention_minutes)
    )
    if deleted_codes or deleted_events:
        logger.info(
            "expiry_sweep_complete",
            deleted_codes=deleted_codes,
            deleted_events=deleted_events,
        )
    return deleted_codes, deleted_events


async def run_expiry_sweeper(
    store: RelayStore,
    clock: Clock,
    interval_s: float,
    event_retention_minutes: int = RATE_LIMIT_WINDOW_MINUTES_CEILING,
) -> None:
    """Background asyncio task: sweep every ``interval_s`` seconds.

    Registered as asyncio.create_task() during FastAPI lifespan startup.
    NEVER propagates exceptions other than cancellation.

    Retry policy:
      - asyncio.CancelledError → re-raised (expected on shutdown)
      - Any other exception    → log ERROR, retry after 60 seconds
    """
    while True:
        try:
            await asyncio.sleep(interval_s)
            await sweep_once(store, clock, event_retention_minutes)

        except asyncio.CancelledError:
            logger.info("expiry_sweeper_cancelled")
            raise

        except Exception as exc:
            logger.error(
                "expiry_sweep_error",
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=_ERROR_RETRY_S,
            )
            try:
                await asyncio.sleep(_ERROR_RETRY_S)
            except asyncio.CancelledError:
                logger.info("expiry_sweeper_cancelled_during_retry_sleep")
                raise
