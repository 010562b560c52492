"""RateLimiter — per-subject, per-action sliding-window admission control.

A check is admitted iff fewer than ``max_count`` admitted events for
``(subject_id, action)`` have ``occurred_at > now - window``. Admission and
recording happen in ONE store operation, so two concurrent checks for the
same key can never both take the last slot.

Denied attempts are not recorded: a client that keeps retrying while limited
does not extend its own lockout. The window recovers as soon as the oldest
admitted event ages out.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from sessionrelay.config import RateLimitPolicy
from sessionrelay.constants import (
    RATE_LIMIT_ACTION_MAX_LEN,
    RATE_LIMIT_MAX_COUNT_CEILING,
    RATE_LIMIT_WINDOW_MINUTES_CEILING,
)
from sessionrelay.models.errors import InvalidInputError, RateLimitedError
from sessionrelay.store.protocol import RelayStore
from sessionrelay.utils.clock import Clock, SystemClock
from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Admission control over the store's rate-limit event log.

    Usage:
        limiter = RateLimiter(store, policies=config.rate_limits.policies)
        await limiter.enforce(user_id, "user_search")   # raises RateLimitedError
    """

    def __init__(
        self,
        store: RelayStore,
        policies: Optional[dict[str, RateLimitPolicy]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._policies = dict(policies or {})
        self._clock = clock or SystemClock()

    @property
    def policies(self) -> dict[str, RateLimitPolicy]:
        return dict(self._policies)

    async def check_and_record(
        self,
        subject_id: str,
        action: str,
        max_count: int,
        window_minutes: int,
    ) -> bool:
        """Admit and record one attempt, or deny without recording.

        Raises:
            InvalidInputError: On an empty subject, a blank or over-long action,
                               or a limit outside its allowed range.
            TransientStorageError: If the store fails. Callers must treat this
                                   as a failure, never as an admit.
        """
        _validate(subject_id, action, max_count, window_minutes)

        now = self._clock.now()
        window_start = now - timedelta(minutes=window_minutes)
        admitted = await self._store.record_event_if_under_limit(
            subject_id=subject_id,
            action=action,
            now=now,
            window_start=window_start,
            max_count=max_count,
        )
        if not admitted:
            logger.info(
                "rate_limit_denied",
                subject_id=subject_id,
                action=action,
                max_count=max_count,
                window_minutes=window_minutes,
            )
        return admitted

    async def check(self, subject_id: str, action: str) -> bool:
        """check_and_record() with the configured policy for ``action``."""
        policy = self._policies.get(action)
        if policy is None:
            raise InvalidInputError(f"No rate limit policy configured for action '{action}'")
        return await self.check_and_record(
            subject_id, action, policy.max_count, policy.window_minutes
        )

    async def enforce(self, subject_id: str, action: str) -> None:
        """check() that raises RateLimitedError on denial."""
        if not await self.check(subject_id, action):
            raise RateLimitedError()


def _validate(subject_id: str, action: str, max_count: int, window_minutes: int) -> None:
    if not isinstance(subject_id, str) or not subject_id:
        raise InvalidInputError("subject_id must be a non-empty string")
    if not isinstance(action, str) or not action.strip():
        raise InvalidInputError("action must be a non-blank string")
    if len(action) > RATE_LIMIT_ACTION_MAX_LEN:
        raise InvalidInputError(f"action must be at most {RATE_LIMIT_ACTION_MAX_LEN} characters")
    if (
        isinstance(max_count, bool)
        or not isinstance(max_count, int)
        or not 1 <= max_count <= RATE_LIMIT_MAX_COUNT_CEILING
    ):
        raise InvalidInputError(f"max_count must be in [1, {RATE_LIMIT_MAX_COUNT_CEILING}]")
    if (
        isinstance(window_minutes, bool)
        or not isinstance(window_minutes, int)
        or not 1 <= window_minutes <= RATE_LIMIT_WINDOW_MINUTES_CEILING
    ):
        raise InvalidInputError(
            f"window_minutes must be in [1, {RATE_LIMIT_WINDOW_MINUTES_CEILING}]"
        )
