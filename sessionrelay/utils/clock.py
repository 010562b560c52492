"""Trusted time source.

Every timestamp the service writes or compares (created_at, expires_at,
consumed_at, rate-limit event times) comes from a Clock, so tests can move
time explicitly instead of sleeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of the current time. Must return timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
