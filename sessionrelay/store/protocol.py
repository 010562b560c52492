"""RelayStore Protocol — the persistence boundary for SessionRelay.

Three concerns share one backend (one connection / one client):

  - handoff codes     (``auth_handoff_codes``)
  - rate-limit events (``rate_limit_events``)
  - profile directory (``public_profiles``, read-only)

Every state-changing method is ONE conditional statement on the backend.
Callers never read-then-write; the statement's affected-row result decides
the outcome. This is what makes redemption single-use and the limiter exact
under concurrency.

Failure contract:
  - timeouts and driver errors → TransientStorageError (never swallowed)
  - UNIQUE violation on insert_handoff_code → CodeCollisionError
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from sessionrelay.models.handoff import HandoffCredentials, HandoffRecord, ProfileSummary


@runtime_checkable
class RelayStore(Protocol):
    """Pluggable store interface.

    Implementations: LocalSQLiteStore (default), SupabaseStore.
    Selection via create_store() factory (store/factory.py).
    """

    backend_name: str

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        ...

    async def health_check(self) -> bool:
        """Returns True if the backend is operational. Must not raise."""
        ...

    async def close(self) -> None:
        ...

    # ── Handoff codes ─────────────────────────────────────────────────────────

    async def insert_handoff_code(self, record: HandoffRecord) -> None:
        """Insert a fresh row. Raises CodeCollisionError if ``record.code`` exists."""
        ...

    async def consume_handoff_code(
        self, code: str, now: datetime
    ) -> Optional[HandoffCredentials]:
        """Atomically mark ``code`` consumed iff unconsumed and ``expires_at > now``.

        Returns the stored credentials when this call flipped the row, else None.
        """
        ...

    async def get_handoff_code(self, code: str) -> Optional[HandoffRecord]:
        """Diagnostic read used only to classify a failed consume."""
        ...

    async def delete_handoff_code(self, code: str) -> None:
        ...

    async def delete_expired_handoff_codes(self, now: datetime) -> int:
        """Delete rows with ``expires_at < now``. Returns the deleted count."""
        ...

    # ── Rate-limit event log ──────────────────────────────────────────────────

    async def record_event_if_under_limit(
        self,
        subject_id: str,
        action: str,
        now: datetime,
        window_start: datetime,
        max_count: int,
    ) -> bool:
        """Atomically count events with ``occurred_at > window_start`` and, when
        the count is below ``max_count``, append one at ``now``.

        Returns True iff the event was recorded (admitted).
        """
        ...

    async def delete_rate_limit_events_before(self, cutoff: datetime) -> int:
        ...

    # ── Profile directory ─────────────────────────────────────────────────────

    async def search_profiles(
        self, fragment: str, exclude_user_id: str, limit: int
    ) -> list[ProfileSummary]:
        """Case-insensitive substring match on username, caller excluded."""
        ...
