"""Handoff and profile records shared by the store backends and services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class HandoffRecord:
    """One row of ``auth_handoff_codes``.

    A row is redeemable iff ``consumed_at is None and now < expires_at``.
    ``subject_id`` is kept for diagnostics only; the code itself is the
    capability and no separate authorization check uses the subject.
    """

    id: str
    code: str
    subject_id: str
    access_token: str
    refresh_token: str
    created_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class HandoffCredentials:
    """The session payload released by a successful redemption. Never logged."""

    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return "HandoffCredentials(access_token=<redacted>, refresh_token=<redacted>)"


@dataclass(frozen=True)
class ProfileSummary:
    """Public profile row returned by username search."""

    user_id: str
    username: str
    avatar_url: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "avatar_url": self.avatar_url,
        }
