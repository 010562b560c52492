"""Value encoding shared by the store backends.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision (``2026-10-19T12:00:00.000000+00:00``). Every stored value has the
same width and offset, so lexical comparison in SQL orders them
chronologically. The SQLite backend relies on this for ``expires_at > ?`` and
``occurred_at > ?``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def to_db_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    # PostgREST renders UTC as "Z" on some versions
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def escape_like(fragment: str, escape: str = "\\") -> str:
    """Escape LIKE/ILIKE wildcards so ``fragment`` matches literally.

    ``_`` is a legal username character and would otherwise match any
    single character.
    """
    return (
        fragment.replace(escape, escape + escape)
        .replace("%", escape + "%")
        .replace("_", escape + "_")
    )
