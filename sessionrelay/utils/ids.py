"""Identifier generation for SessionRelay.

Used for:
  - handoff row ids (``auth_handoff_codes.id``)
  - per-request correlation ids (``X-Request-ID`` header, ``request_id`` log field)

Handoff *codes* are not generated here; they come from utils/codes.py, which
draws from the ``secrets`` CSPRNG over the handoff alphabet.

Uses the ``python-ulid`` library (see pyproject.toml).
"""

from __future__ import annotations

from ulid import ULID


def generate_id() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Crockford Base32 (``[0-9A-HJKMNP-TV-Z]``), lexicographically sortable by
    creation time, so row ids and request ids order the same way logs do.
    """
    return str(ULID())
