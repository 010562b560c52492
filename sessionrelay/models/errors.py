"""Failure taxonomy for SessionRelay.

Every failure that may cross the HTTP boundary is a RelayError subclass with a
stable machine-readable ``code`` and the HTTP ``status_code`` it maps to.
Handlers never build error responses by hand: they raise, and the exception
handler registered in main.create_app() renders build_error_response().

Retry semantics:
  - InvalidInput, Unauthenticated, NotFound, Expired, AlreadyUsed — never retried.
  - RateLimited — client backs off, retries later (never immediately).
  - TransientStorage, UpstreamFailure — caller may retry with backoff. Nothing
    is retried internally except bounded code-collision regeneration.
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for all client-visible SessionRelay failures.

    ``message`` is safe to show to the caller. It must never contain token
    payloads or storage-engine error text.
    """

    code: str = "internal_error"
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInputError(RelayError):
    """Malformed or out-of-policy request. The client must correct it."""

    code = "invalid_input"
    status_code = 400
    default_message = "Invalid input"


class UnauthenticatedError(RelayError):
    """Missing or invalid bearer credentials."""

    code = "unauthenticated"
    status_code = 401
    default_message = "Unauthorized"


class NotFoundError(RelayError):
    """No handoff code with this value exists (never did, or was swept)."""

    code = "not_found"
    status_code = 404
    default_message = "Invalid or expired code"


class AlreadyUsedError(RelayError):
    """The handoff code was already redeemed."""

    code = "already_used"
    status_code = 409
    default_message = "Code has already been used"


class ExpiredError(RelayError):
    """The handoff code's lifetime has elapsed."""

    code = "expired"
    status_code = 410
    default_message = "Code has expired"


class RateLimitedError(RelayError):
    """The subject exceeded its allowed rate for this action."""

    code = "rate_limited"
    status_code = 429
    default_message = "Rate limit exceeded"


class TransientStorageError(RelayError):
    """The store failed or timed out. Safe for the caller to retry later."""

    code = "storage_unavailable"
    status_code = 500
    default_message = "Storage temporarily unavailable"


class UpstreamFailureError(RelayError):
    """An upstream dependency (e.g. the identity provider) failed."""

    code = "upstream_failure"
    status_code = 502
    default_message = "Upstream service unavailable"


class CodeCollisionError(Exception):
    """Raised by a store when an inserted code violates the UNIQUE constraint.

    Internal only: HandoffCodeService catches it and regenerates. Never
    rendered to a client.
    """
