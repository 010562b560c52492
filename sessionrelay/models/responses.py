"""HTTP error response builder.

Body shape for every failure (stable; clients switch on ``error.code``):

.. code-block:: json

    {"error": {"code": "already_used", "message": "Code has already been used"}}

No stack traces, storage-engine messages or credential payloads ever appear
in this body.
"""

from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse

from sessionrelay.models.errors import RelayError


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Build the structured JSON error response."""
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
        headers=headers,
    )


def build_relay_error_response(exc: RelayError) -> JSONResponse:
    """Render a RelayError with its own status code and machine-readable kind."""
    headers = None
    if exc.status_code == 429:
        headers = {"Retry-After": "60"}
    return build_error_response(exc.status_code, exc.code, exc.message, headers=headers)
