"""Request correlation middleware for SessionRelay.

Assigns every request an id, binds it into the structlog context so every log
line emitted while handling the request carries ``request_id``, and echoes it
back as ``X-Request-ID``.

An inbound ``X-Request-ID`` from a trusted proxy is reused when it is a short
token of safe characters; anything else is replaced.
"""

from __future__ import annotations

import re

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from sessionrelay.utils.ids import generate_id
from sessionrelay.utils.logger import clear_request_id, set_request_id

REQUEST_ID_HEADER = "X-Request-ID"

_SAFE_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9_-]{8,64}")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Registration (in create_app() in sessionrelay/main.py):
        application.add_middleware(RequestIdMiddleware)
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        inbound = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = inbound if _SAFE_REQUEST_ID_RE.fullmatch(inbound) else generate_id()

        request.state.request_id = request_id
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
