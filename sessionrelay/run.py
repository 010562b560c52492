"""Programmatic uvicorn entry point for SessionRelay.

Reads host and port from the loaded config (127.0.0.1:8787 by default) and
starts uvicorn with hardened defaults:

  --limit-concurrency 100        Max 100 concurrent connections; HTTP 503 when exceeded
  --backlog 50                   OS connection queue depth; limits SYN flood exposure
  --timeout-keep-alive 5         Reduces Slow Loris attack window
  --timeout-graceful-shutdown 30 Bounded drain before the store is closed

Usage:
    python -m sessionrelay.run   # reads .sessionrelay/config.yaml
    sessionrelay                 # via pyproject.toml [project.scripts]

Configuring server.host: "0.0.0.0" is allowed but logs a SECURITY WARNING at
startup (see sessionrelay/config.py:load_config).
"""

from __future__ import annotations

import uvicorn

from sessionrelay.config import load_config
from sessionrelay.main import create_app

# ─── Uvicorn hardened defaults ────────────────────────────────────────────────

UVICORN_LIMIT_CONCURRENCY: int = 100

UVICORN_BACKLOG: int = 50

UVICORN_TIMEOUT_KEEP_ALIVE: int = 5

UVICORN_TIMEOUT_GRACEFUL_SHUTDOWN: int = 30


def main() -> None:
    """Start SessionRelay with hardened uvicorn defaults.

    The config is loaded once here and handed to create_app(), so CORS and the
    lifespan see the same values.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        timeout_graceful_shutdown=UVICORN_TIMEOUT_GRACEFUL_SHUTDOWN,
    )


if __name__ == "__main__":
    main()
