"""Store factory — backend selection and initialization.

Backend selection:
  1. If SUPABASE_URL and SUPABASE_KEY are both set: use SupabaseStore
  2. Otherwise: use LocalSQLiteStore (default)

LocalSQLiteStore path:
  Default: config.store.path (``~/.sessionrelay/relay.db``)
  Override: RELAY_DB_PATH environment variable (applied by load_config())

PRAGMA version guard:
  LocalSQLiteStore.initialize() raises RuntimeError if PRAGMA user_version
  is not 0 (fresh) or 1 (expected). The FastAPI lifespan propagates this
  RuntimeError to refuse startup.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from sessionrelay.store.protocol import RelayStore
from sessionrelay.utils.logger import get_logger

if TYPE_CHECKING:
    from sessionrelay.config import Config

logger = get_logger(__name__)

# ─── Environment variable names ───────────────────────────────────────────────

_ENV_SUPABASE_URL = "SUPABASE_URL"
_ENV_SUPABASE_KEY = "SUPABASE_KEY"


async def create_store(config: "Config") -> RelayStore:
    """Create and initialize the appropriate store.

    Raises:
      RuntimeError: If the selected backend cannot initialize (schema version
                    mismatch, missing supabase package, unreachable client).
                    Propagated to FastAPI lifespan → process exits non-zero.
    """
    supabase_url = os.getenv(_ENV_SUPABASE_URL)
    supabase_key = os.getenv(_ENV_SUPABASE_KEY)

    if supabase_url and supabase_key:
        return await _create_supabase_store(supabase_url, supabase_key, config)
    return await _create_local_sqlite_store(config)


async def _create_supabase_store(url: str, key: str, config: "Config") -> RelayStore:
    from sessionrelay.store.supabase_backend import SupabaseStore

    store = SupabaseStore(url=url, key=key, timeout_s=config.store.timeout_s)
    await store.initialize()
    logger.info(
        "store_backend_selected",
        backend="SupabaseStore",
        # Never log the key. Only the URL host portion is logged.
        supabase_host=url.split("//")[-1].split(".")[0] if "//" in url else "unknown",
    )
    return store


async def _create_local_sqlite_store(config: "Config") -> RelayStore:
    from sessionrelay.store.sqlite_backend import LocalSQLiteStore

    store = LocalSQLiteStore(db_path=config.store.path, timeout_s=config.store.timeout_s)
    await store.initialize()
    logger.info(
        "store_backend_selected",
        backend="LocalSQLiteStore",
        db_path=config.store.path,
    )
    return store
