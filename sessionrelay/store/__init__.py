"""SessionRelay store package.

Re-exports the public API for ergonomic imports:

    from sessionrelay.store import RelayStore, create_store

Layout:
    protocol.py         — RelayStore Protocol
    serialization.py    — timestamp encoding + LIKE escaping
    sqlite_backend.py   — LocalSQLiteStore (aiosqlite, WAL mode, PRAGMA version guard)
    supabase_backend.py — SupabaseStore (async client, conditional update, RPC limiter)
    supabase_schema.sql — Postgres tables + relay_check_rate_limit()
    factory.py          — create_store() — backend selection by env vars
    sweeper.py          — run_expiry_sweeper() background task
"""

from sessionrelay.store.factory import create_store
from sessionrelay.store.protocol import RelayStore

__all__ = [
    "RelayStore",
    "create_store",
]
