"""LocalSQLiteStore — aiosqlite-based async store.

Uses aiosqlite EXCLUSIVELY. The stdlib sqlite3 synchronous module is never
imported here.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent reads while writing)
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch, refuse startup
  - Long-lived connection in autocommit mode (isolation_level=None): opened in
    initialize(), closed in close()
  - Every mutation is ONE statement; SQLite statement atomicity is the arbiter
    for single-use redemption and rate-limit admission
  - Conditional consume uses UPDATE ... RETURNING (SQLite >= 3.35)
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime
from typing import Any, Awaitable, Optional, TypeVar

import aiosqlite

from sessionrelay.constants import DEFAULT_STORE_TIMEOUT_S
from sessionrelay.models.errors import CodeCollisionError, RelayError, TransientStorageError
from sessionrelay.models.handoff import HandoffCredentials, HandoffRecord, ProfileSummary
from sessionrelay.store.serialization import escape_like, from_db_timestamp, to_db_timestamp
from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS auth_handoff_codes (
    id              TEXT PRIMARY KEY,
    code            TEXT NOT NULL UNIQUE,
    subject_id      TEXT NOT NULL,
    access_token    TEXT NOT NULL,
    refresh_token   TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    expires_at      TEXT NOT NULL,
    consumed_at     TEXT
);

CREATE INDEX IF NOT EXISTS idx_handoff_expires_at
    ON auth_handoff_codes(expires_at);

CREATE TABLE IF NOT EXISTS rate_limit_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id      TEXT NOT NULL,
    action          TEXT NOT NULL CHECK(length(action) BETWEEN 1 AND 64),
    occurred_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rate_limit_subject_action_time
    ON rate_limit_events(subject_id, action, occurred_at);

CREATE TABLE IF NOT EXISTS public_profiles (
    user_id         TEXT PRIMARY KEY,
    username        TEXT NOT NULL UNIQUE,
    avatar_url      TEXT
);
"""

_SCHEMA_VERSION = 1

_CONSUME_SQL = """
UPDATE auth_handoff_codes
   SET consumed_at = ?
 WHERE code = ?
   AND consumed_at IS NULL
   AND expires_at > ?
RETURNING access_token, refresh_token
"""

_RECORD_IF_UNDER_LIMIT_SQL = """
INSERT INTO rate_limit_events (subject_id, action, occurred_at)
SELECT ?, ?, ?
 WHERE (SELECT COUNT(*) FROM rate_limit_events
         WHERE subject_id = ? AND action = ? AND occurred_at > ?) < ?
"""


# ─── Row deserialiser ─────────────────────────────────────────────────────────


def _row_to_handoff_record(row: aiosqlite.Row) -> HandoffRecord:
    return HandoffRecord(
        id=row["id"],
        code=row["code"],
        subject_id=row["subject_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        created_at=from_db_timestamp(row["created_at"]),  # type: ignore[arg-type]
        expires_at=from_db_timestamp(row["expires_at"]),  # type: ignore[arg-type]
        consumed_at=from_db_timestamp(row["consumed_at"]),
    )


# ─── LocalSQLiteStore ─────────────────────────────────────────────────────────


class LocalSQLiteStore:
    """Async SQLite store using aiosqlite exclusively.

    Default path: ~/.sessionrelay/relay.db
    Override via: RELAY_DB_PATH environment variable (see store/factory.py)
    Or pass db_path explicitly (used in tests).

    Usage:
        store = LocalSQLiteStore(db_path="/tmp/relay.db")
        await store.initialize()   # raises RuntimeError on schema version mismatch
        creds = await store.consume_handoff_code("AB12CD", now)
        await store.close()
    """

    backend_name = "sqlite"

    def __init__(
        self,
        db_path: str = "~/.sessionrelay/relay.db",
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
    ) -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._timeout_s = timeout_s
        self._db: Optional[aiosqlite.Connection] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the SQLite connection, enable WAL mode, and create/verify schema.

        PRAGMA user_version:
          - 0: fresh DB → create schema, set user_version=1
          - 1: compatible schema → no-op (idempotent)
          - other: raises RuntimeError

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1, or the
                          SQLite library is too old for UPDATE ... RETURNING.
                          The FastAPI lifespan lets this propagate and refuses startup.
        """
        if aiosqlite.sqlite_version_info < (3, 35, 0):
            raise RuntimeError(
                f"SQLite {aiosqlite.sqlite_version} is too old; "
                "SessionRelay requires SQLite >= 3.35 for UPDATE ... RETURNING."
            )

        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute("PRAGMA busy_timeout=5000;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            logger.info(
                "relay_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "relay_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported relay database schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

    async def close(self) -> None:
        """Close the aiosqlite connection gracefully."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("relay_db_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        """Returns True if the DB connection is alive and queryable."""
        if self._db is None:
            return False

        async def _ping() -> None:
            async with self._conn.execute("SELECT 1") as cursor:
                await cursor.fetchone()

        try:
            await asyncio.wait_for(_ping(), timeout=self._timeout_s)
            return True
        except (aiosqlite.Error, asyncio.TimeoutError, ValueError):
            return False

    # ── Handoff codes ─────────────────────────────────────────────────────────

    async def insert_handoff_code(self, record: HandoffRecord) -> None:
        async def _insert() -> None:
            try:
                await self._conn.execute(
                    """INSERT INTO auth_handoff_codes
                       (id, code, subject_id, access_token, refresh_token,
                        created_at, expires_at, consumed_at)
                       VALUES (?,?,?,?,?,?,?,NULL)""",
                    (
                        record.id,
                        record.code,
                        record.subject_id,
                        record.access_token,
                        record.refresh_token,
                        to_db_timestamp(record.created_at),
                        to_db_timestamp(record.expires_at),
                    ),
                )
            except aiosqlite.IntegrityError as exc:
                raise CodeCollisionError(record.code) from exc

        await self._guarded("insert_handoff_code", _insert())

    async def consume_handoff_code(
        self, code: str, now: datetime
    ) -> Optional[HandoffCredentials]:
        async def _consume() -> list[Any]:
            now_s = to_db_timestamp(now)
            async with self._conn.execute(_CONSUME_SQL, (now_s, code, now_s)) as cursor:
                # Draining the cursor completes the statement
                return list(await cursor.fetchall())

        rows = await self._guarded("consume_handoff_code", _consume())
        if not rows:
            return None
        return HandoffCredentials(
            access_token=rows[0]["access_token"],
            refresh_token=rows[0]["refresh_token"],
        )

    async def get_handoff_code(self, code: str) -> Optional[HandoffRecord]:
        async def _get() -> Optional[HandoffRecord]:
            async with self._conn.execute(
                "SELECT * FROM auth_handoff_codes WHERE code = ?", (code,)
            ) as cursor:
                row = await cursor.fetchone()
            return _row_to_handoff_record(row) if row is not None else None

        return await self._guarded("get_handoff_code", _get())

    async def delete_handoff_code(self, code: str) -> None:
        async def _delete() -> None:
            await self._conn.execute("DELETE FROM auth_handoff_codes WHERE code = ?", (code,))

        await self._guarded("delete_handoff_code", _delete())

    async def delete_expired_handoff_codes(self, now: datetime) -> int:
        async def _delete() -> int:
            cursor = await self._conn.execute(
                "DELETE FROM auth_handoff_codes WHERE expires_at < ?",
                (to_db_timestamp(now),),
            )
            return cursor.rowcount

        return await self._guarded("delete_expired_handoff_codes", _delete())

    # ── Rate-limit event log ──────────────────────────────────────────────────

    async def record_event_if_under_limit(
        self,
        subject_id: str,
        action: str,
        now: datetime,
        window_start: datetime,
        max_count: int,
    ) -> bool:
        async def _record() -> bool:
            cursor = await self._conn.execute(
                _RECORD_IF_UNDER_LIMIT_SQL,
                (
                    subject_id,
                    action,
                    to_db_timestamp(now),
                    subject_id,
                    action,
                    to_db_timestamp(window_start),
                    max_count,
                ),
            )
            return cursor.rowcount == 1

        return await self._guarded("record_event_if_under_limit", _record())

    async def delete_rate_limit_events_before(self, cutoff: datetime) -> int:
        async def _delete() -> int:
            cursor = await self._conn.execute(
                "DELETE FROM rate_limit_events WHERE occurred_at <= ?",
                (to_db_timestamp(cutoff),),
            )
            return cursor.rowcount

        return await self._guarded("delete_rate_limit_events_before", _delete())

    # ── Profile directory ─────────────────────────────────────────────────────

    async def search_profiles(
        self, fragment: str, exclude_user_id: str, limit: int
    ) -> list[ProfileSummary]:
        async def _search() -> list[ProfileSummary]:
            async with self._conn.execute(
                """SELECT user_id, username, avatar_url
                     FROM public_profiles
                    WHERE username LIKE ? ESCAPE '\\'
                      AND user_id != ?
                    ORDER BY username
                    LIMIT ?""",
                (f"%{escape_like(fragment)}%", exclude_user_id, limit),
            ) as cursor:
                rows = await cursor.fetchall()
            return [
                ProfileSummary(
                    user_id=row["user_id"],
                    username=row["username"],
                    avatar_url=row["avatar_url"],
                )
                for row in rows
            ]

        return await self._guarded("search_profiles", _search())

    async def upsert_profile(self, profile: ProfileSummary) -> None:
        """Write a profile row. The profile table is owned by the account
        service in production; this exists for local development and tests."""

        async def _upsert() -> None:
            await self._conn.execute(
                """INSERT INTO public_profiles (user_id, username, avatar_url)
                   VALUES (?,?,?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       username = excluded.username,
                       avatar_url = excluded.avatar_url""",
                (profile.user_id, profile.username, profile.avatar_url),
            )

        await self._guarded("upsert_profile", _upsert())

    # ── Internals ─────────────────────────────────────────────────────────────

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise TransientStorageError("Store is not initialized")
        return self._db

    async def _guarded(self, operation: str, coro: Awaitable[T]) -> T:
        """Bound ``coro`` by the store timeout and map driver failures.

        RelayError and CodeCollisionError pass through unchanged; timeouts and
        aiosqlite errors become TransientStorageError. The driver message is
        logged, never returned to the caller.
        """
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout_s)
        except (RelayError, CodeCollisionError):
            raise
        except asyncio.TimeoutError as exc:
            logger.error("relay_db_timeout", operation=operation, timeout_s=self._timeout_s)
            raise TransientStorageError() from exc
        except (aiosqlite.Error, ValueError) as exc:
            logger.error(
                "relay_db_error",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransientStorageError() from exc
