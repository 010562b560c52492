"""SupabaseStore — async Supabase (PostgREST) store.

All methods are async with a timeout (asyncio.wait_for). Unlike a
fire-and-forget sink, this store sits on the request path: failures are
logged and re-raised as TransientStorageError, never swallowed.

Atomic operations:
  - redemption: ``update().eq(code).is_(consumed_at, null).gt(expires_at, now)``
    is a single conditional UPDATE in Postgres; the returned rows decide success
  - rate limiting: the ``relay_check_rate_limit`` SQL function (see
    supabase_schema.sql) takes a per-(subject, action) advisory lock, counts,
    and inserts in one transaction

Install: pip install sessionrelay[supabase]  # includes supabase>=2.4.0

Environment:
  SUPABASE_URL  — required for SupabaseStore selection in factory.py
  SUPABASE_KEY  — required (service role key, not anon key)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Optional, TypeVar

from sessionrelay.constants import DEFAULT_STORE_TIMEOUT_S
from sessionrelay.models.errors import CodeCollisionError, RelayError, TransientStorageError
from sessionrelay.models.handoff import HandoffCredentials, HandoffRecord, ProfileSummary
from sessionrelay.store.serialization import escape_like, from_db_timestamp, to_db_timestamp
from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_HANDOFF_TABLE = "auth_handoff_codes"
_RATE_LIMIT_TABLE = "rate_limit_events"
_PROFILES_TABLE = "public_profiles"
_RATE_LIMIT_RPC = "relay_check_rate_limit"

_PG_UNIQUE_VIOLATION = "23505"


# ─── SupabaseStore ────────────────────────────────────────────────────────────


class SupabaseStore:
    """Async Supabase store.

    Usage:
        store = SupabaseStore(url="https://...", key="service-role-key")
        await store.initialize()
        creds = await store.consume_handoff_code("AB12CD", now)
        await store.close()

    Table schema (must be created in the Supabase project):
        See store/supabase_schema.sql. Columns match LocalSQLiteStore.
    """

    backend_name = "supabase"

    def __init__(
        self,
        url: str,
        key: str,
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
        client: Optional[Any] = None,
    ) -> None:
        self._url = url
        self._key = key
        self._timeout_s = timeout_s
        self._client: Optional[Any] = client

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create the async Supabase client.

        Raises:
            RuntimeError: If the supabase library is not installed or the
                          client cannot be created. Startup is refused.
        """
        if self._client is not None:
            return

        try:
            from supabase import create_async_client  # type: ignore[import-untyped]
        except ImportError as exc:
            raise RuntimeError(
                "SUPABASE_URL/SUPABASE_KEY are set but the supabase package is not "
                "installed. Install with: pip install sessionrelay[supabase]"
            ) from exc

        try:
            self._client = await asyncio.wait_for(
                create_async_client(self._url, self._key),
                timeout=self._timeout_s,
            )
        except Exception as exc:
            logger.error(
                "supabase_store_init_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise RuntimeError("Could not create the Supabase client") from exc

        logger.info("supabase_store_initialized", timeout_s=self._timeout_s)

    async def close(self) -> None:
        """Drop the Supabase client (HTTP clients are stateless)."""
        self._client = None
        logger.debug("supabase_store_closed")

    async def health_check(self) -> bool:
        """Returns True if Supabase is reachable within timeout. Never raises."""
        if self._client is None:
            return False
        try:
            response = await asyncio.wait_for(
                self._client.table(_HANDOFF_TABLE).select("id").limit(1).execute(),
                timeout=self._timeout_s,
            )
            return response is not None
        except Exception as exc:
            logger.error(
                "supabase_health_check_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

    # ── Handoff codes ─────────────────────────────────────────────────────────

    async def insert_handoff_code(self, record: HandoffRecord) -> None:
        async def _insert() -> None:
            try:
                await self._table(_HANDOFF_TABLE).insert(_record_to_dict(record)).execute()
            except Exception as exc:
                if getattr(exc, "code", None) == _PG_UNIQUE_VIOLATION:
                    raise CodeCollisionError(record.code) from exc
                raise

        await self._guarded("insert_handoff_code", _insert())

    async def consume_handoff_code(
        self, code: str, now: datetime
    ) -> Optional[HandoffCredentials]:
        now_s = to_db_timestamp(now)
        response = await self._guarded(
            "consume_handoff_code",
            self._table(_HANDOFF_TABLE)
            .update({"consumed_at": now_s})
            .eq("code", code)
            .is_("consumed_at", "null")
            .gt("expires_at", now_s)
            .execute(),
        )
        if not response.data:
            return None
        row = response.data[0]
        return HandoffCredentials(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
        )

    async def get_handoff_code(self, code: str) -> Optional[HandoffRecord]:
        response = await self._guarded(
            "get_handoff_code",
            self._table(_HANDOFF_TABLE).select("*").eq("code", code).limit(1).execute(),
        )
        if not response.data:
            return None
        return _dict_to_record(response.data[0])

    async def delete_handoff_code(self, code: str) -> None:
        await self._guarded(
            "delete_handoff_code",
            self._table(_HANDOFF_TABLE).delete().eq("code", code).execute(),
        )

    async def delete_expired_handoff_codes(self, now: datetime) -> int:
        response = await self._guarded(
            "delete_expired_handoff_codes",
            self._table(_HANDOFF_TABLE)
            .delete()
            .lt("expires_at", to_db_timestamp(now))
            .execute(),
        )
        return len(response.data) if response.data else 0

    # ── Rate-limit event log ──────────────────────────────────────────────────

    async def record_event_if_under_limit(
        self,
        subject_id: str,
        action: str,
        now: datetime,
        window_start: datetime,
        max_count: int,
    ) -> bool:
        response = await self._guarded(
            "record_event_if_under_limit",
            self._rpc(
                _RATE_LIMIT_RPC,
                {
                    "p_subject_id": subject_id,
                    "p_action": action,
                    "p_max_count": max_count,
                    "p_window_start": to_db_timestamp(window_start),
                    "p_now": to_db_timestamp(now),
                },
            ).execute(),
        )
        return response.data is True

    async def delete_rate_limit_events_before(self, cutoff: datetime) -> int:
        response = await self._guarded(
            "delete_rate_limit_events_before",
            self._table(_RATE_LIMIT_TABLE)
            .delete()
            .lte("occurred_at", to_db_timestamp(cutoff))
            .execute(),
        )
        return len(response.data) if response.data else 0

    # ── Profile directory ─────────────────────────────────────────────────────

    async def search_profiles(
        self, fragment: str, exclude_user_id: str, limit: int
    ) -> list[ProfileSummary]:
        response = await self._guarded(
            "search_profiles",
            self._table(_PROFILES_TABLE)
            .select("user_id, username, avatar_url")
            .ilike("username", f"%{escape_like(fragment)}%")
            .neq("user_id", exclude_user_id)
            .order("username")
            .limit(limit)
            .execute(),
        )
        return [
            ProfileSummary(
                user_id=row["user_id"],
                username=row["username"],
                avatar_url=row.get("avatar_url"),
            )
            for row in (response.data or [])
        ]

    # ── Internals ─────────────────────────────────────────────────────────────

    def _table(self, name: str) -> Any:
        if self._client is None:
            raise TransientStorageError("Store is not initialized")
        return self._client.table(name)

    def _rpc(self, fn: str, params: dict[str, Any]) -> Any:
        if self._client is None:
            raise TransientStorageError("Store is not initialized")
        return self._client.rpc(fn, params)

    async def _guarded(self, operation: str, coro: Awaitable[T]) -> T:
        """Bound ``coro`` by the store timeout and map client failures.

        postgrest/httpx raise a wide range of exception types; all of them are
        surfaced as TransientStorageError with the detail kept in the log.
        """
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout_s)
        except (RelayError, CodeCollisionError):
            raise
        except asyncio.TimeoutError as exc:
            logger.error("supabase_timeout", operation=operation, timeout_s=self._timeout_s)
            raise TransientStorageError() from exc
        except Exception as exc:
            logger.error(
                "supabase_operation_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransientStorageError() from exc


# ─── Serialisation helpers ────────────────────────────────────────────────────


def _record_to_dict(record: HandoffRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "code": record.code,
        "subject_id": record.subject_id,
        "access_token": record.access_token,
        "refresh_token": record.refresh_token,
        "created_at": to_db_timestamp(record.created_at),
        "expires_at": to_db_timestamp(record.expires_at),
        "consumed_at": None,
    }


def _dict_to_record(row: dict[str, Any]) -> HandoffRecord:
    return HandoffRecord(
        id=row["id"],
        code=row["code"],
        subject_id=row.get("subject_id", ""),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        created_at=from_db_timestamp(row["created_at"]),  # type: ignore[arg-type]
        expires_at=from_db_timestamp(row["expires_at"]),  # type: ignore[arg-type]
        consumed_at=from_db_timestamp(row.get("consumed_at")),
    )
