"""Unit tests for HandoffCodeService against a real LocalSQLiteStore.

Covers:
  - create(): code format, five-minute expiry, missing tokens, collision retry
  - redeem(): exactly-once, byte-identical credentials, expired vs used vs unknown
  - concurrency: N simultaneous redemptions of one code → exactly one success
  - malformed codes are rejected before any store access
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from sessionrelay.handoff.service import HANDOFF_CODE_TTL, HandoffCodeService
from sessionrelay.models.errors import (
    AlreadyUsedError,
    CodeCollisionError,
    ExpiredError,
    InvalidInputError,
    NotFoundError,
    TransientStorageError,
)
from sessionrelay.utils.codes import CodeGenerator

SUBJECT = "5b3e1d0c-2f4a-4c39-9d8e-7a6b5c4d3e2f"


class _ScriptedGenerator(CodeGenerator):
    """Yields a fixed sequence of codes, then the last one forever."""

    def __init__(self, codes: list[str]) -> None:
        super().__init__()
        self._codes = list(codes)

    def generate(self) -> str:
        return self._codes.pop(0) if len(self._codes) > 1 else self._codes[0]


@pytest.fixture
def service(sqlite_store: Any, clock: Any) -> HandoffCodeService:
    return HandoffCodeService(sqlite_store, clock=clock)


# ─── create() ─────────────────────────────────────────────────────────────────


class TestCreate:
    async def test_returns_well_formed_code(self, service: HandoffCodeService) -> None:
        issued = await service.create(SUBJECT, "access", "refresh")
        assert len(issued.code) == 6
        assert CodeGenerator().is_well_formed(issued.code)

    async def test_expires_five_minutes_after_creation(
        self, service: HandoffCodeService, clock: Any
    ) -> None:
        issued = await service.create(SUBJECT, "access", "refresh")
        assert issued.expires_at == clock.now() + timedelta(minutes=5)
        assert HANDOFF_CODE_TTL == timedelta(seconds=300)

    async def test_row_persisted_unconsumed(
        self, service: HandoffCodeService, sqlite_store: Any
    ) -> None:
        issued = await service.create(SUBJECT, "access", "refresh")
        record = await sqlite_store.get_handoff_code(issued.code)
        assert record is not None
        assert record.subject_id == SUBJECT
        assert record.consumed_at is None
        assert re.fullmatch(r"[0-9A-HJKMNP-TV-Z]{26}", record.id)

    @pytest.mark.parametrize(
        "access, refresh",
        [("", "refresh"), ("access", ""), (None, "refresh"), ("access", None)],
    )
    async def test_missing_tokens_rejected(
        self, service: HandoffCodeService, sqlite_store: Any, access: Any, refresh: Any
    ) -> None:
        with pytest.raises(InvalidInputError) as exc_info:
            await service.create(SUBJECT, access, refresh)
        assert exc_info.value.message == "Missing tokens"

    async def test_missing_tokens_never_touch_store(self) -> None:
        store = MagicMock()
        store.delete_expired_handoff_codes = AsyncMock()
        store.insert_handoff_code = AsyncMock()
        with pytest.raises(InvalidInputError):
            await HandoffCodeService(store).create(SUBJECT, "access", "")
        store.delete_expired_handoff_codes.assert_not_awaited()
        store.insert_handoff_code.assert_not_awaited()

    @pytest.mark.parametrize("access, refresh", [("", "r"), ("a", None)])
    def test_validate_tokens_rejects_missing(self, access: Any, refresh: Any) -> None:
        with pytest.raises(InvalidInputError):
            HandoffCodeService(MagicMock()).validate_tokens(access, refresh)

    def test_validate_tokens_accepts_both(self) -> None:
        assert HandoffCodeService(MagicMock()).validate_tokens("a", "r") is None

    async def test_create_sweeps_expired_codes(
        self, service: HandoffCodeService, sqlite_store: Any, clock: Any
    ) -> None:
        old = await service.create(SUBJECT, "a1", "r1")
        clock.advance(301)
        await service.create(SUBJECT, "a2", "r2")
        assert await sqlite_store.get_handoff_code(old.code) is None

    async def test_collision_regenerates(self, sqlite_store: Any, clock: Any) -> None:
        first = HandoffCodeService(
            sqlite_store, generator=_ScriptedGenerator(["AAAAAA"]), clock=clock
        )
        await first.create(SUBJECT, "a1", "r1")

        second = HandoffCodeService(
            sqlite_store,
            generator=_ScriptedGenerator(["AAAAAA", "AAAAAA", "BBBBBB"]),
            clock=clock,
        )
        issued = await second.create(SUBJECT, "a2", "r2")
        assert issued.code == "BBBBBB"

    async def test_collisions_exhausted_is_storage_failure(
        self, sqlite_store: Any, clock: Any
    ) -> None:
        service = HandoffCodeService(
            sqlite_store,
            generator=_ScriptedGenerator(["AAAAAA"]),
            clock=clock,
            max_collision_retries=2,
        )
        await service.create(SUBJECT, "a1", "r1")
        with pytest.raises(TransientStorageError) as exc_info:
            await service.create(SUBJECT, "a2", "r2")
        assert exc_info.value.message == "Failed to store code"

    async def test_collision_retry_count(self) -> None:
        store = MagicMock()
        store.delete_expired_handoff_codes = AsyncMock(return_value=0)
        store.insert_handoff_code = AsyncMock(side_effect=CodeCollisionError("AAAAAA"))
        service = HandoffCodeService(store, max_collision_retries=5)
        with pytest.raises(TransientStorageError):
            await service.create(SUBJECT, "a", "r")
        assert store.insert_handoff_code.await_count == 6

    async def test_store_failure_propagates(self) -> None:
        store = MagicMock()
        store.delete_expired_handoff_codes = AsyncMock(return_value=0)
        store.insert_handoff_code = AsyncMock(side_effect=TransientStorageError())
        service = HandoffCodeService(store)
        with pytest.raises(TransientStorageError):
            await service.create(SUBJECT, "a", "r")
        assert store.insert_handoff_code.await_count == 1


# ─── redeem() ─────────────────────────────────────────────────────────────────


class TestRedeem:
    async def test_credentials_returned_byte_identical(
        self, service: HandoffCodeService
    ) -> None:
        access = "eyJhbGciOiJIUzI1NiJ9.payload.sig-ñ"
        refresh = "r3fr3sh/+=token"
        issued = await service.create(SUBJECT, access, refresh)
        creds = await service.redeem(issued.code)
        assert creds.access_token == access
        assert creds.refresh_token == refresh

    async def test_second_redeem_already_used(self, service: HandoffCodeService) -> None:
        issued = await service.create(SUBJECT, "a", "r")
        await service.redeem(issued.code)
        with pytest.raises(AlreadyUsedError):
            await service.redeem(issued.code)

    async def test_lowercase_and_whitespace_accepted(self, service: HandoffCodeService) -> None:
        issued = await service.create(SUBJECT, "a", "r")
        creds = await service.redeem(f"  {issued.code.lower()} ")
        assert creds.access_token == "a"

    async def test_unknown_code_not_found(self, service: HandoffCodeService) -> None:
        with pytest.raises(NotFoundError):
            await service.redeem("ZZZZZZ")

    async def test_expired_after_301_seconds(
        self, service: HandoffCodeService, sqlite_store: Any, clock: Any
    ) -> None:
        issued = await service.create(SUBJECT, "a", "r")
        clock.advance(301)
        with pytest.raises(ExpiredError):
            await service.redeem(issued.code)
        # Expired rows are deleted on detection
        assert await sqlite_store.get_handoff_code(issued.code) is None
        with pytest.raises(NotFoundError):
            await service.redeem(issued.code)

    async def test_expiry_boundary_is_exclusive(
        self, service: HandoffCodeService, clock: Any
    ) -> None:
        issued = await service.create(SUBJECT, "a", "r")
        clock.advance(300)
        with pytest.raises(ExpiredError):
            await service.redeem(issued.code)

    async def test_redeem_just_before_expiry(
        self, service: HandoffCodeService, clock: Any
    ) -> None:
        issued = await service.create(SUBJECT, "a", "r")
        clock.advance(299)
        creds = await service.redeem(issued.code)
        assert creds.refresh_token == "r"

    async def test_consumed_then_expired_reports_expired(
        self, service: HandoffCodeService, clock: Any
    ) -> None:
        issued = await service.create(SUBJECT, "a", "r")
        await service.redeem(issued.code)
        clock.advance(400)
        with pytest.raises(ExpiredError):
            await service.redeem(issued.code)

    async def test_scripted_code_scenario(self, sqlite_store: Any, clock: Any) -> None:
        service = HandoffCodeService(
            sqlite_store, generator=_ScriptedGenerator(["AB12CD"]), clock=clock
        )
        issued = await service.create(SUBJECT, "tokA", "tokR")
        assert issued.code == "AB12CD"

        clock.advance(10)
        creds = await service.redeem("AB12CD")
        assert (creds.access_token, creds.refresh_token) == ("tokA", "tokR")

        clock.advance(5)
        with pytest.raises(AlreadyUsedError):
            await service.redeem("AB12CD")

    @pytest.mark.parametrize("code", ["", "ABC", "AB12CDE", "AB-2CD", None, 123456])
    async def test_malformed_code_never_touches_store(self, code: Any) -> None:
        store = MagicMock()
        store.consume_handoff_code = AsyncMock()
        store.get_handoff_code = AsyncMock()
        service = HandoffCodeService(store)
        with pytest.raises(InvalidInputError) as exc_info:
            await service.redeem(code)
        assert exc_info.value.message == "Invalid code format"
        store.consume_handoff_code.assert_not_awaited()
        store.get_handoff_code.assert_not_awaited()


# ─── Concurrency ──────────────────────────────────────────────────────────────


class TestConcurrentRedeem:
    async def test_exactly_one_of_fifty_wins(self, service: HandoffCodeService) -> None:
        issued = await service.create(SUBJECT, "a", "r")

        results = await asyncio.gather(
            *(service.redeem(issued.code) for _ in range(50)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 49
        assert all(isinstance(f, AlreadyUsedError) for f in failures)

    async def test_each_code_redeemed_once_under_mixed_load(
        self, service: HandoffCodeService
    ) -> None:
        codes = [(await service.create(SUBJECT, f"a{i}", f"r{i}")).code for i in range(5)]

        results = await asyncio.gather(
            *(service.redeem(code) for code in codes for _ in range(10)),
            return_exceptions=True,
        )

        wins = [r for r in results if not isinstance(r, BaseException)]
        assert sorted(w.access_token for w in wins) == [f"a{i}" for i in range(5)]
