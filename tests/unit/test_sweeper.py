"""Unit tests for the background expiry sweeper."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from sessionrelay.constants import RATE_LIMIT_WINDOW_MINUTES_CEILING
from sessionrelay.handoff.service import HandoffCodeService
from sessionrelay.ratelimit.limiter import RateLimiter
from sessionrelay.store.sweeper import run_expiry_sweeper, sweep_once

SUBJECT = "3c2b1a09-8f7e-4d6c-9b5a-493827160504"


class TestSweepOnce:
    async def test_removes_expired_codes_and_stale_events(
        self, sqlite_store: Any, clock: Any
    ) -> None:
        service = HandoffCodeService(sqlite_store, clock=clock)
        limiter = RateLimiter(sqlite_store, clock=clock)
        stale = await service.create(SUBJECT, "a", "r")
        await limiter.check_and_record(SUBJECT, "test_action", 10, 1)

        clock.advance(301)
        fresh = await service.create(SUBJECT, "a", "r")

        deleted_codes, deleted_events = await sweep_once(
            sqlite_store, clock, event_retention_minutes=1
        )

        # create() already swept the stale code
        assert deleted_codes == 0
        assert deleted_events == 1
        assert await sqlite_store.get_handoff_code(stale.code) is None
        assert await sqlite_store.get_handoff_code(fresh.code) is not None

    async def test_deletes_expired_rows_directly(self, sqlite_store: Any, clock: Any) -> None:
        service = HandoffCodeService(sqlite_store, clock=clock)
        issued = await service.create(SUBJECT, "a", "r")
        clock.advance(600)

        deleted_codes, _ = await sweep_once(sqlite_store, clock, event_retention_minutes=1)

        assert deleted_codes == 1
        assert await sqlite_store.get_handoff_code(issued.code) is None

    async def test_events_inside_retention_kept(self, sqlite_store: Any, clock: Any) -> None:
        limiter = RateLimiter(sqlite_store, clock=clock)
        await limiter.check_and_record(SUBJECT, "test_action", 10, 60)
        clock.advance(timedelta(minutes=30).total_seconds())

        _, deleted_events = await sweep_once(sqlite_store, clock, event_retention_minutes=60)

        assert deleted_events == 0

    async def test_default_retention_covers_longest_accepted_window(
        self, sqlite_store: Any, clock: Any
    ) -> None:
        week = RATE_LIMIT_WINDOW_MINUTES_CEILING
        limiter = RateLimiter(sqlite_store, clock=clock)
        assert await limiter.check_and_record(SUBJECT, "weekly", 1, week)
        clock.advance(timedelta(days=3).total_seconds())

        _, deleted_events = await sweep_once(sqlite_store, clock)

        assert deleted_events == 0
        assert not await limiter.check_and_record(SUBJECT, "weekly", 1, week)

    async def test_default_retention_drops_events_older_than_a_week(
        self, sqlite_store: Any, clock: Any
    ) -> None:
        limiter = RateLimiter(sqlite_store, clock=clock)
        await limiter.check_and_record(SUBJECT, "test_action", 10, 1)
        clock.advance(timedelta(days=7, seconds=1).total_seconds())

        _, deleted_events = await sweep_once(sqlite_store, clock)

        assert deleted_events == 1


class TestRunExpirySweeper:
    async def test_cancellation_propagates(self, clock: Any) -> None:
        store = MagicMock()
        store.delete_expired_handoff_codes = AsyncMock(return_value=0)
        store.delete_rate_limit_events_before = AsyncMock(return_value=0)

        task = asyncio.create_task(
            run_expiry_sweeper(store, clock, interval_s=0.01, event_retention_minutes=1)
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert store.delete_expired_handoff_codes.await_count >= 1

    async def test_errors_do_not_stop_the_loop(
        self, clock: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("sessionrelay.store.sweeper._ERROR_RETRY_S", 0.01)
        calls = {"n": 0}

        async def _flaky(now: Any) -> int:
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db gone")
            return 0

        store = MagicMock()
        store.delete_expired_handoff_codes = AsyncMock(side_effect=_flaky)
        store.delete_rate_limit_events_before = AsyncMock(return_value=0)

        task = asyncio.create_task(
            run_expiry_sweeper(store, clock, interval_s=0.01, event_retention_minutes=1)
        )
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert store.delete_rate_limit_events_before.await_count >= 1
