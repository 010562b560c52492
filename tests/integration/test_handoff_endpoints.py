"""Integration tests for POST /handoff/create and POST /handoff/redeem.

Full path through the app: require_ready → auth → per-address cap →
per-subject / per-address RateLimiter → HandoffCodeService → LocalSQLiteStore.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import Any, Callable

from httpx import AsyncClient

USER = "7d1f2e3a-4b5c-4d6e-8f90-a1b2c3d4e5f6"
TOKENS = {"accessToken": "access.jwt.value", "refreshToken": "refresh-token-value"}


async def _create(client: AsyncClient, headers: dict[str, str]) -> Any:
    return await client.post("/handoff/create", json=TOKENS, headers=headers)


# ─── /handoff/create ──────────────────────────────────────────────────────────


class TestCreate:
    async def test_create_returns_code_and_expiry(
        self, client: AsyncClient, auth_headers: Callable[..., dict], clock: Any
    ) -> None:
        response = await _create(client, auth_headers(USER))

        assert response.status_code == 200
        body = response.json()
        assert re.fullmatch(r"[A-Z0-9]{6}", body["code"])
        expires_at = datetime.fromisoformat(body["expiresAt"])
        assert expires_at == clock.now() + timedelta(minutes=5)

    async def test_create_requires_auth(self, client: AsyncClient) -> None:
        response = await client.post("/handoff/create", json=TOKENS)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthenticated"

    async def test_create_rejects_invalid_token(self, client: AsyncClient) -> None:
        response = await client.post(
            "/handoff/create", json=TOKENS, headers={"Authorization": "Bearer junk"}
        )
        assert response.status_code == 401

    async def test_auth_checked_before_body(self, client: AsyncClient) -> None:
        response = await client.post("/handoff/create", json={})
        assert response.status_code == 401

    async def test_missing_tokens(
        self, client: AsyncClient, auth_headers: Callable[..., dict]
    ) -> None:
        response = await client.post(
            "/handoff/create", json={"accessToken": "a"}, headers=auth_headers(USER)
        )
        assert response.status_code == 400
        assert response.json() == {
            "error": {"code": "invalid_input", "message": "Missing tokens"}
        }

    async def test_rejected_creates_do_not_consume_budget(
        self, client: AsyncClient, auth_headers: Callable[..., dict]
    ) -> None:
        headers = auth_headers(USER)
        for body in [{"accessToken": "a"}] * 10 + [{"accessToken": "", "refreshToken": "r"}]:
            response = await client.post("/handoff/create", json=body, headers=headers)
            assert response.status_code == 400

        assert (await _create(client, headers)).status_code == 200

    async def test_create_rate_limited_per_subject(
        self, client: AsyncClient, auth_headers: Callable[..., dict], clock: Any
    ) -> None:
        headers = auth_headers(USER)
        for _ in range(10):
            assert (await _create(client, headers)).status_code == 200

        limited = await _create(client, headers)
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        assert limited.headers["retry-after"] == "60"

        other = await _create(client, auth_headers("00000000-0000-4000-8000-000000000001"))
        assert other.status_code == 200

        clock.advance(61)
        assert (await _create(client, headers)).status_code == 200


# ─── /handoff/redeem ──────────────────────────────────────────────────────────


class TestRedeem:
    async def test_create_then_redeem_roundtrip(
        self, client: AsyncClient, auth_headers: Callable[..., dict]
    ) -> None:
        code = (await _create(client, auth_headers(USER))).json()["code"]

        response = await client.post("/handoff/redeem", json={"code": code})

        assert response.status_code == 200
        assert response.json() == TOKENS

    async def test_redeem_needs_no_auth_and_accepts_lowercase(
        self, client: AsyncClient, auth_headers: Callable[..., dict]
    ) -> None:
        code = (await _create(client, auth_headers(USER))).json()["code"]
        response = await client.post("/handoff/redeem", json={"code": f" {code.lower()} "})
        assert response.status_code == 200

    async def test_second_redeem_conflict(
        self, client: AsyncClient, auth_headers: Callable[..., dict]
    ) -> None:
        code = (await _create(client, auth_headers(USER))).json()["code"]
        await client.post("/handoff/redeem", json={"code": code})

        response = await client.post("/handoff/redeem", json={"code": code})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_used"

    async def test_expired_code(
        self, client: AsyncClient, auth_headers: Callable[..., dict], clock: Any
    ) -> None:
        code = (await _create(client, auth_headers(USER))).json()["code"]
        clock.advance(301)

        response = await client.post("/handoff/redeem", json={"code": code})

        assert response.status_code == 410
        assert response.json()["error"]["code"] == "expired"

        again = await client.post("/handoff/redeem", json={"code": code})
        assert again.status_code == 404

    async def test_unknown_code(self, client: AsyncClient) -> None:
        response = await client.post("/handoff/redeem", json={"code": "ZZZZZZ"})
        assert response.status_code == 404
        assert response.json() == {
            "error": {"code": "not_found", "message": "Invalid or expired code"}
        }

    async def test_malformed_code(self, client: AsyncClient) -> None:
        for body in ({"code": "AB12C"}, {"code": "AB-2CD"}, {}, {"code": None}):
            response = await client.post("/handoff/redeem", json=body)
            assert response.status_code == 400
            assert response.json()["error"]["message"] == "Invalid code format"

    async def test_malformed_codes_do_not_consume_redeem_budget(
        self, client: AsyncClient, auth_headers: Callable[..., dict]
    ) -> None:
        for _ in range(15):
            await client.post("/handoff/redeem", json={"code": "bad"})
        code = (await _create(client, auth_headers(USER))).json()["code"]
        response = await client.post("/handoff/redeem", json={"code": code})
        assert response.status_code == 200

    async def test_redeem_rate_limited_per_address(self, client: AsyncClient) -> None:
        statuses = [
            (await client.post("/handoff/redeem", json={"code": "ZZZZZZ"})).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [404] * 10
        assert statuses[10] == 429

    async def test_concurrent_redeem_exactly_one_success(
        self, client: AsyncClient, auth_headers: Callable[..., dict]
    ) -> None:
        code = (await _create(client, auth_headers(USER))).json()["code"]

        responses = await asyncio.gather(
            *(client.post("/handoff/redeem", json={"code": code}) for _ in range(8))
        )

        statuses = sorted(r.status_code for r in responses)
        assert statuses == [200] + [409] * 7
