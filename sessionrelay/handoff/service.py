"""HandoffCodeService — issue and redeem single-use session handoff codes.

Lifecycle of a code::

    create() ──► Active ──redeem() wins──► Consumed   (terminal)
                   │
                   └──now >= expires_at──► Expired    (terminal)

Single-use is enforced by ONE conditional store operation
(``consume_handoff_code``): it flips ``consumed_at`` only while the row is
unconsumed and unexpired, and reports whether it did. The follow-up read in
redeem() only chooses which error to report; it never grants anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sessionrelay.constants import DEFAULT_MAX_COLLISION_RETRIES, HANDOFF_CODE_TTL_SECONDS
from sessionrelay.models.errors import (
    AlreadyUsedError,
    CodeCollisionError,
    ExpiredError,
    InvalidInputError,
    NotFoundError,
    TransientStorageError,
)
from sessionrelay.models.handoff import HandoffCredentials, HandoffRecord
from sessionrelay.store.protocol import RelayStore
from sessionrelay.utils.clock import Clock, SystemClock
from sessionrelay.utils.codes import CodeGenerator
from sessionrelay.utils.ids import generate_id
from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)

HANDOFF_CODE_TTL = timedelta(seconds=HANDOFF_CODE_TTL_SECONDS)


@dataclass(frozen=True)
class IssuedHandoffCode:
    code: str
    expires_at: datetime


class HandoffCodeService:
    """Issues and redeems handoff codes against a RelayStore.

    Usage:
        service = HandoffCodeService(store)
        issued = await service.create(user_id, access_token, refresh_token)
        creds = await service.redeem(issued.code)   # once
    """

    def __init__(
        self,
        store: RelayStore,
        generator: Optional[CodeGenerator] = None,
        clock: Optional[Clock] = None,
        max_collision_retries: int = DEFAULT_MAX_COLLISION_RETRIES,
    ) -> None:
        self._store = store
        self._generator = generator or CodeGenerator()
        self._clock = clock or SystemClock()
        self._max_collision_retries = max_collision_retries

    async def create(
        self, subject_id: str, access_token: str, refresh_token: str
    ) -> IssuedHandoffCode:
        """Store the session under a fresh code valid for five minutes.

        Raises:
            InvalidInputError: If either token is empty.
            TransientStorageError: On store failure, or when every regenerated
                                   code collided with an existing row.
        """
        self.validate_tokens(access_token, refresh_token)

        now = self._clock.now()
        swept = await self._store.delete_expired_handoff_codes(now)
        if swept:
            logger.debug("handoff_codes_swept", deleted_count=swept)

        expires_at = now + HANDOFF_CODE_TTL
        for attempt in range(self._max_collision_retries + 1):
            code = self._generator.generate()
            record = HandoffRecord(
                id=generate_id(),
                code=code,
                subject_id=subject_id,
                access_token=access_token,
                refresh_token=refresh_token,
                created_at=now,
                expires_at=expires_at,
            )
            try:
                await self._store.insert_handoff_code(record)
            except CodeCollisionError:
                logger.warning("handoff_code_collision", subject_id=subject_id, attempt=attempt)
                continue

            logger.info(
                "handoff_code_created",
                subject_id=subject_id,
                expires_at=expires_at.isoformat(),
            )
            return IssuedHandoffCode(code=code, expires_at=expires_at)

        logger.error(
            "handoff_code_collisions_exhausted",
            subject_id=subject_id,
            attempts=self._max_collision_retries + 1,
        )
        raise TransientStorageError("Failed to store code")

    def validate_tokens(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> None:
        """Raise InvalidInputError unless both tokens are non-empty strings."""
        for token in (access_token, refresh_token):
            if not isinstance(token, str) or not token:
                raise InvalidInputError("Missing tokens")

    def validate_code(self, code: Optional[str]) -> str:
        """Return the canonical form of ``code`` or raise InvalidInputError."""
        normalized = self._generator.normalize(code)
        if not self._generator.is_well_formed(normalized):
            raise InvalidInputError("Invalid code format")
        return normalized

    async def redeem(self, code: Optional[str]) -> HandoffCredentials:
        """Consume ``code`` exactly once and return the stored credentials.

        Raises:
            InvalidInputError: Malformed code (checked before any store access).
            NotFoundError: No such code.
            ExpiredError: The code's lifetime elapsed (the row is deleted).
            AlreadyUsedError: The code was already redeemed.
            TransientStorageError: On store failure.
        """
        normalized = self.validate_code(code)

        now = self._clock.now()
        credentials = await self._store.consume_handoff_code(normalized, now)
        if credentials is not None:
            logger.info("handoff_code_redeemed")
            return credentials

        record = await self._store.get_handoff_code(normalized)
        if record is None:
            logger.info("handoff_redeem_failed", reason=NotFoundError.code)
            raise NotFoundError()

        if record.is_expired(now):
            await self._store.delete_handoff_code(normalized)
            logger.info(
                "handoff_redeem_failed",
                reason=ExpiredError.code,
                subject_id=record.subject_id,
            )
            raise ExpiredError()

        logger.warning(
            "handoff_redeem_failed",
            reason=AlreadyUsedError.code,
            subject_id=record.subject_id,
            consumed=record.consumed_at is not None,
        )
        raise AlreadyUsedError()
