"""Idempotency service for safe publish retries.

Duplicate submissions are serialized through PostgreSQL row locks on the
idempotency table, never through an in-process lock, so the guarantee holds
across restarts and across several API instances sharing one database.
"""

import logging
import re
from dataclasses import dataclass
from uuid import UUID

from fastapi import Response
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter.errors import AlreadyCompleted, InvalidIdempotencyKey, PersistenceError
from newsletter.models.idempotency import IdempotencyRecord

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 256

# Visible ASCII only: no whitespace, control characters or non-ASCII
_KEY_PATTERN = re.compile(r"^[\x21-\x7e]+$")


def validate_idempotency_key(key: str) -> str:
    """
    Check a caller-supplied idempotency key.

    Raises:
        InvalidIdempotencyKey: if the key is empty, too long or contains
            characters outside visible ASCII
    """
    if not key:
        raise InvalidIdempotencyKey("Idempotency key cannot be empty")
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidIdempotencyKey(
            f"Idempotency key must be at most {MAX_KEY_LENGTH} characters"
        )
    if not _KEY_PATTERN.match(key):
        raise InvalidIdempotencyKey(
            "Idempotency key may only contain visible ASCII characters"
        )
    return key


@dataclass(frozen=True)
class Fingerprint:
    """Identity of one logical publish action."""

    user_id: UUID
    key: str


@dataclass(frozen=True)
class SavedResponse:
    """HTTP response captured for byte-for-byte replay."""

    status_code: int
    headers: tuple[tuple[str, str], ...]
    body: bytes

    @classmethod
    def from_response(cls, response: Response) -> "SavedResponse":
        headers = tuple(
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in response.raw_headers
        )
        return cls(status_code=response.status_code, headers=headers, body=bytes(response.body))

    def to_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        # Replace the defaults Response computed with the captured headers, in order
        response.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1")) for name, value in self.headers
        ]
        return response


@dataclass(frozen=True)
class Admitted:
    """The caller owns the fingerprint and must call complete() in this transaction."""

    fingerprint: Fingerprint


@dataclass(frozen=True)
class Replay:
    """A previous attempt already produced a response; send it again."""

    response: SavedResponse


class IdempotencyService:
    """Service for admitting or replaying publish requests by idempotency key."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def begin(self, user_id: UUID, key: str) -> Admitted | Replay:
        """
        Admit the caller or return the response saved by an earlier attempt.

        The placeholder insert runs in the caller's transaction. When another
        transaction already holds the fingerprint, PostgreSQL makes the insert
        wait until that transaction commits or rolls back, so two requests with
        the same fingerprint are never processed at the same time.

        Raises:
            InvalidIdempotencyKey: before any database access
            PersistenceError: on storage faults
        """
        fingerprint = Fingerprint(user_id=user_id, key=validate_idempotency_key(key))

        # A second pass is needed only if the owner rolled back between our
        # conflicting insert and the locking read.
        for _ in range(2):
            try:
                if await self._insert_placeholder(fingerprint):
                    return Admitted(fingerprint)
                row = await self._read_locked(fingerprint)
            except SQLAlchemyError as exc:
                raise PersistenceError("Failed to access idempotency record") from exc

            if row is None:
                logger.info(
                    "Idempotency record for user %s vanished after its owner rolled back; retrying",
                    fingerprint.user_id,
                )
                continue

            status_code, headers, body = row
            if status_code is None:
                raise PersistenceError("Idempotency record was committed without a saved response")

            saved = SavedResponse(
                status_code=status_code,
                headers=tuple((name, value) for name, value in headers or []),
                body=bytes(body or b""),
            )
            # Release the share lock; nothing else happens in this transaction
            await self.db.rollback()
            return Replay(saved)

        raise PersistenceError("Could not admit request: idempotency record kept disappearing")

    async def complete(self, fingerprint: Fingerprint, response: SavedResponse) -> None:
        """
        Save the response on the placeholder and commit the whole transaction.

        The transaction is rolled back before any error is raised.

        Raises:
            AlreadyCompleted: if a response is already stored for the fingerprint
            PersistenceError: on storage faults or a missing placeholder
        """
        try:
            result = await self.db.execute(
                update(IdempotencyRecord)
                .where(IdempotencyRecord.user_id == fingerprint.user_id)
                .where(IdempotencyRecord.idempotency_key == fingerprint.key)
                .where(IdempotencyRecord.response_status_code.is_(None))
                .values(
                    response_status_code=response.status_code,
                    response_headers=[list(pair) for pair in response.headers],
                    response_body=response.body,
                )
                .returning(IdempotencyRecord.idempotency_key)
            )
            if result.first() is not None:
                await self.db.commit()
                return
            existing = await self.db.execute(
                select(IdempotencyRecord.response_status_code)
                .where(IdempotencyRecord.user_id == fingerprint.user_id)
                .where(IdempotencyRecord.idempotency_key == fingerprint.key)
            )
            already_completed = existing.first() is not None
            await self.db.rollback()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError("Failed to save idempotent response") from exc

        if already_completed:
            raise AlreadyCompleted(
                f"Idempotency key {fingerprint.key!r} already has a saved response"
            )
        raise PersistenceError("No idempotency placeholder to complete")

    async def _insert_placeholder(self, fingerprint: Fingerprint) -> bool:
        result = await self.db.execute(
            insert(IdempotencyRecord)
            .values(
                user_id=fingerprint.user_id,
                idempotency_key=fingerprint.key,
                created_at=func.now(),
            )
            .on_conflict_do_nothing()
            .returning(IdempotencyRecord.idempotency_key)
        )
        return result.first() is not None

    async def _read_locked(self, fingerprint: Fingerprint):
        # FOR SHARE waits for any transaction still holding the row
        result = await self.db.execute(
            select(
                IdempotencyRecord.response_status_code,
                IdempotencyRecord.response_headers,
                IdempotencyRecord.response_body,
            )
            .where(IdempotencyRecord.user_id == fingerprint.user_id)
            .where(IdempotencyRecord.idempotency_key == fingerprint.key)
            .with_for_update(read=True)
        )
        return result.first()
