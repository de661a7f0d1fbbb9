"""Authentication dependencies for FastAPI endpoints."""

import hmac

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from newsletter.auth.api_key import API_KEY_PREFIX, hash_api_key
from newsletter.database import get_db
from newsletter.models.user import APIKey, User


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": {
                "code": "UNAUTHORIZED",
                "message": message,
            }
        },
    )


async def get_current_user(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Validate API key and return the authenticated publisher.

    Raises:
        HTTPException: 401 if API key is missing, invalid, or revoked
    """
    if not x_api_key:
        raise _unauthorized("API key required")

    if not x_api_key.startswith(API_KEY_PREFIX):
        raise _unauthorized("Invalid API key format")

    key_hash = hash_api_key(x_api_key)

    result = await db.execute(
        select(APIKey)
        .options(selectinload(APIKey.user))
        .where(APIKey.key_hash == key_hash)
        .where(APIKey.revoked_at.is_(None))
    )
    api_key = result.scalar_one_or_none()

    if not api_key:
        # Keep response time independent of whether the key exists
        hmac.compare_digest(key_hash, "0" * 64)
        raise _unauthorized("Invalid or revoked API key")

    return api_key.user
