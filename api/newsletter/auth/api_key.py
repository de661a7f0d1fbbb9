"""Publisher API keys: issuance, hashing and provisioning.

Only a keyed HMAC of each key is stored. The plaintext is returned once, when
the key is issued, and cannot be recovered afterwards.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from newsletter.config import settings
from newsletter.models.user import APIKey, User

API_KEY_PREFIX = "nl_live_"
DISPLAY_PREFIX_LENGTH = 12


@dataclass(frozen=True)
class IssuedKey:
    plaintext: str
    key_hash: str

    @property
    def display_prefix(self) -> str:
        """Leading characters stored next to the hash so operators can tell keys apart."""
        return self.plaintext[:DISPLAY_PREFIX_LENGTH]


def hash_api_key(key: str) -> str:
    return hmac.new(settings.api_key_secret.encode(), key.encode(), hashlib.sha256).hexdigest()


def issue_api_key() -> IssuedKey:
    plaintext = API_KEY_PREFIX + secrets.token_hex(32)
    return IssuedKey(plaintext=plaintext, key_hash=hash_api_key(plaintext))


async def create_publisher(
    db: AsyncSession,
    username: str,
    key_name: str | None = None,
) -> tuple[User, IssuedKey]:
    """
    Create a publisher account with one API key and commit it.

    Returns:
        The new user and the issued key; the plaintext is not stored anywhere.
    """
    user = User(username=username)
    db.add(user)
    await db.flush()

    issued = issue_api_key()
    db.add(
        APIKey(
            user_id=user.id,
            key_hash=issued.key_hash,
            key_prefix=issued.display_prefix,
            name=key_name,
        )
    )
    await db.commit()
    return user, issued
