"""Authentication utilities for the newsletter API."""

from newsletter.auth.api_key import IssuedKey, create_publisher, hash_api_key, issue_api_key

__all__ = [
    "IssuedKey",
    "create_publisher",
    "hash_api_key",
    "issue_api_key",
]
