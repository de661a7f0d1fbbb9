"""Rate limiting for the publish endpoint using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Keyed by client IP. Rate limit headers stay disabled because the publish
# endpoint returns prebuilt responses that must replay unchanged.
limiter = Limiter(key_func=get_remote_address)


def reset_limiter() -> None:
    """Reset the limiter storage. Used in tests to clear rate limit state."""
    limiter.reset()
