"""Client for the transactional email HTTP API (Postmark-compatible)."""

from __future__ import annotations

import logging

import httpx

from newsletter.config import Settings
from newsletter.domain.subscriber_email import SubscriberEmail
from newsletter.errors import TransportPermanentError, TransportTransientError

logger = logging.getLogger(__name__)

_TOKEN_HEADER = "X-Postmark-Server-Token"


class EmailClient:
    """Send single emails through the email API."""

    def __init__(
        self,
        base_url: str,
        sender: SubscriberEmail,
        authorization_token: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.sender = sender
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={_TOKEN_HEADER: authorization_token},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> EmailClient:
        return cls(
            base_url=settings.email_base_url,
            sender=SubscriberEmail.parse(settings.email_sender),
            authorization_token=settings.email_authorization_token,
            timeout=settings.email_timeout_seconds,
        )

    async def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None:
        """
        Deliver one email.

        Raises:
            TransportTransientError: timeout, connection failure, 429 or 5xx
            TransportPermanentError: any other rejection by the API
        """
        payload = {
            "From": str(self.sender),
            "To": str(recipient),
            "Subject": subject,
            "HtmlBody": html_content,
            "TextBody": text_content,
        }
        try:
            resp = await self._client.post("/email", json=payload)
        except httpx.TimeoutException as exc:
            raise TransportTransientError(f"Email API timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransportTransientError(f"Email API unreachable: {exc}") from exc

        if resp.is_success:
            logger.debug("Email accepted for %s", recipient)
            return
        message = f"Email API returned {resp.status_code}: {resp.text[:200]}"
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransportTransientError(message, upstream_status=resp.status_code)
        raise TransportPermanentError(message, upstream_status=resp.status_code)

    async def close(self) -> None:
        await self._client.aclose()
