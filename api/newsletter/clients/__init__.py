"""Clients for external services."""

from newsletter.clients.email_client import EmailClient

__all__ = ["EmailClient"]
