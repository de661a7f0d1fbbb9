"""Error taxonomy for publishing and delivery."""

import enum

from fastapi import status


class NewsletterError(Exception):
    """Base class for domain errors rendered with the standard error envelope."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(NewsletterError):
    """Client input rejected before any state change."""

    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidIdempotencyKey(ValidationError):
    code = "INVALID_IDEMPOTENCY_KEY"


class PersistenceError(NewsletterError):
    """Storage fault. The surrounding transaction is rolled back; safe to retry."""

    code = "PERSISTENCE_ERROR"


class AlreadyCompleted(NewsletterError):
    """An idempotency record was completed twice (programmer error)."""

    code = "IDEMPOTENCY_ALREADY_COMPLETED"


class FailureKind(enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class TransportError(NewsletterError):
    """Email transport failure, tagged with whether a retry can help."""

    code = "TRANSPORT_ERROR"
    kind: FailureKind

    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(message)
        # HTTP status returned by the email API, if any
        self.upstream_status = upstream_status


class TransportTransientError(TransportError):
    kind = FailureKind.TRANSIENT


class TransportPermanentError(TransportError):
    kind = FailureKind.PERMANENT
