"""Validated recipient email address."""

from dataclasses import dataclass

from email_validator import EmailNotValidError, validate_email


class InvalidSubscriberEmail(ValueError):
    """The stored address cannot be delivered to."""


@dataclass(frozen=True)
class SubscriberEmail:
    value: str

    @classmethod
    def parse(cls, raw: str) -> "SubscriberEmail":
        """
        Validate an address syntactically.

        Deliverability (DNS) is not checked; that is the email API's job.

        Raises:
            InvalidSubscriberEmail: if the address is malformed
        """
        try:
            result = validate_email(raw, check_deliverability=False)
        except EmailNotValidError as exc:
            raise InvalidSubscriberEmail(f"{raw!r} is not a valid subscriber email: {exc}") from exc
        return cls(result.normalized)

    def __str__(self) -> str:
        return self.value
