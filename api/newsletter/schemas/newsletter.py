"""Newsletter publishing Pydantic schemas."""

from pydantic import BaseModel, Field, field_validator


class PublishIssueRequest(BaseModel):
    """Request to publish a newsletter issue to all confirmed subscribers."""

    title: str = Field(min_length=1, max_length=500)
    text_content: str = Field(min_length=1)
    html_content: str = Field(min_length=1)
    # Checked by the idempotency service so that bad keys get a dedicated error
    idempotency_key: str

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Title becomes the email subject and must not be blank."""
        if not v.strip():
            raise ValueError("Title cannot be blank")
        return v


class PublishIssueResponse(BaseModel):
    """Response once the issue and its deliveries are durably queued."""

    issue_id: str
    status: str
    message: str


class FailedDeliveryItem(BaseModel):
    """A delivery that will not be retried."""

    subscriber_email: str
    n_retries: int
    failed_at: str
    last_error: str | None


class DeliveryStatusResponse(BaseModel):
    """Outstanding deliveries for one issue."""

    issue_id: str
    pending: int
    failed: list[FailedDeliveryItem]
