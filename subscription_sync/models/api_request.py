"""API request models for the HTTP endpoints.

Field names follow the existing wire contract (camelCase).
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator


def normalize_email(value: str) -> str:
    """Emails are compared and stored lowercase without surrounding whitespace."""
    return str(value).strip().lower()


Email = Annotated[str, AfterValidator(normalize_email)]


class CheckoutRequest(BaseModel):
    """Request to start a checkout for an offer."""

    email: Email = Field(..., description="Customer email")
    name: Optional[str] = Field(None, description="Customer display name")
    offerId: Optional[str] = Field(None, description="Offer identifier (defaults to catalog default)")

    class Config:
        json_schema_extra = {
            "example": {"email": "jane@example.com", "name": "Jane", "offerId": "OFFER1"}
        }


class CancelLinkRequest(BaseModel):
    """Request for a self-service cancel link."""

    email: Optional[Email] = Field(None, description="Customer email")


class OperatorCancelRequest(BaseModel):
    """Operator cancellation: one customer ({customerId, email}) or a list of emails."""

    customerId: Optional[str] = Field(None, description="Provider customer ID")
    email: Optional[Email] = Field(None, description="Customer email (verified against the provider)")
    emails: list[str] = Field(default_factory=list, description="Emails to cancel in bulk")

    @field_validator("emails")
    @classmethod
    def normalize_emails(cls, value: list[str]) -> list[str]:
        return [e for e in (normalize_email(v) for v in value if v) if e]

    class Config:
        json_schema_extra = {
            "example": {"emails": ["jane@example.com", "john@example.com"]}
        }


class CustomerLookupRequest(BaseModel):
    """Operator lookup of a customer's subscriptions."""

    customerId: str = Field(..., description="Provider customer ID")
    email: Email = Field(..., description="Customer email")
