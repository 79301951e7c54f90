"""Payment provider resource models.

Field names follow the provider's REST JSON so payloads validate directly.
Unknown fields are ignored.
"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from subscription_sync.models.offer import Amount

# Subscription statuses that still charge (or will charge) the customer
CANCELLABLE_STATUSES = ("active", "pending", "suspended")
# Statuses the primary resolution step accepts
RESOLVABLE_STATUSES = ("active", "pending")


class Payment(BaseModel):
    """GET /v2/payments/{id}"""

    id: str
    status: str = Field(..., description="open, pending, authorized, paid, canceled, expired, failed")
    sequenceType: Optional[str] = Field(None, description="oneoff, first or recurring")
    customerId: Optional[str] = None
    subscriptionId: Optional[str] = None
    metadata: Optional[Any] = None
    paidAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None
    billingEmail: Optional[str] = None
    details: Optional[dict] = None

    @property
    def meta(self) -> dict:
        """Metadata as a dict (the provider allows any JSON value)."""
        return self.metadata if isinstance(self.metadata, dict) else {}

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"

    @property
    def is_first(self) -> bool:
        return self.sequenceType == "first"

    @property
    def is_subscription(self) -> bool:
        """Subscription vs one-time: metadata.type wins, else sequenceType."""
        meta_type = self.meta.get("type")
        if meta_type:
            return meta_type == "subscription"
        return self.sequenceType != "oneoff"

    @property
    def email(self) -> str:
        raw = self.meta.get("email") or self.billingEmail or ""
        return str(raw).strip().lower()

    @property
    def consumer_name(self) -> str:
        details = self.details or {}
        return self.meta.get("name") or details.get("consumerName") or ""


class ProviderSubscription(BaseModel):
    """Subscription resource under /v2/customers/{id}/subscriptions."""

    id: str
    status: Optional[str] = Field(None, description="pending, active, canceled, suspended, completed")
    interval: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Amount] = None
    times: Optional[int] = None
    timesRemaining: Optional[int] = None
    startDate: Optional[date] = None
    nextPaymentDate: Optional[date] = None
    createdAt: Optional[datetime] = None
    canceledAt: Optional[datetime] = None
    webhookUrl: Optional[str] = None
    metadata: Optional[Any] = None

    @property
    def meta(self) -> dict:
        return self.metadata if isinstance(self.metadata, dict) else {}

    @property
    def is_cancellable(self) -> bool:
        return self.status in CANCELLABLE_STATUSES


class Customer(BaseModel):
    """Customer resource under /v2/customers."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    metadata: Optional[Any] = None

    @property
    def normalized_email(self) -> str:
        raw = self.email or (self.metadata.get("email") if isinstance(self.metadata, dict) else None) or ""
        return str(raw).strip().lower()
