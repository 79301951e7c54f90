"""API response models for the HTTP endpoints."""

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from subscription_sync.models.offer import Amount
from subscription_sync.models.outcomes import ImportSummary
from subscription_sync.models.provider import ProviderSubscription


class CheckoutResponse(BaseModel):
    """Response after starting a checkout."""

    checkoutUrl: str = Field(..., description="Hosted checkout URL")


class OkResponse(BaseModel):
    """Privacy-preserving acknowledgement."""

    ok: bool = True


class OperatorCancelItem(BaseModel):
    """Per-email result of an operator cancellation."""

    email: str
    ok: bool
    reason: Optional[str] = None
    customerId: Optional[str] = None
    subscriptionId: Optional[str] = None
    cancelAtDate: Optional[date] = None
    providerCancelStatus: Optional[int] = None


class OperatorCancelResponse(BaseModel):
    """Response for bulk operator cancellation."""

    ok: bool = True
    results: list[OperatorCancelItem] = Field(default_factory=list)


class CancelAllResponse(BaseModel):
    """Response for an operator cancel-all on one customer."""

    message: str
    canceledCount: int
    canceledIds: list[str] = Field(default_factory=list)
    failures: list[dict] = Field(default_factory=list)
    cancelAtDate: Optional[date] = None
    storeUpdated: bool = False


class SubscriptionSummary(BaseModel):
    """Subscription fields safe to show in operator tooling."""

    id: str
    description: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Amount] = None
    times: Optional[int] = None
    timesRemaining: Optional[int] = None
    interval: Optional[str] = None
    startDate: Optional[date] = None
    nextPaymentDate: Optional[date] = None
    canceledAt: Optional[str] = None
    webhookUrl: Optional[str] = None

    @classmethod
    def from_subscription(cls, sub: ProviderSubscription) -> "SubscriptionSummary":
        return cls(
            id=sub.id,
            description=sub.description,
            status=sub.status,
            amount=sub.amount,
            times=sub.times,
            timesRemaining=sub.timesRemaining,
            interval=sub.interval,
            startDate=sub.startDate,
            nextPaymentDate=sub.nextPaymentDate,
            canceledAt=sub.canceledAt.isoformat() if sub.canceledAt else None,
            webhookUrl=sub.webhookUrl,
        )


class SubscriptionListResponse(BaseModel):
    """Response for the operator subscription listing."""

    customerId: str
    email: str
    count: int
    subscriptions: list[SubscriptionSummary] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")


class ImportResponse(BaseModel):
    """Response for the operator mapping import."""

    ok: bool = True
    summary: ImportSummary
