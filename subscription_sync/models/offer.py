"""Offer definition models.

Models from offers.yaml configuration.
"""

from typing import Optional

from pydantic import BaseModel, Field


class Amount(BaseModel):
    """Money amount in the provider's string notation."""

    currency: str = Field(default="EUR", description="ISO 4217 currency code")
    value: str = Field(..., description="Decimal amount as string (e.g. '12.00')")


class OfferDefinition(BaseModel):
    """Offer definition from configuration."""

    id: str = Field(..., description="Offer identifier (e.g. OFFER1)")
    type: str = Field(default="subscription", description="Offer type: 'subscription' or 'one_time'")
    description: str = Field(..., description="Description sent to the provider")
    amount: Amount = Field(..., description="Recurring amount (subscriptions) or price (one-time)")
    interval: Optional[str] = Field(None, description="Provider interval (e.g. '1 month', '1 year')")

    # Upgrade handling
    upgrade: bool = Field(default=False, description="Creating this offer cancels lower-tier subscriptions")
    downgrade_intervals: list[str] = Field(
        default_factory=list, description="Intervals of lower-tier subscriptions to cancel on upgrade"
    )
    downgrade_description_pattern: Optional[str] = Field(
        None, description="Regex matched case-insensitively against lower-tier descriptions"
    )

    # Access platform overrides
    activation_url: Optional[str] = Field(None, description="Per-offer activation callback URL")
    deactivation_url: Optional[str] = Field(None, description="Per-offer deactivation callback URL")

    @property
    def is_subscription(self) -> bool:
        return self.type == "subscription"

    class Config:
        json_schema_extra = {
            "example": {
                "id": "OFFER3",
                "type": "subscription",
                "description": "Community jaar",
                "amount": {"currency": "EUR", "value": "120.00"},
                "interval": "1 year",
                "upgrade": True,
                "downgrade_intervals": ["1 month"],
                "downgrade_description_pattern": "maand",
            }
        }


class CheckoutConfig(BaseModel):
    """First-payment settings used when starting a checkout."""

    first_payment_amount: Amount = Field(default_factory=lambda: Amount(value="0.01"))
    first_payment_description: str = Field(default="Intro month (first payment)")
    method: Optional[str] = Field(default="ideal", description="Payment method forced at checkout")
    locale: Optional[str] = Field(default=None, description="Checkout locale")


class CancellationConfig(BaseModel):
    """Self-service cancellation settings."""

    token_ttl_minutes: int = Field(default=30, description="Lifetime of emailed cancel links")
    used_marker_ttl_days: int = Field(default=7, description="Lifetime of single-use markers")


class ProviderConfig(BaseModel):
    """Payment provider client settings."""

    timeout_seconds: float = Field(default=10.0)
    read_attempts: int = Field(default=3, description="Attempts for idempotent GET calls")
    page_limit: int = Field(default=50)


class ActivatorConfig(BaseModel):
    """Access platform callback settings."""

    timeout_seconds: float = Field(default=10.0)


class AlertsConfig(BaseModel):
    """Pub/Sub alert publishing settings."""

    enabled: bool = Field(default=False)
    project_id: str = Field(default="local-project")
    topic: str = Field(default="subscription-sync-alerts")


class OffersConfig(BaseModel):
    """Complete offers.yaml configuration."""

    offers: list[OfferDefinition] = Field(default_factory=list, description="Offer definitions")
    default_offer_id: Optional[str] = Field(None, description="Offer used when a payment names none")
    checkout: CheckoutConfig = Field(default_factory=CheckoutConfig)
    cancellation: CancellationConfig = Field(default_factory=CancellationConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    activator: ActivatorConfig = Field(default_factory=ActivatorConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
