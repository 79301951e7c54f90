"""Pydantic models for API requests, responses, and domain objects."""

# Offer configuration models
from .offer import (
    Amount,
    OfferDefinition,
    CheckoutConfig,
    CancellationConfig,
    ProviderConfig,
    ActivatorConfig,
    AlertsConfig,
    OffersConfig,
)

# Mapping store models
from .mapping import (
    SubscriptionStatus,
    AuditSource,
    CancelAttempt,
    MappingRecord,
    AuditEntry,
)

# Payment provider resources
from .provider import (
    Payment,
    ProviderSubscription,
    Customer,
)

# Service outcomes
from .outcomes import (
    WebhookOutcome,
    CancelOutcome,
    CancelAllOutcome,
    SweepItem,
    SweepReport,
    ImportSummary,
)

# API request models
from .api_request import (
    CheckoutRequest,
    CancelLinkRequest,
    OperatorCancelRequest,
    CustomerLookupRequest,
)

# API response models
from .api_response import (
    CheckoutResponse,
    OkResponse,
    OperatorCancelItem,
    OperatorCancelResponse,
    CancelAllResponse,
    SubscriptionSummary,
    SubscriptionListResponse,
    ErrorResponse,
    ImportResponse,
)

__all__ = [
    # Offer configuration
    "Amount",
    "OfferDefinition",
    "CheckoutConfig",
    "CancellationConfig",
    "ProviderConfig",
    "ActivatorConfig",
    "AlertsConfig",
    "OffersConfig",
    # Mapping
    "SubscriptionStatus",
    "AuditSource",
    "CancelAttempt",
    "MappingRecord",
    "AuditEntry",
    # Provider
    "Payment",
    "ProviderSubscription",
    "Customer",
    # Outcomes
    "WebhookOutcome",
    "CancelOutcome",
    "CancelAllOutcome",
    "SweepItem",
    "SweepReport",
    "ImportSummary",
    # API requests
    "CheckoutRequest",
    "CancelLinkRequest",
    "OperatorCancelRequest",
    "CustomerLookupRequest",
    # API responses
    "CheckoutResponse",
    "OkResponse",
    "OperatorCancelItem",
    "OperatorCancelResponse",
    "CancelAllResponse",
    "SubscriptionSummary",
    "SubscriptionListResponse",
    "ErrorResponse",
    "ImportResponse",
]
