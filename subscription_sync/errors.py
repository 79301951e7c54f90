"""Error taxonomy for subscription synchronization.

Failures fall in two families:

- ValidationFailure: the request itself cannot succeed (bad token, unknown
  customer, nothing to cancel). Never retried, never alerted as an outage.
- InfrastructureFailure: a collaborator (provider, access platform, store)
  failed or timed out. Logged and alerted; the next delivery or sweep retries.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for subscription synchronization errors."""

    reason: str = "error"
    retryable: bool = False


class ValidationFailure(SyncError):
    """Raised when input or local state makes the operation impossible."""

    reason = "invalid_request"


class InfrastructureFailure(SyncError):
    """Raised when an external collaborator fails."""

    retryable = True


class InvalidToken(ValidationFailure):
    """Raised for any cancel token problem (format, signature, payload, expiry).

    The cause is deliberately not exposed.
    """

    reason = "invalid_token"

    def __init__(self) -> None:
        super().__init__("Invalid or expired token")


class IdentityMismatch(ValidationFailure):
    """Raised when an operator-supplied email does not match the provider customer."""

    reason = "identity_mismatch"


class NoMapping(ValidationFailure):
    """Raised when no mapping record exists for an identity."""

    reason = "no_mapping"


class NoActiveSubscription(ValidationFailure):
    """Raised when the provider reports nothing cancellable."""

    reason = "no_active_subscription"


class ProviderError(InfrastructureFailure):
    """Raised when a payment provider call fails."""

    reason = "provider_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ActivatorError(InfrastructureFailure):
    """Raised when an access platform callback fails or cannot be attempted."""

    reason = "activator_error"


class StoreError(InfrastructureFailure):
    """Raised when a mapping store operation fails."""

    reason = "store_error"
