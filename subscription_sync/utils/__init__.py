"""Utility functions and helpers for subscription synchronization."""

from subscription_sync.utils.billing_cycle import (
    add_interval,
    add_months,
    next_cycle_date,
    parse_interval,
    to_utc_date,
    validate_interval,
)
from subscription_sync.utils.entitlement import (
    combine_entitlement_ends,
    compute_entitlement_end,
)
from subscription_sync.utils.token_codec import (
    b64url_decode,
    b64url_encode,
    issue_cancel_token,
    sign_token,
    verify_token,
)

__all__ = [
    # Token signing
    "sign_token",
    "verify_token",
    "issue_cancel_token",
    "b64url_encode",
    "b64url_decode",
    # Billing cycles
    "parse_interval",
    "validate_interval",
    "add_months",
    "add_interval",
    "next_cycle_date",
    "to_utc_date",
    # Entitlement
    "compute_entitlement_end",
    "combine_entitlement_ends",
]
