"""State change logging for mapping records.

Tracks status and deactivation transitions with before/after values for
auditing. Records are never deleted, so these logs plus the stored audit
entries are the full history of a customer.
"""

from typing import Any, Optional

from subscription_sync.logging_config import get_logger

logger = get_logger(__name__)


def log_mapping_status_change(
    email: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a forward status transition of a mapping record.

    Args:
        email: Customer email
        old_status: Previous status label
        new_status: New status label
        reason: Reason for the change
        **extra_context: Additional context (subscription_id, offer_id, ...)
    """
    logger.info(
        "mapping_status_changed",
        email=email,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_status_regression_ignored(
    email: str,
    current_status: Any,
    requested_status: Any,
    reason: Optional[str] = None,
) -> None:
    """Log a rejected backward transition (statuses only move forward)."""
    logger.warning(
        "mapping_status_regression_ignored",
        email=email,
        current_status=str(current_status),
        requested_status=str(requested_status),
        reason=reason,
    )


def log_deactivation_change(email: str, pending: bool, **extra_context: Any) -> None:
    """Log a change of the deactivation-pending flag."""
    logger.info(
        "deactivation_pending_changed",
        email=email,
        pending=pending,
        **extra_context,
    )


def log_cancel_attempt(
    customer_id: str,
    subscription_id: str,
    http_status: int,
    phase: str,
    **extra_context: Any,
) -> None:
    """Log one provider cancel call.

    Args:
        customer_id: Provider customer ID
        subscription_id: Provider subscription ID
        http_status: Returned HTTP status (0 = network error)
        phase: primary, fallback, upgrade or operator
    """
    logger.info(
        "subscription_cancel_attempted",
        customer_id=customer_id,
        subscription_id=subscription_id,
        http_status=http_status,
        phase=phase,
        **extra_context,
    )
