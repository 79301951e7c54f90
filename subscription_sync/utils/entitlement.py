"""Entitlement-end ("paid-through") date computation.

A canceled customer keeps access until the date the next charge would have
happened. The result is never in the past.
"""

from datetime import date
from typing import Iterable, Optional

from subscription_sync.models import ProviderSubscription


def compute_entitlement_end(subscription: Optional[ProviderSubscription], today: date) -> date:
    """Entitlement end for one subscription.

    nextPaymentDate, else startDate, else today; floored at today.
    """
    candidate = None
    if subscription is not None:
        candidate = subscription.nextPaymentDate or subscription.startDate
    if candidate is None or candidate < today:
        return today
    return candidate


def combine_entitlement_ends(subscriptions: Iterable[ProviderSubscription], today: date) -> date:
    """Latest entitlement end across subscriptions, floored at today."""
    return max((compute_entitlement_end(sub, today) for sub in subscriptions), default=today)
