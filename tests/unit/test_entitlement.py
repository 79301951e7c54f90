"""Tests for entitlement-end computation."""

from datetime import date

from subscription_sync.models import ProviderSubscription
from subscription_sync.utils.entitlement import combine_entitlement_ends, compute_entitlement_end

TODAY = date(2025, 3, 1)


def _sub(**fields) -> ProviderSubscription:
    return ProviderSubscription(id=fields.pop("id", "sub_1"), status="canceled", **fields)


def test_next_payment_date_wins():
    sub = _sub(nextPaymentDate=date(2025, 3, 15), startDate=date(2025, 2, 15))
    assert compute_entitlement_end(sub, TODAY) == date(2025, 3, 15)


def test_start_date_used_when_no_next_payment():
    sub = _sub(startDate=date(2025, 3, 10))
    assert compute_entitlement_end(sub, TODAY) == date(2025, 3, 10)


def test_past_dates_floor_at_today():
    sub = _sub(nextPaymentDate=date(2025, 1, 1))
    assert compute_entitlement_end(sub, TODAY) == TODAY


def test_missing_subscription_or_dates_is_today():
    assert compute_entitlement_end(None, TODAY) == TODAY
    assert compute_entitlement_end(_sub(), TODAY) == TODAY


def test_combine_takes_latest():
    subs = [
        _sub(id="sub_1", nextPaymentDate=date(2025, 3, 15)),
        _sub(id="sub_2", nextPaymentDate=date(2026, 1, 20)),
        _sub(id="sub_3"),
    ]
    assert combine_entitlement_ends(subs, TODAY) == date(2026, 1, 20)


def test_combine_empty_is_today():
    assert combine_entitlement_ends([], TODAY) == TODAY
