"""Tests for the cancellation protocol."""

from datetime import date, datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from subscription_sync.errors import IdentityMismatch, InvalidToken, NoMapping, StoreError
from subscription_sync.models import MappingRecord, SubscriptionStatus
from subscription_sync.services.cancellation import CancellationService
from subscription_sync.utils.token_codec import issue_cancel_token, verify_token

TODAY = date(2025, 3, 1)
NOW = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)
EMAIL = "jane@example.com"


@pytest.fixture
def service(gateway, store, mailer, alerts, settings, config):
    return CancellationService(gateway, store, mailer, alerts, settings, config.offers.cancellation)


@pytest.fixture
def mapped(provider, store):
    """Customer with one active monthly subscription and a mapping record."""
    provider.add_customer("cst_1", EMAIL, "Jane")
    provider.add_subscription("cst_1", "sub_1", nextPaymentDate="2025-03-15")
    record = MappingRecord(email=EMAIL, customer_id="cst_1", offer_id="OFFER1", name="Jane")
    record.attach_subscription("sub_1")
    store.save_record(record)
    return record


def _token(settings, subscription_id="sub_1", customer_id="cst_1", email=EMAIL):
    return issue_cancel_token(email, customer_id, subscription_id, f"mapping:email:{email}", settings.cancel_link_secret)


def _store_down(*args, **kwargs):
    raise StoreError("down")


class TestCancelLinkRequest:
    """Issuing self-service cancel links."""

    def test_known_customer_gets_link(self, service, mailer, settings, mapped):
        assert service.request_cancel_link(EMAIL)
        to, link, ttl = mailer.send_cancel_link.call_args.args
        assert to == EMAIL
        assert ttl == 30
        assert link.startswith("https://sync.example.test/api/cancel?token=")
        token = parse_qs(urlparse(link).query)["token"][0]
        payload = verify_token(token, settings.cancel_link_secret)
        assert payload["customerId"] == "cst_1"
        assert payload["subscriptionId"] == "sub_1"
        assert payload["key"] == "mapping:email:jane@example.com"

    def test_unknown_email_sends_nothing(self, service, mailer):
        assert not service.request_cancel_link("ghost@example.com")
        assert not service.request_cancel_link(None)
        mailer.send_cancel_link.assert_not_called()

    def test_missing_subscription_id_is_backfilled(self, service, provider, store):
        provider.add_customer("cst_2", "joe@example.com")
        provider.add_subscription("cst_2", "sub_old", status="canceled")
        provider.add_subscription("cst_2", "sub_live")
        store.save_record(MappingRecord(email="joe@example.com", customer_id="cst_2"))

        assert service.request_cancel_link("joe@example.com")
        assert store.get_record("joe@example.com").subscription_id == "sub_live"

    def test_no_live_subscription_sends_nothing(self, service, provider, store, mailer):
        provider.add_customer("cst_2", "joe@example.com")
        store.save_record(MappingRecord(email="joe@example.com", customer_id="cst_2"))
        assert not service.request_cancel_link("joe@example.com")
        mailer.send_cancel_link.assert_not_called()

    def test_store_outage_sends_nothing(self, service, store, mailer, monkeypatch):
        monkeypatch.setattr(store, "get_record", _store_down)
        assert not service.request_cancel_link(EMAIL)
        mailer.send_cancel_link.assert_not_called()


class TestSelfServiceCancel:
    """Redeeming cancel links."""

    def test_cancel_persists_and_queues(self, service, provider, store, settings, mapped):
        outcome = service.complete_self_service_cancel(_token(settings), today=TODAY, now=NOW)

        assert outcome.ok
        assert outcome.primary_cancel_status == 200
        assert outcome.cancel_at_date == date(2025, 3, 15)
        assert provider.find_subscription("cst_1", "sub_1")["status"] == "canceled"

        record = store.get_record(EMAIL)
        assert record.status == SubscriptionStatus.CANCELED
        assert record.cancel_at_date == date(2025, 3, 15)
        assert record.deactivation_pending
        assert record.canceled_at == NOW
        assert store.pending_emails() == [EMAIL]
        assert store.get_audit(EMAIL)["source"] == "email_link"

    def test_confirmed_primary_skips_fallback(self, service, provider, settings, mapped):
        provider.add_subscription("cst_1", "sub_2")
        service.complete_self_service_cancel(_token(settings), today=TODAY, now=NOW)
        assert provider.find_subscription("cst_1", "sub_2")["status"] == "active"
        assert [r.url.path for r in provider.calls("DELETE")] == ["/v2/customers/cst_1/subscriptions/sub_1"]

    def test_replay_is_a_noop(self, service, provider, settings, mapped):
        token = _token(settings)
        service.complete_self_service_cancel(token, today=TODAY, now=NOW)
        outcome = service.complete_self_service_cancel(token, today=TODAY, now=NOW)
        assert outcome.ok
        assert outcome.replayed
        assert len(provider.calls("DELETE")) == 1

    def test_invalid_token(self, service):
        with pytest.raises(InvalidToken):
            service.complete_self_service_cancel("garbage")
        with pytest.raises(InvalidToken):
            service.complete_self_service_cancel(None)

    def test_token_without_identity(self, service, settings):
        with pytest.raises(InvalidToken):
            service.complete_self_service_cancel(_token(settings, customer_id=""))

    def test_stale_primary_triggers_fallback(self, service, provider, store, settings, mapped):
        provider.add_subscription("cst_1", "sub_2", nextPaymentDate="2025-04-02")
        token = _token(settings, subscription_id="sub_gone")

        outcome = service.complete_self_service_cancel(token, today=TODAY, now=NOW)

        assert outcome.ok
        assert outcome.primary_cancel_status == 404
        assert {a.subscription_id for a in outcome.results} == {"sub_gone", "sub_1", "sub_2"}
        assert provider.find_subscription("cst_1", "sub_1")["status"] == "canceled"
        assert provider.find_subscription("cst_1", "sub_2")["status"] == "canceled"
        # Entitlement from the first subscription the sweep canceled
        assert outcome.cancel_at_date == date(2025, 3, 15)
        assert store.pending_emails() == [EMAIL]

    def test_failed_primary_falls_back(self, service, provider, settings, mapped):
        provider.add_subscription("cst_1", "sub_2", nextPaymentDate="2025-03-20")
        provider.cancel_overrides["sub_1"] = 500

        outcome = service.complete_self_service_cancel(_token(settings), today=TODAY, now=NOW)

        assert outcome.ok
        assert outcome.primary_cancel_status == 500
        assert provider.find_subscription("cst_1", "sub_2")["status"] == "canceled"
        assert outcome.cancel_at_date == date(2025, 3, 20)

    def test_everything_fails(self, service, provider, store, alerts, settings, mapped):
        provider.cancel_overrides["sub_1"] = 503

        outcome = service.complete_self_service_cancel(_token(settings), today=TODAY, now=NOW)

        assert not outcome.ok
        assert outcome.reason == "provider_error"
        assert store.pending_emails() == []
        assert store.get_record(EMAIL).status == SubscriptionStatus.ACTIVE
        alerts.error.assert_called_once()

    def test_nothing_to_cancel(self, service, provider, store, settings):
        provider.add_customer("cst_3", "ann@example.com")
        token = _token(settings, subscription_id=None, customer_id="cst_3", email="ann@example.com")

        outcome = service.complete_self_service_cancel(token, today=TODAY, now=NOW)

        assert not outcome.ok
        assert outcome.reason == "no_active_subscription"
        assert store.pending_emails() == []

    def test_store_failure_after_cancel(self, service, provider, store, alerts, settings, mapped, monkeypatch):
        def broken(record):
            raise StoreError("down")

        monkeypatch.setattr(store, "save_canceled", broken)
        outcome = service.complete_self_service_cancel(_token(settings), today=TODAY, now=NOW)

        assert not outcome.ok
        assert outcome.reason == "store_error"
        assert provider.find_subscription("cst_1", "sub_1")["status"] == "canceled"
        alerts.error.assert_called_once()

    def test_marker_store_outage_still_cancels(self, service, store, settings, mapped, monkeypatch):
        def broken(token, ttl):
            raise StoreError("down")

        monkeypatch.setattr(store, "claim_token_marker", broken)
        outcome = service.complete_self_service_cancel(_token(settings), today=TODAY, now=NOW)
        assert outcome.ok
        assert not outcome.replayed

    def test_entitlement_floors_at_today(self, service, provider, settings, mapped):
        provider.find_subscription("cst_1", "sub_1")["nextPaymentDate"] = "2025-01-01"
        outcome = service.complete_self_service_cancel(_token(settings), today=TODAY, now=NOW)
        assert outcome.cancel_at_date == TODAY


class TestOperatorBulk:
    """Operator cancellation by email list."""

    def test_mixed_results(self, service, store, mapped):
        outcomes = service.operator_cancel_emails([EMAIL, "ghost@example.com"], today=TODAY, now=NOW)
        assert [o.ok for o in outcomes] == [True, False]
        assert outcomes[1].reason == "no_mapping"
        assert store.get_audit(EMAIL)["source"] == "operator_bulk"

    def test_store_outage_per_email(self, service, store, monkeypatch):
        monkeypatch.setattr(store, "get_record", _store_down)
        outcomes = service.operator_cancel_emails([EMAIL], today=TODAY)
        assert outcomes[0].reason == "store_error"


class TestOperatorCancelAll:
    """Operator cancel-all for one verified customer."""

    def test_cancels_every_live_subscription(self, service, provider, store, mapped):
        provider.add_subscription("cst_1", "sub_year", interval="1 year", nextPaymentDate="2026-01-20")
        provider.add_subscription("cst_1", "sub_done", status="canceled")

        outcome = service.operator_cancel_all("cst_1", EMAIL, today=TODAY, now=NOW)

        assert outcome.canceled_ids == ["sub_1", "sub_year"]
        assert outcome.canceled_count == 2
        assert outcome.message == "Canceled 2 of 2 subscriptions"
        assert outcome.cancel_at_date == date(2026, 1, 20)
        assert outcome.store_updated
        record = store.get_record(EMAIL)
        assert record.cancel_at_date == date(2026, 1, 20)
        assert record.primary_cancel_status is None
        assert store.get_audit(EMAIL)["source"] == "operator_cs"

    def test_identity_mismatch(self, service, alerts, mapped):
        with pytest.raises(IdentityMismatch):
            service.operator_cancel_all("cst_1", "someone@else.com", today=TODAY)
        alerts.warn.assert_called_once()

    def test_unknown_customer(self, service):
        with pytest.raises(NoMapping):
            service.operator_cancel_all("cst_missing", EMAIL, today=TODAY)

    def test_no_live_subscriptions(self, service, provider, alerts):
        provider.add_customer("cst_4", "bob@example.com")
        outcome = service.operator_cancel_all("cst_4", "bob@example.com", today=TODAY)
        assert outcome.canceled_count == 0
        assert outcome.message == "No active subscriptions found for this customer"
        alerts.info.assert_called_once()

    def test_partial_failure(self, service, provider, store, alerts, mapped):
        provider.add_subscription("cst_1", "sub_2")
        provider.cancel_overrides["sub_2"] = 500

        outcome = service.operator_cancel_all("cst_1", EMAIL, today=TODAY, now=NOW)

        assert outcome.canceled_ids == ["sub_1"]
        assert [f.subscription_id for f in outcome.failures] == ["sub_2"]
        assert outcome.message == "Canceled 1 of 2 subscriptions"
        alerts.error.assert_called_once()
        assert store.pending_emails() == [EMAIL]

    def test_list_customer_subscriptions(self, service, provider, mapped):
        provider.add_subscription("cst_1", "sub_done", status="canceled")
        subs = service.list_customer_subscriptions("cst_1", EMAIL)
        assert [s.id for s in subs] == ["sub_1", "sub_done"]
