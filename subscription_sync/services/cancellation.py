"""Subscription cancellation protocol.

Entry modes:
- Self-service: an emailed, signed, single-use link (request_cancel_link /
  complete_self_service_cancel)
- Operator bulk: a list of emails resolved through the mapping store
- Operator cancel-all: one provider customer, verified against an email

Per attempt: resolve the target subscription (mapping first, live provider
query second), cancel it, sweep every other live subscription when the
primary cancel did not stick, compute the entitlement end, then persist the
canceled state, queue deferred deactivation and write the audit entry.
"""

from datetime import date, datetime
from typing import Optional
from urllib.parse import quote

from subscription_sync.config import Settings
from subscription_sync.errors import (
    IdentityMismatch,
    InvalidToken,
    NoActiveSubscription,
    NoMapping,
    ProviderError,
    StoreError,
)
from subscription_sync.logging_config import get_logger
from subscription_sync.models import (
    AuditEntry,
    AuditSource,
    CancelAllOutcome,
    CancelAttempt,
    CancelOutcome,
    CancellationConfig,
    Customer,
    MappingRecord,
    ProviderSubscription,
)
from subscription_sync.models.mapping import utcnow
from subscription_sync.models.provider import RESOLVABLE_STATUSES
from subscription_sync.repositories.mapping_store import MappingStore, email_key
from subscription_sync.services.alert_dispatcher import AlertDispatcher
from subscription_sync.services.mailer import Mailer
from subscription_sync.services.provider_gateway import ProviderGateway
from subscription_sync.state_logger import log_cancel_attempt
from subscription_sync.utils.entitlement import combine_entitlement_ends, compute_entitlement_end
from subscription_sync.utils.token_codec import issue_cancel_token, verify_token

logger = get_logger(__name__)


class CancellationService:
    """Cancels subscriptions and records the resulting entitlement state."""

    def __init__(
        self,
        gateway: ProviderGateway,
        store: MappingStore,
        mailer: Mailer,
        alerts: AlertDispatcher,
        settings: Settings,
        config: Optional[CancellationConfig] = None,
    ):
        self._gateway = gateway
        self._store = store
        self._mailer = mailer
        self._alerts = alerts
        self._settings = settings
        self._config = config or CancellationConfig()

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def request_cancel_link(self, email: Optional[str], now: Optional[float] = None) -> bool:
        """Email a cancel link to a known customer.

        Callers always answer the same way, so this never reveals whether
        the email is known.

        Returns:
            True if a link was sent
        """
        if not email:
            return False

        try:
            record = self._store.get_record(email)
        except StoreError as e:
            logger.error("cancel_link_lookup_failed", email=email, error=str(e))
            return False

        if record is None or not record.customer_id:
            logger.info("cancel_link_no_mapping", email=email)
            return False

        subscription_id = record.subscription_id
        if not subscription_id:
            try:
                subscription = self._resolve_live_subscription(record.customer_id)
            except ProviderError as e:
                logger.error("cancel_link_provider_lookup_failed", email=email, error=str(e))
                return False
            if subscription is None:
                logger.info("cancel_link_no_subscription", email=email, customer_id=record.customer_id)
                return False
            subscription_id = subscription.id
            self._backfill_subscription_id(email, subscription_id)

        token = issue_cancel_token(
            email=email,
            customer_id=record.customer_id,
            subscription_id=subscription_id,
            key=email_key(email),
            secret=self._settings.cancel_link_secret,
            ttl_minutes=self._config.token_ttl_minutes,
            now=now,
        )
        link = f"{self._settings.cancel_link_base}?token={quote(token, safe='')}"
        sent = self._mailer.send_cancel_link(email, link, self._config.token_ttl_minutes)
        logger.info("cancel_link_issued", email=email, subscription_id=subscription_id, sent=sent)
        return sent

    def complete_self_service_cancel(
        self, token: Optional[str], today: Optional[date] = None, now: Optional[datetime] = None
    ) -> CancelOutcome:
        """Redeem a cancel link.

        Raises:
            InvalidToken: Token is malformed, forged, expired or lacks an identity
        """
        payload = verify_token(token or "", self._settings.cancel_link_secret)
        customer_id = payload.get("customerId")
        email = str(payload.get("email") or "").strip().lower()
        if not customer_id or not email:
            raise InvalidToken()

        try:
            first_use = self._store.claim_token_marker(token, self._config.used_marker_ttl_days * 86400)
        except StoreError as e:
            logger.error("single_use_guard_failed", email=email, error=str(e))
            first_use = True

        if not first_use:
            logger.info("cancel_link_replayed", email=email, customer_id=customer_id)
            return CancelOutcome(email=email, customer_id=customer_id, replayed=True)

        return self._cancel(
            customer_id=customer_id,
            email=email,
            subscription_id=payload.get("subscriptionId"),
            source=AuditSource.EMAIL_LINK,
            today=today,
            now=now,
        )

    # ------------------------------------------------------------------
    # Operator
    # ------------------------------------------------------------------

    def operator_cancel_emails(
        self, emails: list[str], today: Optional[date] = None, now: Optional[datetime] = None
    ) -> list[CancelOutcome]:
        """Cancel the subscription of each email via its mapping record."""
        outcomes = []
        for email in emails:
            try:
                record = self._store.get_record(email)
            except StoreError as e:
                logger.error("operator_cancel_lookup_failed", email=email, error=str(e))
                outcomes.append(CancelOutcome(email=email, ok=False, reason=e.reason))
                continue

            if record is None or not record.customer_id:
                outcomes.append(CancelOutcome(email=email, ok=False, reason=NoMapping.reason))
                continue

            outcomes.append(
                self._cancel(
                    customer_id=record.customer_id,
                    email=email,
                    subscription_id=record.subscription_id,
                    source=AuditSource.OPERATOR_BULK,
                    today=today,
                    now=now,
                )
            )
        return outcomes

    def verify_customer(self, customer_id: str, email: str) -> Customer:
        """Fetch a provider customer and check it belongs to the email.

        Raises:
            NoMapping: Provider does not know the customer
            IdentityMismatch: Customer email differs from the given email
            ProviderError: Provider failure
        """
        customer = self._gateway.fetch_customer(customer_id)
        if customer is None:
            self._alerts.warn("Operator lookup: customer not found", customer_id=customer_id)
            raise NoMapping(f"Customer not found: {customer_id}")
        if not customer.normalized_email or customer.normalized_email != email:
            self._alerts.warn(
                "Operator lookup: email mismatch",
                customer_id=customer_id,
                provider_email=customer.normalized_email,
                given_email=email,
            )
            raise IdentityMismatch("CustomerId and email do not match")
        return customer

    def list_customer_subscriptions(self, customer_id: str, email: str) -> list[ProviderSubscription]:
        """All subscriptions of a verified customer."""
        self.verify_customer(customer_id, email)
        return self._gateway.list_subscriptions(customer_id)

    def operator_cancel_all(
        self, customer_id: str, email: str, today: Optional[date] = None, now: Optional[datetime] = None
    ) -> CancelAllOutcome:
        """Cancel every live subscription of a verified customer.

        The entitlement end is the latest across the canceled subscriptions.
        """
        today = today or date.today()
        self.verify_customer(customer_id, email)

        live = [sub for sub in self._gateway.list_subscriptions(customer_id) if sub.is_cancellable]
        if not live:
            self._alerts.info("Operator cancel: no active subscriptions", customer_id=customer_id, email=email)
            return CancelAllOutcome(
                customer_id=customer_id,
                email=email,
                message="No active subscriptions found for this customer",
            )

        cancel_at = combine_entitlement_ends(live, today)
        attempts = [self._cancel_one(customer_id, sub.id, phase="operator") for sub in live]
        canceled_ids = [a.subscription_id for a in attempts if a.succeeded]
        failures = [a for a in attempts if not a.succeeded]

        outcome = CancelAllOutcome(
            customer_id=customer_id,
            email=email,
            message=f"Canceled {len(canceled_ids)} of {len(live)} subscriptions",
            canceled_ids=canceled_ids,
            failures=failures,
            cancel_at_date=cancel_at,
        )
        if failures:
            self._alerts.error(
                "Operator cancel: some subscriptions could not be canceled",
                customer_id=customer_id,
                failed=[a.subscription_id for a in failures],
            )
        if canceled_ids:
            outcome.store_updated = self._persist(
                email, customer_id, cancel_at, attempts, None, AuditSource.OPERATOR_CS, now
            )
        return outcome

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def _cancel(
        self,
        customer_id: str,
        email: str,
        subscription_id: Optional[str],
        source: AuditSource,
        today: Optional[date],
        now: Optional[datetime],
    ) -> CancelOutcome:
        today = today or date.today()
        outcome = CancelOutcome(email=email, customer_id=customer_id)
        results: list[CancelAttempt] = []

        # Resolve
        target = subscription_id
        if not target:
            try:
                resolved = self._resolve_live_subscription(customer_id)
            except ProviderError as e:
                logger.error("cancel_resolution_failed", customer_id=customer_id, error=str(e))
                resolved = None
            if resolved is not None:
                target = resolved.id
                self._backfill_subscription_id(email, target)
        outcome.subscription_id = target

        # Primary
        primary: Optional[CancelAttempt] = None
        if target:
            primary = self._cancel_one(customer_id, target, phase="primary")
            results.append(primary)
            outcome.primary_cancel_status = primary.http_status

        # Fallback: a 404/410 means the stored id was stale, so other live
        # subscriptions may still be charging
        fallback_subs: list[ProviderSubscription] = []
        provider_failed = False
        if primary is None or not primary.confirmed:
            try:
                live = [s for s in self._gateway.list_subscriptions(customer_id) if s.is_cancellable]
            except ProviderError as e:
                logger.error("cancel_fallback_list_failed", customer_id=customer_id, error=str(e))
                live = []
                provider_failed = True
            for sub in live:
                if sub.id == target:
                    continue
                attempt = self._cancel_one(customer_id, sub.id, phase="fallback")
                results.append(attempt)
                if attempt.succeeded:
                    fallback_subs.append(sub)

        outcome.results = results

        if not results:
            outcome.ok = False
            outcome.reason = ProviderError.reason if provider_failed else NoActiveSubscription.reason
            logger.info("cancel_nothing_to_cancel", customer_id=customer_id, email=email, reason=outcome.reason)
            return outcome

        if not any(a.succeeded for a in results):
            outcome.ok = False
            outcome.reason = ProviderError.reason
            self._alerts.error(
                "Cancellation failed at the provider",
                customer_id=customer_id,
                email=email,
                results=[a.model_dump() for a in results],
            )
            return outcome

        # Entitlement end
        if primary is not None and (primary.confirmed or not fallback_subs):
            cancel_at = compute_entitlement_end(self._fetch_quietly(customer_id, target), today)
        else:
            cancel_at = compute_entitlement_end(fallback_subs[0], today)
        outcome.cancel_at_date = cancel_at

        outcome.store_updated = self._persist(
            email, customer_id, cancel_at, results, outcome.primary_cancel_status, source, now
        )
        if not outcome.store_updated:
            outcome.ok = False
            outcome.reason = StoreError.reason
        return outcome

    def _resolve_live_subscription(self, customer_id: str) -> Optional[ProviderSubscription]:
        """First active or pending subscription, in provider order."""
        for sub in self._gateway.list_subscriptions(customer_id):
            if sub.status in RESOLVABLE_STATUSES:
                return sub
        return None

    def _cancel_one(self, customer_id: str, subscription_id: str, phase: str) -> CancelAttempt:
        status = self._gateway.cancel_subscription(customer_id, subscription_id)
        log_cancel_attempt(customer_id, subscription_id, status, phase)
        return CancelAttempt(subscription_id=subscription_id, http_status=status)

    def _fetch_quietly(self, customer_id: str, subscription_id: str) -> Optional[ProviderSubscription]:
        try:
            return self._gateway.fetch_subscription(customer_id, subscription_id)
        except ProviderError as e:
            logger.warning(
                "cancel_post_fetch_failed",
                customer_id=customer_id,
                subscription_id=subscription_id,
                error=str(e),
            )
            return None

    def _backfill_subscription_id(self, email: str, subscription_id: str) -> None:
        try:
            self._store.update_fields(
                email, {"subscription_id": subscription_id, "updated_at": utcnow().isoformat()}
            )
            logger.info("mapping_subscription_backfilled", email=email, subscription_id=subscription_id)
        except StoreError as e:
            logger.error("mapping_backfill_failed", email=email, error=str(e))

    def _persist(
        self,
        email: str,
        customer_id: str,
        cancel_at: date,
        results: list[CancelAttempt],
        primary_status: Optional[int],
        source: AuditSource,
        now: Optional[datetime],
    ) -> bool:
        """Save the canceled state and queue deactivation; audit is best effort.

        Returns:
            True if the mapping record and queue were updated
        """
        now = now or utcnow()
        try:
            record = self._store.get_record(email) or MappingRecord(email=email)
            record.customer_id = record.customer_id or customer_id
            record.mark_canceled(cancel_at, results, primary_status, now=now)
            self._store.save_canceled(record)
        except StoreError as e:
            logger.error("cancel_persist_failed", email=email, error=str(e))
            self._alerts.error(
                "Canceled at provider but mapping not updated",
                email=email,
                customer_id=customer_id,
                cancel_at_date=cancel_at.isoformat(),
            )
            return False

        try:
            self._store.write_audit(
                AuditEntry(email=email, customer_id=customer_id, source=source, ts=now, results=results)
            )
        except StoreError as e:
            logger.error("cancel_audit_failed", email=email, error=str(e))

        logger.info(
            "subscription_canceled",
            email=email,
            customer_id=customer_id,
            source=source.value,
            cancel_at_date=cancel_at.isoformat(),
        )
        return True


# Global service instance
_service_instance: Optional[CancellationService] = None


def get_cancellation_service() -> CancellationService:
    """Get global cancellation service instance (singleton)."""
    global _service_instance
    if _service_instance is None:
        from subscription_sync.config import get_config
        from subscription_sync.repositories.mapping_store import get_mapping_store
        from subscription_sync.services.alert_dispatcher import get_alert_dispatcher
        from subscription_sync.services.mailer import get_mailer
        from subscription_sync.services.provider_gateway import get_provider_gateway

        config = get_config()
        _service_instance = CancellationService(
            gateway=get_provider_gateway(),
            store=get_mapping_store(),
            mailer=get_mailer(),
            alerts=get_alert_dispatcher(),
            settings=config.settings,
            config=config.offers.cancellation,
        )
    return _service_instance


def reset_cancellation_service() -> None:
    """Drop the global service (for testing)."""
    global _service_instance
    _service_instance = None
