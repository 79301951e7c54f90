"""Payment webhook ingestion.

Turns "payment X changed" notifications into subscription creation, mapping
writes, upgrade handling and course access activation. The notification
carries only an id; the payment itself is always fetched from the provider.

Processing steps for a paid payment:
1. First payment of a subscription offer: create (or reuse) the recurring
   subscription, persist the mapping, cancel lower tiers for upgrade offers
2. Activate course access (one-time payments always, subscriptions only on
   the first payment, never on renewals)

Each step is isolated: a failing step is logged, alerted and recorded on the
outcome, and the remaining steps still run.
"""

import re
from typing import Callable, Optional

from subscription_sync.config import Settings
from subscription_sync.errors import InfrastructureFailure, SyncError, ValidationFailure
from subscription_sync.logging_config import bind_context, get_logger, unbind_context
from subscription_sync.models import (
    CancelAttempt,
    MappingRecord,
    OfferDefinition,
    Payment,
    ProviderSubscription,
    WebhookOutcome,
)
from subscription_sync.models.provider import RESOLVABLE_STATUSES
from subscription_sync.repositories.mapping_store import MappingStore
from subscription_sync.repositories.offer_repository import OfferRepository
from subscription_sync.services.access_activator import AccessActivator
from subscription_sync.services.alert_dispatcher import AlertDispatcher
from subscription_sync.services.provider_gateway import ProviderGateway
from subscription_sync.state_logger import log_cancel_attempt
from subscription_sync.utils.billing_cycle import next_cycle_date

logger = get_logger(__name__)


class WebhookEngine:
    """Processes payment notifications."""

    def __init__(
        self,
        gateway: ProviderGateway,
        store: MappingStore,
        offers: OfferRepository,
        activator: AccessActivator,
        alerts: AlertDispatcher,
        settings: Settings,
    ):
        self._gateway = gateway
        self._store = store
        self._offers = offers
        self._activator = activator
        self._alerts = alerts
        self._settings = settings

    def handle_payment_notification(self, payment_id: Optional[str]) -> WebhookOutcome:
        """Process one notification. Never raises.

        Args:
            payment_id: Opaque payment id from the notification body

        Returns:
            WebhookOutcome describing what was done
        """
        outcome = WebhookOutcome(payment_id=payment_id)
        if not payment_id:
            logger.warning("webhook_missing_payment_id")
            return outcome

        bind_context(payment_id=payment_id)
        try:
            self._process(payment_id, outcome)
        except SyncError as e:
            self._record_failure(outcome, "payment", e)
            outcome.action = "error"
        except Exception as e:
            # Boundary: the provider must always receive 200
            logger.error(
                "webhook_unexpected_error",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._alerts.error("Webhook processing crashed", payment_id=payment_id, error=str(e))
            outcome.action = "error"
            outcome.errors.append(f"unexpected: {type(e).__name__}")
        finally:
            unbind_context("payment_id")

        logger.info(
            "webhook_processed",
            action=outcome.action,
            subscription_id=outcome.subscription_id,
            subscription_reused=outcome.subscription_reused,
            activated=outcome.activated,
            upgrade_canceled=outcome.upgrade_canceled,
            error_count=len(outcome.errors),
        )
        return outcome

    def _process(self, payment_id: str, outcome: WebhookOutcome) -> None:
        payment = self._gateway.fetch_payment(payment_id)
        logger.info(
            "webhook_payment_fetched",
            status=payment.status,
            sequence_type=payment.sequenceType,
            customer_id=payment.customerId,
            offer_id=payment.meta.get("offerId"),
        )

        if not payment.is_paid:
            outcome.action = "not_paid"
            return

        offer = self._offers.resolve(payment.meta.get("offerId"))
        if offer is None:
            raise ValidationFailure("No offers configured")

        if payment.is_subscription:
            if payment.is_first:
                outcome.action = "subscription_first"
                self._run_step(outcome, "create_subscription", lambda: self._start_subscription(payment, offer, outcome))
                if outcome.action == "duplicate_ended":
                    return
            else:
                outcome.action = "renewal"
                return
        else:
            outcome.action = "one_time"

        self._run_step(outcome, "activate", lambda: self._activate(payment, offer, outcome))

    def _run_step(self, outcome: WebhookOutcome, step: str, fn: Callable[[], None]) -> None:
        try:
            fn()
        except SyncError as e:
            self._record_failure(outcome, step, e)

    def _record_failure(self, outcome: WebhookOutcome, step: str, error: SyncError) -> None:
        outcome.errors.append(f"{step}: {error.reason}")
        logger.error(
            "webhook_step_failed",
            step=step,
            reason=error.reason,
            error=str(error),
            retryable=error.retryable,
        )
        level = "error" if isinstance(error, InfrastructureFailure) else "warn"
        self._alerts.alert(
            level,
            f"Webhook step {step} failed",
            payment_id=outcome.payment_id,
            reason=error.reason,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # Subscription creation
    # ------------------------------------------------------------------

    def _start_subscription(self, payment: Payment, offer: OfferDefinition, outcome: WebhookOutcome) -> None:
        customer_id = payment.customerId
        if not customer_id:
            raise ValidationFailure(f"First payment {payment.id} has no customer")
        if not offer.is_subscription or not offer.interval:
            raise ValidationFailure(f"Offer {offer.id} is not a subscription offer")

        subscription = self._find_existing_subscription(customer_id, payment.id)
        if subscription is not None and subscription.status not in RESOLVABLE_STATUSES:
            # Late redelivery after the customer canceled: the lifecycle stays ended
            outcome.action = "duplicate_ended"
            outcome.subscription_id = subscription.id
            outcome.subscription_reused = True
            logger.info(
                "duplicate_for_ended_subscription",
                customer_id=customer_id,
                subscription_id=subscription.id,
                subscription_status=subscription.status,
            )
            return
        if subscription is not None:
            outcome.subscription_reused = True
            logger.info("subscription_reused", customer_id=customer_id, subscription_id=subscription.id)
        else:
            subscription = self._create_subscription(payment, offer, customer_id)
        outcome.subscription_id = subscription.id

        self._run_step(outcome, "save_mapping", lambda: self._save_mapping(payment, offer, subscription.id))

        if offer.upgrade:
            self._run_step(outcome, "upgrade", lambda: self._cancel_lower_tiers(customer_id, offer, subscription.id, outcome))

    def _find_existing_subscription(self, customer_id: str, payment_id: str) -> Optional[ProviderSubscription]:
        """A subscription already created for this payment, at any status.

        A live match is preferred when the payment id appears more than once.
        """
        matches = [s for s in self._gateway.list_subscriptions(customer_id) if s.meta.get("paymentId") == payment_id]
        live = [s for s in matches if s.status in RESOLVABLE_STATUSES]
        if live:
            return live[0]
        return matches[0] if matches else None

    def _create_subscription(self, payment: Payment, offer: OfferDefinition, customer_id: str) -> ProviderSubscription:
        start_date = next_cycle_date(payment.paidAt or payment.createdAt, offer.interval)
        metadata = dict(payment.meta)
        metadata["paymentId"] = payment.id
        description = (
            f"{offer.description} - recurring payment "
            f"({offer.amount.value} {offer.amount.currency} / {offer.interval})"
        )
        return self._gateway.create_subscription(
            customer_id=customer_id,
            amount=offer.amount,
            interval=offer.interval,
            start_date=start_date,
            metadata=metadata,
            description=description,
            webhook_url=self._settings.webhook_url,
        )

    def _save_mapping(self, payment: Payment, offer: OfferDefinition, subscription_id: str) -> None:
        email = payment.email
        customer_id = payment.customerId
        if not email:
            logger.warning("mapping_skipped_no_email", customer_id=customer_id, subscription_id=subscription_id)
            self._store.set_customer_index(customer_id, "", subscription_id)
            return

        record = self._store.get_record(email) or MappingRecord(email=email)
        record.customer_id = customer_id
        record.offer_id = offer.id
        if payment.consumer_name:
            record.name = payment.consumer_name
        if payment.meta.get("externalUserId"):
            record.external_user_id = str(payment.meta["externalUserId"])
        restarted = record.attach_subscription(subscription_id)

        self._store.save_record(record)
        if restarted:
            self._store.remove_pending(email)
        self._store.set_customer_index(customer_id, email, subscription_id)
        logger.info("mapping_saved", email=email, customer_id=customer_id, subscription_id=subscription_id)

    def _cancel_lower_tiers(
        self, customer_id: str, offer: OfferDefinition, new_subscription_id: str, outcome: WebhookOutcome
    ) -> None:
        """Cancel lower-tier subscriptions after an upgrade purchase."""
        pattern = (
            re.compile(offer.downgrade_description_pattern, re.IGNORECASE)
            if offer.downgrade_description_pattern
            else None
        )
        candidates = [
            sub
            for sub in self._gateway.list_subscriptions(customer_id)
            if sub.id != new_subscription_id
            and sub.is_cancellable
            and (
                sub.interval in offer.downgrade_intervals
                or (pattern is not None and pattern.search(sub.description or ""))
            )
        ]
        logger.info(
            "upgrade_detected",
            customer_id=customer_id,
            offer_id=offer.id,
            new_subscription_id=new_subscription_id,
            candidates=[sub.id for sub in candidates],
        )

        for sub in candidates:
            attempt = CancelAttempt(
                subscription_id=sub.id,
                http_status=self._gateway.cancel_subscription(customer_id, sub.id),
            )
            log_cancel_attempt(customer_id, sub.id, attempt.http_status, phase="upgrade", interval=sub.interval)
            if attempt.succeeded:
                outcome.upgrade_canceled.append(sub.id)
            else:
                outcome.errors.append(f"upgrade: cancel {sub.id} returned {attempt.http_status}")
                self._alerts.warn(
                    "Upgrade could not cancel lower-tier subscription",
                    customer_id=customer_id,
                    subscription_id=sub.id,
                    http_status=attempt.http_status,
                )

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def _activate(self, payment: Payment, offer: OfferDefinition, outcome: WebhookOutcome) -> None:
        meta = payment.meta
        activation_url = meta.get("offerActivationUrl") or offer.activation_url or self._settings.activation_url
        external_user_id = meta.get("externalUserId") or payment.customerId
        email = payment.email

        logger.info(
            "access_activation_attempt",
            offer_id=offer.id,
            email=email,
            external_user_id=external_user_id,
            activation_url_present=bool(activation_url),
        )
        result = self._activator.activate(
            activation_url,
            payment.consumer_name,
            email,
            str(external_user_id) if external_user_id else None,
        )
        outcome.activated = result.ok
        result.raise_for_failure()


# Global engine instance
_engine_instance: Optional[WebhookEngine] = None


def get_webhook_engine() -> WebhookEngine:
    """Get global webhook engine instance (singleton)."""
    global _engine_instance
    if _engine_instance is None:
        from subscription_sync.config import get_config
        from subscription_sync.repositories.mapping_store import get_mapping_store
        from subscription_sync.repositories.offer_repository import get_offer_repository
        from subscription_sync.services.access_activator import get_access_activator
        from subscription_sync.services.alert_dispatcher import get_alert_dispatcher
        from subscription_sync.services.provider_gateway import get_provider_gateway

        _engine_instance = WebhookEngine(
            gateway=get_provider_gateway(),
            store=get_mapping_store(),
            offers=get_offer_repository(),
            activator=get_access_activator(),
            alerts=get_alert_dispatcher(),
            settings=get_config().settings,
        )
    return _engine_instance


def reset_webhook_engine() -> None:
    """Drop the global engine (for testing)."""
    global _engine_instance
    _engine_instance = None
