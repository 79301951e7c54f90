"""Deferred deactivation sweep.

Walks the deactivation queue and revokes course access for every canceled
customer whose entitlement end has been reached. Entries that fail stay
queued and are retried on the next run; there is no attempt cap.
"""

from datetime import date, datetime
from typing import Optional

from subscription_sync.config import Settings
from subscription_sync.errors import StoreError
from subscription_sync.logging_config import get_logger
from subscription_sync.models import MappingRecord, SweepItem, SweepReport
from subscription_sync.repositories.mapping_store import MappingStore
from subscription_sync.repositories.offer_repository import OfferRepository
from subscription_sync.services.access_activator import AccessActivator
from subscription_sync.services.alert_dispatcher import AlertDispatcher

logger = get_logger(__name__)


class DeactivationSweeper:
    """Revokes access for queued customers whose cancel-at date has passed."""

    def __init__(
        self,
        store: MappingStore,
        activator: AccessActivator,
        offers: OfferRepository,
        alerts: AlertDispatcher,
        settings: Settings,
    ):
        self._store = store
        self._activator = activator
        self._offers = offers
        self._alerts = alerts
        self._settings = settings

    def run(self, today: Optional[date] = None, now: Optional[datetime] = None) -> SweepReport:
        """Process the whole queue once.

        Args:
            today: Date compared against cancel_at_date (defaults to today)
            now: Timestamp stamped on deactivated records

        Returns:
            SweepReport with one item per queued email
        """
        today = today or date.today()
        report = SweepReport(today=today)

        try:
            emails = self._store.pending_emails()
        except StoreError as e:
            logger.error("sweep_queue_unavailable", error=str(e))
            self._alerts.error("Deactivation sweep could not read the queue", error=str(e))
            report.ok = False
            return report

        report.pending = len(emails)
        logger.info("sweep_started", today=today.isoformat(), pending=report.pending)

        for email in emails:
            item = self._process(email, today, now)
            if item.reason in ("deactivated", "deactivation_failed"):
                report.processed += 1
            if item.reason == "deactivated":
                report.deactivated += 1
            report.items.append(item)

        logger.info(
            "sweep_finished",
            today=today.isoformat(),
            pending=report.pending,
            processed=report.processed,
            deactivated=report.deactivated,
        )
        return report

    def _process(self, email: str, today: date, now: Optional[datetime]) -> SweepItem:
        try:
            record = self._store.get_record(email)
        except StoreError as e:
            return SweepItem(email=email, reason="store_error", detail=str(e))

        if record is None:
            return SweepItem(email=email, reason="no_data_for_key")

        if not record.deactivation_pending:
            if record.deactivated_at is not None:
                # Deactivated earlier but the queue removal was lost
                try:
                    self._store.remove_pending(email)
                except StoreError as e:
                    return SweepItem(email=email, reason="store_error", detail=str(e))
                return SweepItem(email=email, reason="already_deactivated")
            return SweepItem(email=email, reason="not_pending")

        if record.cancel_at_date is None:
            return SweepItem(email=email, reason="no_cancel_at_date")

        if record.cancel_at_date > today:
            return SweepItem(email=email, reason="not_due_yet", cancel_at_date=record.cancel_at_date)

        url = self._deactivation_url(record)
        if not url:
            logger.warning("sweep_missing_deactivation_url", email=email, offer_id=record.offer_id)
            return SweepItem(email=email, reason="missing_deactivation_url", cancel_at_date=record.cancel_at_date)

        external_user_id = record.external_user_id or record.customer_id or email
        result = self._activator.deactivate(url, record.name or email, email, external_user_id)
        if not result.ok:
            self._alerts.warn(
                "Access deactivation failed, will retry on next sweep",
                email=email,
                status_code=result.status_code,
                reason=result.reason,
            )
            return SweepItem(
                email=email,
                reason="deactivation_failed",
                cancel_at_date=record.cancel_at_date,
                status_code=result.status_code,
                detail=result.detail or result.reason,
            )

        record.mark_deactivated(now=now)
        try:
            self._store.save_deactivated(record)
        except StoreError as e:
            # Access is revoked; the entry stays queued and the next sweep repeats the idempotent call
            self._alerts.error("Access revoked but mapping not updated", email=email, error=str(e))
            return SweepItem(
                email=email,
                reason="store_error",
                cancel_at_date=record.cancel_at_date,
                status_code=result.status_code,
                detail=str(e),
            )

        return SweepItem(
            email=email,
            reason="deactivated",
            cancel_at_date=record.cancel_at_date,
            status_code=result.status_code,
        )

    def _deactivation_url(self, record: MappingRecord) -> Optional[str]:
        """Record override, then the offer's URL, then the global default."""
        if record.deactivation_url:
            return record.deactivation_url
        offer = self._offers.find_by_id(record.offer_id)
        if offer is not None and offer.deactivation_url:
            return offer.deactivation_url
        return self._settings.deactivation_url


# Global sweeper instance
_sweeper_instance: Optional[DeactivationSweeper] = None


def get_deactivation_sweeper() -> DeactivationSweeper:
    """Get global deactivation sweeper instance (singleton)."""
    global _sweeper_instance
    if _sweeper_instance is None:
        from subscription_sync.config import get_config
        from subscription_sync.repositories.mapping_store import get_mapping_store
        from subscription_sync.repositories.offer_repository import get_offer_repository
        from subscription_sync.services.access_activator import get_access_activator
        from subscription_sync.services.alert_dispatcher import get_alert_dispatcher

        _sweeper_instance = DeactivationSweeper(
            store=get_mapping_store(),
            activator=get_access_activator(),
            offers=get_offer_repository(),
            alerts=get_alert_dispatcher(),
            settings=get_config().settings,
        )
    return _sweeper_instance


def reset_deactivation_sweeper() -> None:
    """Drop the global sweeper (for testing)."""
    global _sweeper_instance
    _sweeper_instance = None
