"""Mapping backfill from the payment provider.

Enumerates every provider customer and writes a mapping record for each one
that has a live (active or pending) subscription. Existing records are left
alone unless the import is forced.
"""

from typing import Optional

from subscription_sync.errors import ProviderError
from subscription_sync.logging_config import get_logger
from subscription_sync.models import ImportSummary, MappingRecord, ProviderSubscription
from subscription_sync.models.provider import RESOLVABLE_STATUSES
from subscription_sync.repositories.mapping_store import MappingStore
from subscription_sync.repositories.offer_repository import OfferRepository
from subscription_sync.services.provider_gateway import ProviderGateway

logger = get_logger(__name__)


class MappingImporter:
    """Builds mapping records for customers that predate this service."""

    def __init__(self, gateway: ProviderGateway, store: MappingStore, offers: OfferRepository):
        self._gateway = gateway
        self._store = store
        self._offers = offers

    def run(self, force: bool = False) -> ImportSummary:
        """Import every customer with a live subscription.

        Args:
            force: Overwrite identifiers on existing records

        Raises:
            ProviderError: Customers could not be listed
            StoreError: Mapping store unavailable
        """
        summary = ImportSummary()
        customers = self._gateway.list_customers()
        logger.info("import_started", customers=len(customers), force=force)

        for customer in customers:
            summary.customers_processed += 1
            email = customer.normalized_email
            if not email:
                summary.records_skipped_no_email += 1
                continue

            try:
                live = [s for s in self._gateway.list_subscriptions(customer.id) if s.status in RESOLVABLE_STATUSES]
            except ProviderError as e:
                logger.error("import_customer_failed", customer_id=customer.id, error=str(e))
                summary.customers_failed += 1
                continue

            if not live:
                continue
            summary.active_subs_seen += len(live)

            existing = self._store.get_record(email)
            if existing is not None and not force:
                summary.records_skipped_existing += 1
                continue

            subscription = live[0]
            record = existing or MappingRecord(email=email)
            record.customer_id = customer.id
            record.offer_id = self.guess_offer_id(subscription) or record.offer_id
            if customer.name and not record.name:
                record.name = customer.name
            restarted = record.attach_subscription(subscription.id)

            self._store.save_record(record)
            if restarted:
                self._store.remove_pending(email)
            self._store.set_customer_index(customer.id, email, subscription.id)
            summary.records_created += 1
            logger.info(
                "import_mapping_saved",
                email=email,
                customer_id=customer.id,
                subscription_id=subscription.id,
                offer_id=record.offer_id,
            )

        logger.info("import_finished", **summary.model_dump())
        return summary

    def guess_offer_id(self, subscription: ProviderSubscription) -> Optional[str]:
        """Match amount and interval against the catalog, else use metadata.offerId."""
        amount = subscription.amount.value if subscription.amount else None
        for offer in self._offers.get_subscription_offers():
            if offer.amount.value == amount and offer.interval == subscription.interval:
                return offer.id
        offer_id = subscription.meta.get("offerId")
        return str(offer_id) if offer_id else None


# Global importer instance
_importer_instance: Optional[MappingImporter] = None


def get_mapping_importer() -> MappingImporter:
    """Get global mapping importer instance (singleton)."""
    global _importer_instance
    if _importer_instance is None:
        from subscription_sync.repositories.mapping_store import get_mapping_store
        from subscription_sync.repositories.offer_repository import get_offer_repository
        from subscription_sync.services.provider_gateway import get_provider_gateway

        _importer_instance = MappingImporter(
            gateway=get_provider_gateway(),
            store=get_mapping_store(),
            offers=get_offer_repository(),
        )
    return _importer_instance


def reset_mapping_importer() -> None:
    """Drop the global importer (for testing)."""
    global _importer_instance
    _importer_instance = None
