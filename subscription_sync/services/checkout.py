"""Checkout initiation.

Creates a provider customer and the payment the customer completes on the
provider's hosted checkout. The payment metadata carries everything the
webhook needs later (email, name, offer, access platform identifiers).
"""

from typing import Optional

from subscription_sync.config import Settings
from subscription_sync.errors import ValidationFailure
from subscription_sync.logging_config import get_logger
from subscription_sync.models import CheckoutConfig
from subscription_sync.repositories.offer_repository import OfferRepository
from subscription_sync.services.provider_gateway import ProviderGateway

logger = get_logger(__name__)


class CheckoutService:
    """Starts checkouts for subscription and one-time offers."""

    def __init__(
        self,
        gateway: ProviderGateway,
        offers: OfferRepository,
        settings: Settings,
        config: Optional[CheckoutConfig] = None,
    ):
        self._gateway = gateway
        self._offers = offers
        self._settings = settings
        self._config = config or CheckoutConfig()

    def start_checkout(self, email: str, name: Optional[str] = None, offer_id: Optional[str] = None) -> str:
        """Create customer and payment.

        Subscription offers start with a small first payment (sequenceType
        "first") that establishes the mandate; the recurring subscription is
        created by the webhook once it is paid. One-time offers are charged
        in full (sequenceType "oneoff").

        Returns:
            Hosted checkout URL

        Raises:
            ValidationFailure: Missing email or no offers configured
            ProviderError: Provider rejected customer or payment creation
        """
        if not email:
            raise ValidationFailure("Missing email")

        offer = self._offers.resolve(offer_id)
        if offer is None:
            raise ValidationFailure("No offers configured")
        if offer_id and offer.id != offer_id:
            logger.warning("checkout_unknown_offer", requested_offer_id=offer_id, offer_id=offer.id)

        display_name = name or email
        customer_id = self._gateway.create_customer(display_name, email, metadata={"offerId": offer.id})

        metadata = {
            "email": email,
            "name": display_name,
            "offerId": offer.id,
            "type": "subscription" if offer.is_subscription else "one_time",
            "externalUserId": customer_id,
        }
        activation_url = offer.activation_url or self._settings.activation_url
        if activation_url:
            metadata["offerActivationUrl"] = activation_url

        if offer.is_subscription:
            amount = self._config.first_payment_amount
            description = self._config.first_payment_description
            sequence_type = "first"
        else:
            amount = offer.amount
            description = offer.description
            sequence_type = "oneoff"

        checkout_url = self._gateway.create_payment(
            customer_id=customer_id,
            amount=amount,
            sequence_type=sequence_type,
            metadata=metadata,
            redirect_url=self._settings.checkout_redirect_url,
            webhook_url=self._settings.webhook_url,
            description=description,
            method=self._config.method,
            locale=self._config.locale,
        )
        logger.info(
            "checkout_started",
            email=email,
            customer_id=customer_id,
            offer_id=offer.id,
            sequence_type=sequence_type,
        )
        return checkout_url


# Global service instance
_service_instance: Optional[CheckoutService] = None


def get_checkout_service() -> CheckoutService:
    """Get global checkout service instance (singleton)."""
    global _service_instance
    if _service_instance is None:
        from subscription_sync.config import get_config
        from subscription_sync.repositories.offer_repository import get_offer_repository
        from subscription_sync.services.provider_gateway import get_provider_gateway

        config = get_config()
        _service_instance = CheckoutService(
            gateway=get_provider_gateway(),
            offers=get_offer_repository(),
            settings=config.settings,
            config=config.offers.checkout,
        )
    return _service_instance


def reset_checkout_service() -> None:
    """Drop the global service (for testing)."""
    global _service_instance
    _service_instance = None
