"""Offer repository - loads and provides access to offer definitions.

Loads from config/offers.yaml and provides lookup methods.
"""

from typing import Dict, List, Optional

from subscription_sync.config import Config, get_config
from subscription_sync.models import OfferDefinition


class OfferNotFoundError(Exception):
    """Raised when an offer is not found in the repository."""

    pass


class OfferRepository:
    """Repository for offer definitions.

    Loads offer definitions from configuration and provides fast lookup.
    Thread-safe for read operations.
    """

    def __init__(self, config: Optional[Config] = None):
        """Initialize offer repository.

        Args:
            config: Configuration instance. If not provided, uses global config.
        """
        self._config = config or get_config()
        self._offers_by_id: Dict[str, OfferDefinition] = {}
        self._load_offers()

    def _load_offers(self) -> None:
        self._offers_by_id.clear()
        for offer in self._config.offers.offers:
            self._offers_by_id[offer.id] = offer

    def get_by_id(self, offer_id: str) -> OfferDefinition:
        """Get offer definition by ID.

        Raises:
            OfferNotFoundError: If offer ID not found
        """
        offer = self._offers_by_id.get(offer_id)
        if offer is None:
            raise OfferNotFoundError(
                f"Offer not found: {offer_id}. "
                f"Available offers: {list(self._offers_by_id.keys())}"
            )
        return offer

    def find_by_id(self, offer_id: Optional[str]) -> Optional[OfferDefinition]:
        """Find offer definition by ID (returns None if not found)."""
        if not offer_id:
            return None
        return self._offers_by_id.get(offer_id)

    def default_offer(self) -> Optional[OfferDefinition]:
        """Catalog default: the configured default_offer_id, else the first subscription offer."""
        default = self.find_by_id(self._config.offers.default_offer_id)
        if default is not None:
            return default
        subscriptions = self.get_subscription_offers()
        return subscriptions[0] if subscriptions else None

    def resolve(self, offer_id: Optional[str]) -> Optional[OfferDefinition]:
        """Look up an offer, falling back to the catalog default for unknown IDs."""
        return self.find_by_id(offer_id) or self.default_offer()

    def get_subscription_offers(self) -> List[OfferDefinition]:
        return [o for o in self._offers_by_id.values() if o.is_subscription]

    def get_all_offer_ids(self) -> List[str]:
        return list(self._offers_by_id.keys())

    def reload(self) -> None:
        """Reload offer definitions from configuration."""
        self._config.reload()
        self._load_offers()

    def __len__(self) -> int:
        return len(self._offers_by_id)

    def __contains__(self, offer_id: str) -> bool:
        return offer_id in self._offers_by_id

    def __repr__(self) -> str:
        return f"OfferRepository(offers={len(self._offers_by_id)})"


# Global repository instance
_repository_instance: Optional[OfferRepository] = None


def get_offer_repository(config: Optional[Config] = None) -> OfferRepository:
    """Get global offer repository instance (singleton).

    Args:
        config: Optional configuration instance (only used on first call)
    """
    global _repository_instance
    if _repository_instance is None:
        _repository_instance = OfferRepository(config)
    return _repository_instance


def reset_offer_repository() -> None:
    """Drop the global repository (for testing)."""
    global _repository_instance
    _repository_instance = None
