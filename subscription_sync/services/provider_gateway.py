"""Payment provider REST client.

Thin synchronous wrapper around the provider's v2 API using httpx:
- Bearer authentication and a bounded timeout on every call
- Idempotent reads (GET) are retried on transport errors, 429 and 5xx
- Mutating calls (POST/DELETE) are issued at most once per invocation
- List endpoints follow `_links.next` until exhausted
"""

import time
from datetime import date
from typing import Any, Callable, Optional, TypeVar

import httpx
from pydantic import ValidationError

from subscription_sync.errors import ProviderError
from subscription_sync.logging_config import get_logger
from subscription_sync.models import Amount, Customer, Payment, ProviderSubscription

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_BASE_URL = "https://api.mollie.com/v2"
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class ProviderGateway:
    """Client for the payment provider's customers, payments and subscriptions."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 10.0,
        read_attempts: int = 3,
        page_limit: int = 50,
        retry_backoff_seconds: float = 0.2,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the gateway.

        Args:
            api_key: Provider API key (sent as bearer token)
            base_url: API base URL including version prefix
            timeout_seconds: Per-request timeout
            read_attempts: Attempts for idempotent GET calls
            page_limit: Page size for list endpoints
            retry_backoff_seconds: Linear backoff between read attempts
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._base_url = base_url.rstrip("/")
        self._read_attempts = max(1, read_attempts)
        self._page_limit = page_limit
        self._retry_backoff_seconds = retry_backoff_seconds
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    def _get(self, url: str, params: Optional[dict] = None) -> httpx.Response:
        """GET with retries. Returns the final response (any status below 500 except 429).

        Raises:
            ProviderError: When every attempt failed with a transport error or retryable status
        """
        last_error = ""
        last_status: Optional[int] = None
        for attempt in range(1, self._read_attempts + 1):
            try:
                response = self._client.get(url, params=params)
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
            else:
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    return response
                last_error = response.text[:300]
                last_status = response.status_code

            logger.warning(
                "provider_read_retry",
                url=url,
                attempt=attempt,
                max_attempts=self._read_attempts,
                status_code=last_status,
                error=last_error,
            )
            if attempt < self._read_attempts and self._retry_backoff_seconds:
                time.sleep(self._retry_backoff_seconds * attempt)

        raise ProviderError(f"GET {url} failed after {self._read_attempts} attempts: {last_error}", last_status)

    def _get_json(self, url: str, params: Optional[dict] = None, allow_missing: bool = False) -> Optional[dict]:
        response = self._get(url, params=params)
        if allow_missing and response.status_code == 404:
            return None
        if not response.is_success:
            raise ProviderError(
                f"GET {url} returned {response.status_code}: {response.text[:300]}",
                response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"GET {url} returned invalid JSON: {e}", response.status_code)

    def _post_json(self, url: str, body: dict) -> dict:
        """Single-shot POST."""
        try:
            response = self._client.post(url, json=body)
        except httpx.HTTPError as e:
            raise ProviderError(f"POST {url} failed: {type(e).__name__}: {e}")
        if not response.is_success:
            raise ProviderError(
                f"POST {url} returned {response.status_code}: {response.text[:300]}",
                response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"POST {url} returned invalid JSON: {e}", response.status_code)

    def _list(self, url: str, embedded_key: str) -> list[dict]:
        """Collect every item of a paginated list endpoint."""
        items: list[dict] = []
        next_url: Optional[str] = url
        params: Optional[dict] = {"limit": self._page_limit}
        while next_url:
            page = self._get_json(next_url, params=params) or {}
            embedded = (page.get("_embedded") or {}).get(embedded_key) or []
            items.extend(item for item in embedded if isinstance(item, dict))
            next_link = (page.get("_links") or {}).get("next") or {}
            next_url = next_link.get("href") if isinstance(next_link, dict) else None
            # The next link already carries the pagination parameters
            params = None
        return items

    @staticmethod
    def _parse(model: Callable[..., T], data: dict, what: str) -> T:
        try:
            return model(**data)
        except (ValidationError, TypeError) as e:
            raise ProviderError(f"Unexpected {what} payload: {e}")

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def fetch_payment(self, payment_id: str) -> Payment:
        """Fetch the authoritative payment resource.

        Raises:
            ProviderError: Unknown payment or provider failure
        """
        data = self._get_json(f"/payments/{payment_id}")
        return self._parse(Payment, data, "payment")

    def create_payment(
        self,
        customer_id: str,
        amount: Amount,
        sequence_type: str,
        metadata: dict[str, Any],
        redirect_url: str,
        webhook_url: str,
        description: str,
        method: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> str:
        """Create a payment and return its hosted checkout URL."""
        body: dict[str, Any] = {
            "amount": amount.model_dump(),
            "customerId": customer_id,
            "sequenceType": sequence_type,
            "description": description,
            "redirectUrl": redirect_url,
            "webhookUrl": webhook_url,
            "metadata": metadata,
        }
        if method:
            body["method"] = method
        if locale:
            body["locale"] = locale

        data = self._post_json("/payments", body)
        checkout = ((data.get("_links") or {}).get("checkout") or {}).get("href")
        if not checkout:
            raise ProviderError(f"Payment {data.get('id')} has no checkout link")
        logger.info(
            "provider_payment_created",
            payment_id=data.get("id"),
            customer_id=customer_id,
            sequence_type=sequence_type,
        )
        return checkout

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def create_customer(self, name: Optional[str], email: str, metadata: Optional[dict] = None) -> str:
        body: dict[str, Any] = {"email": email}
        if name:
            body["name"] = name
        if metadata:
            body["metadata"] = metadata
        data = self._post_json("/customers", body)
        customer_id = data.get("id")
        if not customer_id:
            raise ProviderError("Customer creation returned no id")
        logger.info("provider_customer_created", customer_id=customer_id, email=email)
        return customer_id

    def fetch_customer(self, customer_id: str) -> Optional[Customer]:
        """Fetch a customer (None when the provider does not know it)."""
        data = self._get_json(f"/customers/{customer_id}", allow_missing=True)
        if data is None:
            return None
        return self._parse(Customer, data, "customer")

    def list_customers(self) -> list[Customer]:
        """List all customers, following pagination."""
        return [self._parse(Customer, item, "customer") for item in self._list("/customers", "customers")]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        customer_id: str,
        amount: Amount,
        interval: str,
        start_date: date,
        metadata: Optional[dict[str, Any]],
        description: str,
        webhook_url: Optional[str] = None,
    ) -> ProviderSubscription:
        """Create a recurring subscription starting on start_date."""
        body: dict[str, Any] = {
            "amount": amount.model_dump(),
            "interval": interval,
            "description": description,
            "startDate": start_date.isoformat(),
            "metadata": metadata or {},
        }
        if webhook_url:
            body["webhookUrl"] = webhook_url
        data = self._post_json(f"/customers/{customer_id}/subscriptions", body)
        subscription = self._parse(ProviderSubscription, data, "subscription")
        logger.info(
            "provider_subscription_created",
            customer_id=customer_id,
            subscription_id=subscription.id,
            interval=interval,
            start_date=start_date.isoformat(),
        )
        return subscription

    def list_subscriptions(self, customer_id: str) -> list[ProviderSubscription]:
        """List every subscription of a customer, in provider order."""
        items = self._list(f"/customers/{customer_id}/subscriptions", "subscriptions")
        return [self._parse(ProviderSubscription, item, "subscription") for item in items]

    def fetch_subscription(self, customer_id: str, subscription_id: str) -> Optional[ProviderSubscription]:
        """Fetch one subscription (None when it does not exist)."""
        data = self._get_json(
            f"/customers/{customer_id}/subscriptions/{subscription_id}", allow_missing=True
        )
        if data is None:
            return None
        return self._parse(ProviderSubscription, data, "subscription")

    def cancel_subscription(self, customer_id: str, subscription_id: str) -> int:
        """Cancel a subscription.

        Returns:
            The HTTP status code, or 0 on a network error or timeout
        """
        url = f"/customers/{customer_id}/subscriptions/{subscription_id}"
        try:
            response = self._client.delete(url)
        except httpx.HTTPError as e:
            logger.warning(
                "provider_cancel_network_error",
                customer_id=customer_id,
                subscription_id=subscription_id,
                error=f"{type(e).__name__}: {e}",
            )
            return 0
        if not response.is_success:
            logger.warning(
                "provider_cancel_rejected",
                customer_id=customer_id,
                subscription_id=subscription_id,
                status_code=response.status_code,
                body=response.text[:300],
            )
        return response.status_code

    def __repr__(self) -> str:
        return f"ProviderGateway(base_url={self._base_url!r})"


# Global gateway instance
_gateway_instance: Optional[ProviderGateway] = None


def get_provider_gateway() -> ProviderGateway:
    """Get global provider gateway instance (singleton), built from configuration."""
    global _gateway_instance
    if _gateway_instance is None:
        from subscription_sync.config import get_config

        config = get_config()
        provider = config.offers.provider
        _gateway_instance = ProviderGateway(
            api_key=config.settings.provider_api_key,
            base_url=config.settings.provider_api_base,
            timeout_seconds=provider.timeout_seconds,
            read_attempts=provider.read_attempts,
            page_limit=provider.page_limit,
        )
    return _gateway_instance


def reset_provider_gateway() -> None:
    """Close and drop the global gateway (for testing)."""
    global _gateway_instance
    if _gateway_instance is not None:
        _gateway_instance.close()
        _gateway_instance = None
