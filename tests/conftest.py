"""Shared pytest fixtures: configuration, an in-memory provider and collaborator doubles."""

import json
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import httpx
import pytest

from subscription_sync.config import Config, reset_config
from subscription_sync.logging_config import clear_context
from subscription_sync.repositories.mapping_store import InMemoryMappingStore, reset_mapping_store
from subscription_sync.repositories.offer_repository import OfferRepository, reset_offer_repository
from subscription_sync.services.access_activator import AccessActivator, ActivationResult, reset_access_activator
from subscription_sync.services.alert_dispatcher import AlertDispatcher, reset_alert_dispatcher
from subscription_sync.services.cancellation import reset_cancellation_service
from subscription_sync.services.checkout import reset_checkout_service
from subscription_sync.services.deactivation_sweeper import reset_deactivation_sweeper
from subscription_sync.services.mailer import Mailer, reset_mailer
from subscription_sync.services.mapping_import import reset_mapping_importer
from subscription_sync.services.provider_gateway import ProviderGateway, reset_provider_gateway
from subscription_sync.services.webhook_engine import reset_webhook_engine

CONFIG_FILE = Path(__file__).resolve().parent.parent / "config" / "offers.yaml"
PROVIDER_BASE = "https://api.provider.test/v2"

TEST_ENV = {
    "PROVIDER_API_KEY": "test_key",
    "PROVIDER_API_BASE": PROVIDER_BASE,
    "CANCEL_LINK_SECRET": "test-cancel-secret",
    "ADMIN_CANCEL_SECRET": "test-admin-secret",
    "CRON_SECRET": "test-cron-secret",
    "STORE_BACKEND": "memory",
    "PUBLIC_BASE_URL": "https://sync.example.test",
    "CANCEL_SUCCESS_REDIRECT": "https://site.example.test/cancelled",
    "CANCEL_FAILURE_REDIRECT": "https://site.example.test/help",
    "CHECKOUT_REDIRECT_URL": "https://site.example.test/thanks",
    "ACTIVATION_URL": "https://courses.example.test/activate",
    "DEACTIVATION_URL": "https://courses.example.test/deactivate",
}


class FakeProvider:
    """In-memory payment provider served through httpx.MockTransport.

    Resources are plain dicts in the provider's JSON shape. Tests seed
    payments, customers and subscriptions directly and inspect ``requests``.
    """

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.customers: dict[str, dict] = {}
        self.subscriptions: dict[str, list[dict]] = {}
        self.cancel_overrides: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self._counter = 0

    # Seeding helpers

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def add_customer(self, customer_id: str, email: Optional[str], name: Optional[str] = None) -> dict:
        customer = {"resource": "customer", "id": customer_id, "email": email, "name": name}
        self.customers[customer_id] = customer
        self.subscriptions.setdefault(customer_id, [])
        return customer

    def add_subscription(self, customer_id: str, subscription_id: str, status: str = "active", **fields) -> dict:
        sub = {
            "resource": "subscription",
            "id": subscription_id,
            "status": status,
            "interval": "1 month",
            "description": "Community maand - recurring payment",
            "amount": {"currency": "EUR", "value": "12.00"},
            "metadata": {},
        }
        sub.update(fields)
        self.subscriptions.setdefault(customer_id, []).append(sub)
        return sub

    def add_payment(
        self,
        payment_id: str,
        status: str = "paid",
        sequence_type: str = "first",
        customer_id: Optional[str] = "cst_1",
        metadata: Optional[dict] = None,
        paid_at: str = "2025-01-10T09:00:00+00:00",
    ) -> dict:
        payment = {
            "resource": "payment",
            "id": payment_id,
            "status": status,
            "sequenceType": sequence_type,
            "customerId": customer_id,
            "metadata": metadata if metadata is not None else {},
            "paidAt": paid_at if status == "paid" else None,
            "createdAt": paid_at,
        }
        self.payments[payment_id] = payment
        return payment

    def find_subscription(self, customer_id: str, subscription_id: str) -> Optional[dict]:
        for sub in self.subscriptions.get(customer_id, []):
            if sub["id"] == subscription_id:
                return sub
        return None

    def calls(self, method: str, path_prefix: str = "") -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path.removeprefix("/v2").startswith(path_prefix)
        ]

    # Transport

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = [p for p in request.url.path.removeprefix("/v2").split("/") if p]
        body = json.loads(request.content) if request.content else {}

        if parts[:1] == ["payments"]:
            if request.method == "POST" and len(parts) == 1:
                payment_id = self._next_id("tr")
                self.payments[payment_id] = {"id": payment_id, "status": "open", **body}
                return httpx.Response(
                    201,
                    json={
                        "id": payment_id,
                        "_links": {"checkout": {"href": f"https://pay.provider.test/{payment_id}"}},
                    },
                )
            if request.method == "GET" and len(parts) == 2:
                payment = self.payments.get(parts[1])
                return httpx.Response(200, json=payment) if payment else httpx.Response(404, json={})

        if parts[:1] == ["customers"]:
            if len(parts) == 1 and request.method == "POST":
                customer_id = self._next_id("cst")
                self.customers[customer_id] = {"id": customer_id, **body}
                self.subscriptions.setdefault(customer_id, [])
                return httpx.Response(201, json=self.customers[customer_id])
            if len(parts) == 1 and request.method == "GET":
                return httpx.Response(
                    200,
                    json={"_embedded": {"customers": list(self.customers.values())}, "_links": {"next": None}},
                )

            customer_id = parts[1]
            if customer_id not in self.customers:
                return httpx.Response(404, json={"status": 404, "title": "Not Found"})
            if len(parts) == 2 and request.method == "GET":
                return httpx.Response(200, json=self.customers[customer_id])

            if len(parts) == 3 and request.method == "GET":
                subs = self.subscriptions.get(customer_id, [])
                return httpx.Response(
                    200, json={"_embedded": {"subscriptions": subs}, "_links": {"next": None}}
                )
            if len(parts) == 3 and request.method == "POST":
                sub = {
                    "resource": "subscription",
                    "id": self._next_id("sub"),
                    "status": "active",
                    "nextPaymentDate": body.get("startDate"),
                    **body,
                }
                self.subscriptions.setdefault(customer_id, []).append(sub)
                return httpx.Response(201, json=sub)

            if len(parts) == 4:
                subscription_id = parts[3]
                sub = self.find_subscription(customer_id, subscription_id)
                if request.method == "GET":
                    return httpx.Response(200, json=sub) if sub else httpx.Response(404, json={})
                if request.method == "DELETE":
                    if subscription_id in self.cancel_overrides:
                        return httpx.Response(self.cancel_overrides[subscription_id], json={})
                    if sub is None:
                        return httpx.Response(404, json={})
                    if sub["status"] == "canceled":
                        return httpx.Response(410, json={})
                    sub["status"] = "canceled"
                    sub["canceledAt"] = "2025-03-01T10:00:00+00:00"
                    return httpx.Response(200, json=sub)

        return httpx.Response(400, json={"title": "Unhandled in fake provider"})


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset module singletons and logging context between tests."""
    yield
    for reset in (
        reset_webhook_engine,
        reset_cancellation_service,
        reset_checkout_service,
        reset_deactivation_sweeper,
        reset_mapping_importer,
        reset_provider_gateway,
        reset_access_activator,
        reset_mailer,
        reset_alert_dispatcher,
        reset_mapping_store,
        reset_offer_repository,
        reset_config,
    ):
        reset()
    clear_context()


@pytest.fixture
def config():
    return Config(str(CONFIG_FILE), environ=TEST_ENV)


@pytest.fixture
def settings(config):
    return config.settings


@pytest.fixture
def offers(config):
    return OfferRepository(config)


@pytest.fixture
def store():
    store = InMemoryMappingStore()
    yield store
    store.clear()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def gateway(provider):
    gateway = ProviderGateway(
        "test_key",
        base_url=PROVIDER_BASE,
        retry_backoff_seconds=0,
        transport=httpx.MockTransport(provider.handler),
    )
    yield gateway
    gateway.close()


@pytest.fixture
def activator():
    activator = MagicMock(spec=AccessActivator)
    activator.activate.return_value = ActivationResult(ok=True, status_code=200)
    activator.deactivate.return_value = ActivationResult(ok=True, status_code=200)
    return activator


@pytest.fixture
def alerts():
    return MagicMock(spec=AlertDispatcher)


@pytest.fixture
def mailer():
    mailer = MagicMock(spec=Mailer)
    mailer.send_cancel_link.return_value = True
    return mailer


@pytest.fixture
def today():
    return date(2025, 3, 1)


@pytest.fixture
def now():
    return datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)
