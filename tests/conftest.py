"""Shared fixtures for the order relay test suite.

Orchestrator and endpoint tests run against in-memory storage and a fake
delivery partner; partner HTTP clients are tested separately against
``httpx.MockTransport``.
"""

from __future__ import annotations

import hashlib
import hmac
import itertools
import threading
from datetime import timedelta

import pytest

from orderrelay.locks import MemoryDispatchLock
from orderrelay.models import (
    Customer,
    Delivery,
    DeliveryQuote,
    DeliveryStatus,
    Integration,
    IntegrationType,
    LineItem,
    Location,
    Order,
    StatusReport,
    StatusUpdate,
    utcnow,
)
from orderrelay.orchestrator import Orchestrator
from orderrelay.partners import DeliveryPartnerClient
from orderrelay.registry import IntegrationRegistry
from orderrelay.storage import memory_storage
from orderrelay.webhook_log import WebhookLogStore

TENANT = "tenant-kebab"
OTHER_TENANT = "tenant-grocer"
ECOMMERCE_SECRET = "ecom-webhook-secret"
PARTNER_SECRET = "partner-webhook-secret"

RESTAURANT = {
    "name": "Kebab House",
    "address": "1 Market St, San Francisco, CA",
    "phone": "+14155550100",
    "latitude": 37.7936,
    "longitude": -122.3958,
}


class FakePartnerClient(DeliveryPartnerClient):
    """Scriptable partner: no network, records every call."""

    provider = "FakeGo"
    signature_header = "x-fake-signature"
    status_map = {s.value: s for s in DeliveryStatus}

    def __init__(self, integration: Integration) -> None:
        super().__init__(integration, base_url="https://partner.invalid")
        self.quote_ttl = timedelta(minutes=10)
        self.quote_error: Exception | None = None
        self.create_errors: list[Exception] = []
        self.cancel_error: Exception | None = None
        self.cancel_accepted = True
        self.status_report: StatusReport | None = None
        self.create_started = threading.Event()
        self.release_create: threading.Event | None = None
        self.quotes: list[DeliveryQuote] = []
        self.created: list[Delivery] = []
        self.cancelled: list[str] = []
        self._seq = itertools.count(1)

    def get_quote(self, pickup, dropoff, order_value, currency, *, reference=None):
        if self.quote_error is not None:
            raise self.quote_error
        quote = DeliveryQuote(
            id=f"q_{next(self._seq)}",
            provider=self.provider,
            fee=799,
            currency=currency,
            eta_minutes=25,
            expires_at=utcnow() + self.quote_ttl,
        )
        self.quotes.append(quote)
        return quote

    def _create_delivery(self, quote, pickup, dropoff, items, *, order_value, currency, reference):
        self.create_started.set()
        if self.release_create is not None:
            self.release_create.wait(timeout=5)
        if self.create_errors:
            raise self.create_errors.pop(0)
        n = next(self._seq)
        delivery = Delivery(
            provider=self.provider,
            provider_delivery_id=f"fake-{n}",
            status=DeliveryStatus.CREATED,
            pickup=pickup,
            dropoff=dropoff,
            tracking_url=f"https://track.partner.invalid/{n}",
            fee=quote.fee if quote else None,
            currency=currency,
            provider_status="created",
            quote_id=quote.id if quote else None,
        )
        self.created.append(delivery)
        return delivery

    def get_status(self, provider_delivery_id):
        return self.status_report

    def cancel(self, provider_delivery_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        if not self.cancel_accepted:
            return False
        self.cancelled.append(provider_delivery_id)
        return True

    def parse_status_webhook(self, payload):
        status = self.map_status(payload.get("status"))
        if status is None or not payload.get("delivery_id"):
            return None
        return StatusUpdate(
            provider_delivery_id=payload["delivery_id"],
            status=status,
            raw_status=payload["status"],
            tracking_url=payload.get("tracking_url"),
        )


def sign_hex(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def sign():
    """Hex HMAC-SHA256 signer for webhook bodies."""
    return sign_hex


@pytest.fixture
def storage():
    return memory_storage()


@pytest.fixture
def partner() -> FakePartnerClient:
    return FakePartnerClient(
        Integration(
            id=0,
            tenant_id=TENANT,
            provider="FakeGo",
            type=IntegrationType.DELIVERY,
            webhook_secret=PARTNER_SECRET,
        )
    )


@pytest.fixture
def registry(storage, partner) -> IntegrationRegistry:
    return IntegrationRegistry(storage.integrations, client_factory=lambda integration: partner)


@pytest.fixture
def delivery_integration(registry) -> Integration:
    return registry.register(
        Integration(
            id=0,
            tenant_id=TENANT,
            provider="UberDirect",
            type=IntegrationType.DELIVERY,
            credentials={
                "customer_id": "cust-123",
                "client_id": "uber-client-id",
                "client_secret": "uber-client-secret-value",
            },
            webhook_secret=PARTNER_SECRET,
            settings={"pickup": dict(RESTAURANT)},
        )
    )


@pytest.fixture
def ecommerce_integration(registry) -> Integration:
    return registry.register(
        Integration(
            id=0,
            tenant_id=TENANT,
            provider="custom",
            type=IntegrationType.ECOMMERCE,
            webhook_secret=ECOMMERCE_SECRET,
        )
    )


@pytest.fixture
def webhook_log(storage) -> WebhookLogStore:
    return WebhookLogStore(storage.webhook_logs)


@pytest.fixture
def dispatch_lock() -> MemoryDispatchLock:
    return MemoryDispatchLock()


@pytest.fixture
def orchestrator(storage, registry, webhook_log, dispatch_lock) -> Orchestrator:
    return Orchestrator(storage, registry, webhook_log, dispatch_lock=dispatch_lock)


@pytest.fixture
def make_order():
    """Factory for canonical orders (2 x Kebab at 15.99 by default)."""
    counter = itertools.count(1)

    def _make(tenant_id: str = TENANT, external_id: str | None = None, **overrides) -> Order:
        fields = dict(
            tenant_id=tenant_id,
            source_platform="custom",
            external_id=external_id or f"web-{next(counter)}",
            customer=Customer(
                name="Ada Lovelace",
                email="ada@example.com",
                address="500 Howard St, San Francisco, CA",
                phone="+14155550123",
            ),
            items=[LineItem(name="Kebab", quantity=2, unit_price=1599)],
            pickup=Location(**RESTAURANT),
        )
        fields.update(overrides)
        return Order(**fields)

    return _make
