"""Repository protocols for orders, deliveries, integrations and webhook logs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from orderrelay.models import Delivery, Integration, IntegrationType, Order, WebhookLog


@runtime_checkable
class OrderStore(Protocol):
    def add(self, order: Order) -> tuple[Order, bool]:
        """Insert *order* unless (tenant, platform, external id) already exists.

        Returns the stored order and ``True`` when it was newly created.
        """
        ...

    def get(self, order_id: str) -> Order | None: ...

    def save(self, order: Order) -> None: ...


@runtime_checkable
class DeliveryStore(Protocol):
    def add(self, delivery: Delivery) -> None: ...

    def get(self, delivery_id: str) -> Delivery | None: ...

    def save(self, delivery: Delivery) -> None: ...

    def find_by_provider_id(
        self, integration_id: int, provider_delivery_id: str
    ) -> Delivery | None: ...

    def list_for_order(self, order_id: str) -> list[Delivery]:
        """All deliveries for an order, oldest first."""
        ...

    def list_active(self, tenant_id: str) -> list[Delivery]: ...


@runtime_checkable
class IntegrationStore(Protocol):
    def add(self, integration: Integration) -> Integration:
        """Persist a new integration, assigning its id."""
        ...

    def get(self, integration_id: int) -> Integration | None: ...

    def save(self, integration: Integration) -> None: ...

    def find(
        self, tenant_id: str, type: IntegrationType, provider: str | None = None
    ) -> list[Integration]: ...


@runtime_checkable
class WebhookLogRepository(Protocol):
    def append(
        self,
        *,
        integration_id: int | None,
        direction: str,
        event_type: str,
        request_payload: dict[str, Any],
        response_payload: dict[str, Any],
        status_code: int,
        duration_ms: float,
        error: str | None,
    ) -> WebhookLog: ...

    def list(
        self, integration_id: int, limit: int, cursor: int | None = None
    ) -> list[WebhookLog]:
        """Newest first; *cursor* is an exclusive upper bound on ``id``."""
        ...


@dataclass
class Storage:
    """The four repositories the relay runs against."""

    orders: OrderStore
    deliveries: DeliveryStore
    integrations: IntegrationStore
    webhook_logs: WebhookLogRepository
