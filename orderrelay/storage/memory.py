"""In-process repositories.

Used by tests and single-process local runs.  Each store guards its maps
with a lock and hands out copies, so callers never share mutable state
through the store.
"""

from __future__ import annotations

import copy
import itertools
import threading
from typing import Any

from orderrelay.models import (
    Delivery,
    Integration,
    IntegrationType,
    Order,
    WebhookLog,
    utcnow,
)
from orderrelay.storage.base import Storage


class InMemoryOrderStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: dict[str, Order] = {}
        self._by_external: dict[tuple[str, str, str], str] = {}

    def add(self, order: Order) -> tuple[Order, bool]:
        key = (order.tenant_id, order.source_platform, order.external_id)
        with self._lock:
            existing_id = self._by_external.get(key)
            if existing_id is not None:
                return copy.deepcopy(self._orders[existing_id]), False
            self._orders[order.id] = copy.deepcopy(order)
            self._by_external[key] = order.id
            return copy.deepcopy(order), True

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def save(self, order: Order) -> None:
        order.updated_at = utcnow()
        with self._lock:
            self._orders[order.id] = copy.deepcopy(order)


class InMemoryDeliveryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._deliveries: dict[str, Delivery] = {}

    def add(self, delivery: Delivery) -> None:
        with self._lock:
            self._deliveries[delivery.id] = copy.deepcopy(delivery)

    def get(self, delivery_id: str) -> Delivery | None:
        with self._lock:
            delivery = self._deliveries.get(delivery_id)
            return copy.deepcopy(delivery) if delivery else None

    def save(self, delivery: Delivery) -> None:
        delivery.updated_at = utcnow()
        with self._lock:
            self._deliveries[delivery.id] = copy.deepcopy(delivery)

    def find_by_provider_id(
        self, integration_id: int, provider_delivery_id: str
    ) -> Delivery | None:
        with self._lock:
            for d in self._deliveries.values():
                if (
                    d.integration_id == integration_id
                    and d.provider_delivery_id == provider_delivery_id
                ):
                    return copy.deepcopy(d)
        return None

    def list_for_order(self, order_id: str) -> list[Delivery]:
        with self._lock:
            found = [copy.deepcopy(d) for d in self._deliveries.values() if d.order_id == order_id]
        return sorted(found, key=lambda d: d.created_at)

    def list_active(self, tenant_id: str) -> list[Delivery]:
        with self._lock:
            found = [
                copy.deepcopy(d)
                for d in self._deliveries.values()
                if d.tenant_id == tenant_id and d.is_active
            ]
        return sorted(found, key=lambda d: d.created_at)


class InMemoryIntegrationStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._integrations: dict[int, Integration] = {}
        self._ids = itertools.count(1)

    def add(self, integration: Integration) -> Integration:
        with self._lock:
            if not integration.id:
                integration.id = next(self._ids)
            self._integrations[integration.id] = copy.deepcopy(integration)
        return integration

    def get(self, integration_id: int) -> Integration | None:
        with self._lock:
            integration = self._integrations.get(integration_id)
            return copy.deepcopy(integration) if integration else None

    def save(self, integration: Integration) -> None:
        integration.updated_at = utcnow()
        with self._lock:
            self._integrations[integration.id] = copy.deepcopy(integration)

    def find(
        self, tenant_id: str, type: IntegrationType, provider: str | None = None
    ) -> list[Integration]:
        with self._lock:
            candidates = [
                copy.deepcopy(i)
                for i in self._integrations.values()
                if i.tenant_id == tenant_id and i.type is type
            ]
        if provider is not None:
            wanted = provider.lower().replace(" ", "").replace("_", "")
            candidates = [i for i in candidates if i.provider_key == wanted]
        return sorted(candidates, key=lambda i: i.id)


class InMemoryWebhookLogRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[WebhookLog] = []
        self._ids = itertools.count(1)

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
    ) -> WebhookLog:
        with self._lock:
            entry = WebhookLog(
                id=next(self._ids),
                integration_id=integration_id,
                direction=direction,
                event_type=event_type,
                request_payload=copy.deepcopy(request_payload),
                response_payload=copy.deepcopy(response_payload),
                status_code=status_code,
                duration_ms=duration_ms,
                error=error,
                created_at=utcnow(),
            )
            self._entries.append(entry)
        return entry

    def list(
        self, integration_id: int, limit: int, cursor: int | None = None
    ) -> list[WebhookLog]:
        with self._lock:
            matching = [
                e
                for e in reversed(self._entries)
                if e.integration_id == integration_id and (cursor is None or e.id < cursor)
            ]
        return matching[:limit]


def memory_storage() -> Storage:
    return Storage(
        orders=InMemoryOrderStore(),
        deliveries=InMemoryDeliveryStore(),
        integrations=InMemoryIntegrationStore(),
        webhook_logs=InMemoryWebhookLogRepository(),
    )
