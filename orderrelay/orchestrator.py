"""Order-to-Delivery orchestrator.

Owns the order lifecycle::

    received -> prepared -> picked_up -> in_transit -> delivered
         \\__________________________________________/
                           -> cancelled

Forward moves may skip states; nothing moves backwards; ``delivered`` and
``cancelled`` are terminal.  Delivery status only ever progresses, so a late
or duplicated partner notification is dropped instead of regressing state.

Two locks keep concurrent webhooks apart:

- the dispatch guard (non-blocking) lets exactly one dispatch per order run;
  a concurrent one fails fast with ``DispatchInProgress``;
- the order mutex (blocking) serializes every Order/Delivery write for one
  order, including status updates and cancellation.

Partner calls are made outside the mutex except for cancellation, and every
partner exchange is recorded in the webhook log whatever its outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from orderrelay.exceptions import (
    AlreadyInTransit,
    DeliveryAlreadyActive,
    DeliveryNotFound,
    InvalidOrderState,
    MalformedPayload,
    OrderNotFound,
    QuoteExpired,
    RelayError,
)
from orderrelay.locks import DispatchLock, MemoryDispatchLock, OrderMutex
from orderrelay.models import (
    DELIVERY_TO_ORDER_STATUS,
    Delivery,
    DeliveryQuote,
    DeliveryStatus,
    Integration,
    IntegrationType,
    Location,
    Order,
    OrderStatus,
    StatusUpdate,
    delivery_past_pickup,
    delivery_progresses,
    order_transition_allowed,
)
from orderrelay.partners import DeliveryPartnerClient
from orderrelay.registry import IntegrationRegistry
from orderrelay.storage.base import Storage
from orderrelay.webhook_log import OUTBOUND, WebhookLogStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StatusResult:
    """Outcome of applying a partner status to a delivery."""

    applied: bool
    delivery: Delivery
    order: Order | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "delivery": self.delivery.summary(),
            "orderStatus": self.order.status.value if self.order else None,
        }


def _secrets(integration: Integration) -> tuple[str, ...]:
    return tuple(str(v) for v in integration.credentials.values()) + (integration.webhook_secret,)


class Orchestrator:
    def __init__(
        self,
        storage: Storage,
        registry: IntegrationRegistry,
        webhook_log: WebhookLogStore,
        *,
        dispatch_lock: DispatchLock | None = None,
        mutex: OrderMutex | None = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.webhook_log = webhook_log
        self.dispatch_lock = dispatch_lock or MemoryDispatchLock()
        self.mutex = mutex or OrderMutex()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_order(self, order_id: str, tenant_id: str) -> Order:
        order = self.storage.orders.get(order_id)
        if order is None or order.tenant_id != tenant_id:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def get_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        delivery = self.storage.deliveries.get(delivery_id)
        if delivery is None or delivery.tenant_id != tenant_id:
            raise DeliveryNotFound(f"Delivery {delivery_id} not found")
        return delivery

    def active_delivery(self, order_id: str) -> Delivery | None:
        for delivery in self.storage.deliveries.list_for_order(order_id):
            if delivery.is_active:
                return delivery
        return None

    def latest_delivery(self, order_id: str) -> Delivery | None:
        deliveries = self.storage.deliveries.list_for_order(order_id)
        return deliveries[-1] if deliveries else None

    def list_active_deliveries(self, tenant_id: str) -> list[Delivery]:
        return self.storage.deliveries.list_active(tenant_id)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def receive(self, order: Order) -> Order:
        """Persist a normalized order; a redelivered webhook returns the stored one."""
        stored, created = self.storage.orders.add(order)
        if created:
            logger.info(
                "Received order %s (%s/%s) total=%d %s",
                stored.id,
                stored.source_platform,
                stored.external_id,
                stored.total_amount,
                stored.currency,
            )
        else:
            logger.info(
                "Order %s/%s already received as %s",
                order.source_platform,
                order.external_id,
                stored.id,
            )
        return stored

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, order: Order, integration_id: int) -> Delivery:
        """Quote and create a delivery for *order* with the given partner integration.

        Raises:
            IntegrationNotFound / IntegrationInactive: bad delivery integration.
            InvalidOrderState: the order is terminal or has a cancel requested.
            DispatchInProgress: another dispatch for this order is running.
            DeliveryAlreadyActive: the order already has a live delivery.
            QuoteUnavailable, QuoteExpired, AuthFailure, RateLimited,
            ProviderRejected, ProviderUnavailable: partner outcomes.
        """
        integration = self.registry.get(
            integration_id, tenant_id=order.tenant_id, type=IntegrationType.DELIVERY
        )

        with self.dispatch_lock.guard(order.id):
            try:
                return self._dispatch_guarded(order, integration)
            except Exception:
                self._settle_cancel_request(order.id)
                raise

    def _dispatch_guarded(self, order: Order, integration: Integration) -> Delivery:
        # Caller holds the dispatch guard
        current = self.storage.orders.get(order.id) or order
        if current.status.is_terminal or current.cancel_requested:
            raise InvalidOrderState(
                f"Order {current.id} cannot be dispatched from status {current.status.value}"
            )
        active = self.active_delivery(current.id)
        if active is not None:
            raise DeliveryAlreadyActive(active)

        pickup = self._pickup_for(current, integration)
        dropoff = current.customer.as_dropoff()
        client = self.registry.client_for(integration)
        delivery = self._quote_and_create(client, integration, current, pickup, dropoff)

        delivery.order_id = current.id
        delivery.tenant_id = current.tenant_id
        delivery.integration_id = integration.id

        with self.mutex.hold(current.id):
            self.storage.deliveries.add(delivery)
            latest = self.storage.orders.get(current.id) or current
            logger.info(
                "Dispatched order %s via %s: delivery %s (%s) fee=%s",
                current.id,
                integration.provider,
                delivery.id,
                delivery.provider_delivery_id,
                delivery.fee,
            )
            if latest.cancel_requested or latest.status is OrderStatus.CANCELLED:
                delivery = self._cancel_after_dispatch(client, integration, latest, delivery)
        return delivery

    def _quote_and_create(
        self,
        client: DeliveryPartnerClient,
        integration: Integration,
        order: Order,
        pickup: Location,
        dropoff: Location,
    ) -> Delivery:
        quote = self._quote(client, integration, order, pickup, dropoff)
        try:
            return self._create(client, integration, order, quote, pickup, dropoff)
        except QuoteExpired:
            logger.info("Quote %s expired for order %s; re-quoting once", quote.id, order.id)
            quote = self._quote(client, integration, order, pickup, dropoff)
            return self._create(client, integration, order, quote, pickup, dropoff)

    def _settle_cancel_request(self, order_id: str) -> None:
        """A cancel requested during a failed dispatch cancels the order outright."""
        with self.mutex.hold(order_id):
            latest = self.storage.orders.get(order_id)
            if (
                latest is not None
                and latest.cancel_requested
                and not latest.status.is_terminal
                and self.active_delivery(order_id) is None
            ):
                latest.status = OrderStatus.CANCELLED
                self.storage.orders.save(latest)
                logger.info("Order %s cancelled after its dispatch failed", order_id)

    def _pickup_for(self, order: Order, integration: Integration) -> Location:
        if order.pickup is not None:
            return order.pickup
        configured = integration.settings.get("pickup")
        if isinstance(configured, dict) and configured.get("address"):
            return Location.from_dict(configured)
        raise MalformedPayload("restaurant", "no pickup location in payload or integration for")

    def _exchange(
        self,
        integration: Integration,
        event_type: str,
        request: dict[str, Any],
        call: Callable[[], T],
        describe: Callable[[T], Any],
    ) -> T:
        with self.webhook_log.exchange(
            event_type,
            request,
            integration_id=integration.id,
            direction=OUTBOUND,
            secrets=_secrets(integration),
        ) as ex:
            result = call()
            ex.response = describe(result)
        return result

    def _quote(
        self,
        client: DeliveryPartnerClient,
        integration: Integration,
        order: Order,
        pickup: Location,
        dropoff: Location,
    ) -> DeliveryQuote:
        return self._exchange(
            integration,
            "delivery.quote",
            {
                "order_id": order.id,
                "pickup": pickup.address,
                "dropoff": dropoff.address,
                "order_value": order.total_amount,
                "currency": order.currency,
            },
            lambda: client.get_quote(
                pickup, dropoff, order.total_amount, order.currency, reference=order.id
            ),
            lambda q: {
                "quote_id": q.id,
                "fee": q.fee,
                "currency": q.currency,
                "eta_minutes": q.eta_minutes,
                "expires_at": q.expires_at.isoformat(),
            },
        )

    def _create(
        self,
        client: DeliveryPartnerClient,
        integration: Integration,
        order: Order,
        quote: DeliveryQuote,
        pickup: Location,
        dropoff: Location,
    ) -> Delivery:
        return self._exchange(
            integration,
            "delivery.create",
            {
                "order_id": order.id,
                "quote_id": quote.id,
                "items": [{"name": i.name, "quantity": i.quantity} for i in order.items],
            },
            lambda: client.create_delivery(
                quote,
                pickup,
                dropoff,
                order.items,
                order_value=order.total_amount,
                currency=order.currency,
                reference=order.id,
            ),
            lambda d: {
                "provider_delivery_id": d.provider_delivery_id,
                "status": d.status.value,
                "tracking_url": d.tracking_url,
                "fee": d.fee,
            },
        )

    def _cancel_after_dispatch(
        self,
        client: DeliveryPartnerClient,
        integration: Integration,
        order: Order,
        delivery: Delivery,
    ) -> Delivery:
        """A dashboard cancel arrived while the delivery was being created.

        A refused or failed partner cancel leaves the delivery live and the
        order's cancel request standing, so the dashboard can retry it.
        """
        logger.info("Order %s was cancelled during dispatch; cancelling %s", order.id, delivery.id)
        try:
            self._provider_cancel(client, integration, delivery)
        except RelayError as e:
            logger.warning(
                "Could not cancel %s created during a cancel request: %s", delivery.id, e.message
            )
            return delivery
        return self._mark_cancelled(delivery, order)

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    def apply_status_update(self, integration_id: int, update: StatusUpdate) -> StatusResult:
        """Apply a partner status notification, matched by provider-issued id."""
        found = self.storage.deliveries.find_by_provider_id(
            integration_id, update.provider_delivery_id
        )
        if found is None:
            raise DeliveryNotFound(
                f"No delivery {update.provider_delivery_id} for integration {integration_id}"
            )
        with self.mutex.hold(found.order_id):
            delivery = self.storage.deliveries.get(found.id) or found
            return self._apply(delivery, update.status, update.raw_status, update.tracking_url)

    def refresh_status(self, delivery_id: str, tenant_id: str) -> StatusResult:
        """Poll the partner and apply the result through the same monotonic path."""
        delivery = self.get_delivery(delivery_id, tenant_id)
        if delivery.status.is_terminal:
            return StatusResult(False, delivery, self.storage.orders.get(delivery.order_id))

        integration = self.registry.get(
            delivery.integration_id, tenant_id=tenant_id, type=IntegrationType.DELIVERY
        )
        client = self.registry.client_for(integration)
        report = self._exchange(
            integration,
            "delivery.status",
            {"delivery_id": delivery.id, "provider_delivery_id": delivery.provider_delivery_id},
            lambda: client.get_status(delivery.provider_delivery_id),
            lambda r: {"status": r.status.value, "raw_status": r.raw_status},
        )
        with self.mutex.hold(delivery.order_id):
            delivery = self.storage.deliveries.get(delivery.id) or delivery
            return self._apply(delivery, report.status, report.raw_status, report.tracking_url)

    def _apply(
        self,
        delivery: Delivery,
        status: DeliveryStatus,
        raw_status: str,
        tracking_url: str | None,
    ) -> StatusResult:
        # Caller holds the order mutex
        order = self.storage.orders.get(delivery.order_id)
        if not delivery_progresses(delivery.status, status):
            logger.info(
                "Dropping stale status %s for delivery %s (currently %s)",
                status.value,
                delivery.id,
                delivery.status.value,
            )
            return StatusResult(False, delivery, order)

        previous = delivery.status
        delivery.status = status
        delivery.provider_status = raw_status or status.value
        if tracking_url:
            delivery.tracking_url = tracking_url
        self.storage.deliveries.save(delivery)
        logger.info("Delivery %s: %s -> %s", delivery.id, previous.value, status.value)

        if order is not None:
            if status is DeliveryStatus.CANCELED:
                target = OrderStatus.CANCELLED if order.cancel_requested else None
            else:
                target = DELIVERY_TO_ORDER_STATUS.get(status)
            if target is not None and order_transition_allowed(order.status, target):
                logger.info("Order %s: %s -> %s", order.id, order.status.value, target.value)
                order.status = target
                self.storage.orders.save(order)
        return StatusResult(True, delivery, order)

    # ------------------------------------------------------------------
    # Cancellation and dashboard transitions
    # ------------------------------------------------------------------

    def cancel_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        """Cancel a delivery before pickup; the order is cancelled with it.

        Raises:
            AlreadyInTransit: the courier has picked up, or the partner refused.
                The order is left unchanged.
        """
        found = self.get_delivery(delivery_id, tenant_id)
        with self.mutex.hold(found.order_id):
            delivery = self.storage.deliveries.get(found.id) or found
            order = self.storage.orders.get(delivery.order_id)
            return self._cancel_active(delivery, order)

    def cancel_order(self, order_id: str, tenant_id: str) -> Order:
        """Dashboard cancel; takes priority over a dispatch in flight."""
        self.get_order(order_id, tenant_id)
        with self.mutex.hold(order_id):
            order = self.storage.orders.get(order_id)
            if order.status is OrderStatus.CANCELLED:
                return order
            if order.status.is_terminal:
                raise InvalidOrderState(f"Order {order_id} is already {order.status.value}")

            active = self.active_delivery(order_id)
            if active is not None:
                self._cancel_active(active, order)
                return self.storage.orders.get(order_id)

            order.cancel_requested = True
            if self.dispatch_lock.is_held(order_id):
                # The dispatch cancels its delivery once created
                logger.info("Cancel requested for order %s during dispatch", order_id)
            else:
                order.status = OrderStatus.CANCELLED
                logger.info("Order %s cancelled", order_id)
            self.storage.orders.save(order)
            return order

    def mark_prepared(self, order_id: str, tenant_id: str) -> Order:
        self.get_order(order_id, tenant_id)
        with self.mutex.hold(order_id):
            order = self.storage.orders.get(order_id)
            if not order_transition_allowed(order.status, OrderStatus.PREPARED):
                raise InvalidOrderState(
                    f"Order {order_id} cannot move from {order.status.value} to prepared"
                )
            order.status = OrderStatus.PREPARED
            self.storage.orders.save(order)
            logger.info("Order %s prepared", order_id)
            return order

    def _cancel_active(self, delivery: Delivery, order: Order | None) -> Delivery:
        # Caller holds the order mutex
        if delivery.status is DeliveryStatus.CANCELED:
            return delivery
        if delivery.status is DeliveryStatus.DELIVERED or delivery_past_pickup(delivery.status):
            raise AlreadyInTransit(
                f"Delivery {delivery.id} is already {delivery.status.value}; cannot cancel"
            )
        integration = self.registry.get(delivery.integration_id, tenant_id=delivery.tenant_id)
        client = self.registry.client_for(integration)
        self._provider_cancel(client, integration, delivery)
        if order is not None:
            order.cancel_requested = True
        return self._mark_cancelled(delivery, order)

    def _provider_cancel(
        self, client: DeliveryPartnerClient, integration: Integration, delivery: Delivery
    ) -> None:
        """Cancel at the partner; a declined cancel raises ``AlreadyInTransit``."""

        def call() -> bool:
            if not client.cancel(delivery.provider_delivery_id):
                raise AlreadyInTransit(
                    f"{integration.provider} declined to cancel delivery {delivery.id}"
                )
            return True

        self._exchange(
            integration,
            "delivery.cancel",
            {"delivery_id": delivery.id, "provider_delivery_id": delivery.provider_delivery_id},
            call,
            lambda ok: {"cancelled": ok},
        )

    def _mark_cancelled(self, delivery: Delivery, order: Order | None) -> Delivery:
        delivery.status = DeliveryStatus.CANCELED
        delivery.provider_status = "canceled"
        self.storage.deliveries.save(delivery)
        if order is not None:
            if order_transition_allowed(order.status, OrderStatus.CANCELLED):
                order.status = OrderStatus.CANCELLED
            self.storage.orders.save(order)
        logger.info("Delivery %s cancelled", delivery.id)
        return delivery
