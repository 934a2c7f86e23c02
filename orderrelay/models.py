"""Relay data models: canonical orders, deliveries, quotes, integrations, logs.

Amounts are integers in minor currency units (cents).  Timestamps are
timezone-aware UTC datetimes and serialize to ISO-8601 in ``to_dict()``.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OrderStatus(str, Enum):
    """Order lifecycle: received -> prepared -> picked_up -> in_transit -> delivered."""

    RECEIVED = "received"
    PREPARED = "prepared"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class DeliveryStatus(str, Enum):
    """Canonical delivery status, independent of provider vocabulary."""

    CREATED = "created"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELED)


class IntegrationType(str, Enum):
    DELIVERY = "delivery"
    ECOMMERCE = "ecommerce"
    POS = "pos"


class Environment(str, Enum):
    SANDBOX = "sandbox"
    LIVE = "live"


_ORDER_RANK = {
    OrderStatus.RECEIVED: 0,
    OrderStatus.PREPARED: 1,
    OrderStatus.PICKED_UP: 2,
    OrderStatus.IN_TRANSIT: 3,
    OrderStatus.DELIVERED: 4,
}

_DELIVERY_RANK = {
    DeliveryStatus.CREATED: 0,
    DeliveryStatus.ASSIGNED: 1,
    DeliveryStatus.PICKED_UP: 2,
    DeliveryStatus.IN_PROGRESS: 3,
    DeliveryStatus.DELIVERED: 4,
}


def order_transition_allowed(current: OrderStatus, target: OrderStatus) -> bool:
    """Forward-only moves (skips allowed); cancelled from any non-terminal state."""
    if current.is_terminal:
        return False
    if target is OrderStatus.CANCELLED:
        return True
    return _ORDER_RANK[target] > _ORDER_RANK[current]


def delivery_progresses(current: DeliveryStatus, incoming: DeliveryStatus) -> bool:
    """True when *incoming* is strictly newer than *current*.

    Terminal states never change; ``canceled`` is newer than any
    non-terminal state.
    """
    if current.is_terminal:
        return False
    if incoming is DeliveryStatus.CANCELED:
        return True
    return _DELIVERY_RANK[incoming] > _DELIVERY_RANK[current]


def delivery_past_pickup(status: DeliveryStatus) -> bool:
    return status is not DeliveryStatus.CANCELED and (
        _DELIVERY_RANK[status] >= _DELIVERY_RANK[DeliveryStatus.PICKED_UP]
    )


# Delivery status -> order status it drives (canceled handled by orchestrator)
DELIVERY_TO_ORDER_STATUS: dict[DeliveryStatus, OrderStatus] = {
    DeliveryStatus.PICKED_UP: OrderStatus.PICKED_UP,
    DeliveryStatus.IN_PROGRESS: OrderStatus.IN_TRANSIT,
    DeliveryStatus.DELIVERED: OrderStatus.DELIVERED,
}


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass
class Location:
    """A pickup or dropoff point."""

    name: str
    address: str
    phone: str = ""
    latitude: float | None = None
    longitude: float | None = None
    instructions: str = ""

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Location:
        return Location(**{k: v for k, v in d.items() if k in _LOCATION_FIELDS})


_LOCATION_FIELDS = {"name", "address", "phone", "latitude", "longitude", "instructions"}


@dataclass
class Customer:
    name: str
    email: str
    address: str
    phone: str = ""
    latitude: float | None = None
    longitude: float | None = None

    def as_dropoff(self) -> Location:
        return Location(
            name=self.name,
            address=self.address,
            phone=self.phone,
            latitude=self.latitude,
            longitude=self.longitude,
        )


@dataclass
class LineItem:
    name: str
    quantity: int
    unit_price: int  # cents
    currency: str = "USD"

    @property
    def subtotal(self) -> int:
        return self.quantity * self.unit_price


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------


@dataclass
class Order:
    """Canonical, platform-agnostic order."""

    tenant_id: str
    source_platform: str
    external_id: str
    customer: Customer
    items: list[LineItem]
    currency: str = "USD"
    notes: str = ""
    pickup: Location | None = None
    ecommerce_integration_id: int | None = None
    reported_total: int | None = None
    status: OrderStatus = OrderStatus.RECEIVED
    cancel_requested: bool = False
    id: str = field(default_factory=lambda: new_id("ord"))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def total_amount(self) -> int:
        return sum(item.subtotal for item in self.items)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["total_amount"] = self.total_amount
        d["created_at"] = _iso(self.created_at)
        d["updated_at"] = _iso(self.updated_at)
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Order:
        data = {k: v for k, v in d.items() if k in _ORDER_FIELDS}
        data["customer"] = Customer(**d["customer"])
        data["items"] = [LineItem(**i) for i in d.get("items", [])]
        data["pickup"] = Location.from_dict(d["pickup"]) if d.get("pickup") else None
        data["status"] = OrderStatus(d.get("status", OrderStatus.RECEIVED.value))
        data["created_at"] = _parse_dt(d.get("created_at")) or utcnow()
        data["updated_at"] = _parse_dt(d.get("updated_at")) or utcnow()
        return Order(**data)


_ORDER_FIELDS = {f.name for f in fields(Order)}


# ---------------------------------------------------------------------------
# Quotes and deliveries
# ---------------------------------------------------------------------------


@dataclass
class DeliveryQuote:
    """Ephemeral partner quote; valid only until ``expires_at``."""

    id: str
    provider: str
    fee: int
    currency: str
    eta_minutes: int | None
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Delivery:
    provider: str
    provider_delivery_id: str
    status: DeliveryStatus
    pickup: Location
    dropoff: Location
    tracking_url: str = ""
    fee: int | None = None
    currency: str = "USD"
    provider_status: str = ""
    quote_id: str | None = None
    pickup_eta: datetime | None = None
    dropoff_eta: datetime | None = None
    order_id: str = ""
    tenant_id: str = ""
    integration_id: int | None = None
    id: str = field(default_factory=lambda: new_id("dlv"))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        for key in ("pickup_eta", "dropoff_eta", "created_at", "updated_at"):
            d[key] = _iso(getattr(self, key))
        return d

    def summary(self) -> dict[str, Any]:
        """Shape returned to the webhook caller."""
        return {
            "id": self.id,
            "status": self.status.value,
            "trackingUrl": self.tracking_url,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Delivery:
        data = {k: v for k, v in d.items() if k in _DELIVERY_FIELDS}
        data["status"] = DeliveryStatus(d["status"])
        data["pickup"] = Location.from_dict(d["pickup"])
        data["dropoff"] = Location.from_dict(d["dropoff"])
        for key in ("pickup_eta", "dropoff_eta", "created_at", "updated_at"):
            if key in data:
                data[key] = _parse_dt(data[key])
        data.setdefault("created_at", utcnow())
        data.setdefault("updated_at", utcnow())
        return Delivery(**data)


_DELIVERY_FIELDS = {f.name for f in fields(Delivery)}


@dataclass
class StatusReport:
    """Result of polling a partner for a delivery's status."""

    status: DeliveryStatus
    tracking_url: str
    raw_status: str = ""


@dataclass
class StatusUpdate:
    """A partner status notification matched by provider-issued delivery id."""

    provider_delivery_id: str
    status: DeliveryStatus
    raw_status: str = ""
    tracking_url: str | None = None


# ---------------------------------------------------------------------------
# Integration
# ---------------------------------------------------------------------------


@dataclass
class Integration:
    """Tenant-scoped credential bundle for one external provider."""

    id: int
    tenant_id: str
    provider: str
    type: IntegrationType
    credentials: dict[str, str] = field(default_factory=dict, repr=False)
    environment: Environment = Environment.SANDBOX
    webhook_url: str = ""
    webhook_secret: str = field(default="", repr=False)
    active: bool = True
    settings: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def provider_key(self) -> str:
        return self.provider.lower().replace(" ", "").replace("_", "")

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "type": self.type.value,
            "environment": self.environment.value,
            "webhook_url": self.webhook_url,
            "active": self.active,
            "settings": dict(self.settings),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_secrets:
            d["credentials"] = dict(self.credentials)
            d["webhook_secret"] = self.webhook_secret
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Integration:
        return Integration(
            id=int(d["id"]),
            tenant_id=str(d["tenant_id"]),
            provider=d["provider"],
            type=IntegrationType(d["type"]),
            credentials=dict(d.get("credentials") or {}),
            environment=Environment(d.get("environment", Environment.SANDBOX.value)),
            webhook_url=d.get("webhook_url", ""),
            webhook_secret=d.get("webhook_secret", ""),
            active=bool(d.get("active", True)),
            settings=dict(d.get("settings") or {}),
            created_at=_parse_dt(d.get("created_at")) or utcnow(),
            updated_at=_parse_dt(d.get("updated_at")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# Webhook log
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WebhookLog:
    """One inbound or outbound webhook exchange.  Never mutated."""

    id: int
    integration_id: int | None
    direction: str  # inbound | outbound
    event_type: str
    request_payload: dict[str, Any]
    response_payload: dict[str, Any]
    status_code: int
    duration_ms: float
    error: str | None
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["created_at"] = _iso(self.created_at)
        return d
