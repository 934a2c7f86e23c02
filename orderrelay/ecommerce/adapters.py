"""E-commerce adapters: verify and normalize inbound order webhooks.

Each platform has a field mapper that turns its order payload into the
canonical ``Order``.  ``normalize`` is the only entry point: it checks the
signature over the raw body first and only then parses the JSON.  Nothing
here persists anything; storing the order is the orchestrator's job.
"""

from __future__ import annotations

import hashlib
import json
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable

from orderrelay.ecommerce.verification import verify_webhook
from orderrelay.exceptions import InvalidSignature, MalformedPayload
from orderrelay.models import Customer, LineItem, Location, Order

logger = logging.getLogger(__name__)

# Integration provider names -> adapter key
PLATFORM_ALIASES: dict[str, str] = {
    "shopify": "shopify",
    "woocommerce": "woocommerce",
    "woo": "woocommerce",
    "custom": "custom",
    "website": "custom",
    "storefront": "custom",
}

# Keys the relay envelope adds around the order body
_ENVELOPE_KEYS = {"ecommerceIntegrationId", "deliveryIntegrationId", "deliveryProvider"}


def canonical_platform(name: str) -> str:
    key = name.strip().lower().replace(" ", "").replace("-", "").replace("_", "")
    platform = PLATFORM_ALIASES.get(key)
    if platform is None:
        raise MalformedPayload("platform", f"unsupported platform {name!r} for")
    return platform


def normalize(
    raw_body: bytes,
    platform: str,
    *,
    secret: str,
    headers: dict[str, str],
    tenant_id: str,
    integration_id: int | None = None,
    verify: bool = True,
) -> Order:
    """Verify and normalize an inbound e-commerce webhook into an ``Order``.

    Raises:
        InvalidSignature: signature header missing or wrong (checked before parsing).
        MalformedPayload: body is not a JSON object, or a required field is missing.
    """
    key = canonical_platform(platform)

    if verify and not verify_webhook(key, raw_body, headers, secret):
        raise InvalidSignature(key)

    payload = parse_body(raw_body)
    order_body = unwrap_envelope(payload)

    mapper = _MAPPERS[key]
    order = mapper(order_body, tenant_id)
    order.ecommerce_integration_id = integration_id

    if order.reported_total is not None and order.reported_total != order.total_amount:
        logger.warning(
            "Order %s/%s reported total %d differs from line-item total %d",
            key,
            order.external_id,
            order.reported_total,
            order.total_amount,
        )
    return order


def parse_body(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayload("body", "invalid JSON in") from e
    if not isinstance(payload, dict):
        raise MalformedPayload("body", "expected a JSON object for")
    return payload


def unwrap_envelope(payload: dict[str, Any]) -> dict[str, Any]:
    """Return the order body from the relay envelope.

    The envelope nests the order under ``order``; the dashboard test tool
    posts it flattened next to the integration ids.
    """
    inner = payload.get("order")
    if isinstance(inner, dict):
        return inner
    return {k: v for k, v in payload.items() if k not in _ENVELOPE_KEYS}


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _require(d: dict[str, Any], key: str, path: str) -> Any:
    value = d.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MalformedPayload(path)
    return value


def _mapping(d: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = _require(d, key, path)
    if not isinstance(value, dict):
        raise MalformedPayload(path, "expected an object for")
    return value


def _quantity(value: Any, path: str) -> int:
    if isinstance(value, bool):
        raise MalformedPayload(path, "invalid quantity")
    try:
        qty = int(value)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(path, "invalid quantity") from e
    if qty != value and not isinstance(value, str):
        raise MalformedPayload(path, "invalid quantity")
    if qty <= 0:
        raise MalformedPayload(path, "non-positive quantity")
    return qty


def _cents_from_minor(value: Any, path: str) -> int:
    """Amount already in minor units (the relay's own payload shape)."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise MalformedPayload(path, "invalid amount")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedPayload(path, "invalid amount") from e
    if amount != amount.to_integral_value() or amount < 0:
        raise MalformedPayload(path, "invalid amount")
    return int(amount)


def _cents_from_decimal(value: Any, path: str) -> int:
    """Decimal major-unit amount ("15.99") -> cents, exactly."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise MalformedPayload(path, "invalid amount")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedPayload(path, "invalid amount") from e
    if amount < 0:
        raise MalformedPayload(path, "invalid amount")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _items(
    raw: Any,
    path: str,
    currency: str,
    name_keys: tuple[str, ...],
    to_cents: Callable[[Any, str], int],
) -> list[LineItem]:
    if not isinstance(raw, list) or not raw:
        raise MalformedPayload(path)
    items: list[LineItem] = []
    for idx, entry in enumerate(raw):
        item_path = f"{path}[{idx}]"
        if not isinstance(entry, dict):
            raise MalformedPayload(item_path, "expected an object for")
        name = next((entry[k] for k in name_keys if entry.get(k)), None)
        if not name:
            raise MalformedPayload(f"{item_path}.{name_keys[0]}")
        items.append(
            LineItem(
                name=str(name),
                quantity=_quantity(_require(entry, "quantity", f"{item_path}.quantity"), f"{item_path}.quantity"),
                unit_price=to_cents(_require(entry, "price", f"{item_path}.price"), f"{item_path}.price"),
                currency=str(entry.get("currency") or currency).upper(),
            )
        )
    return items


def _coord(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _join_address(*parts: Any) -> str:
    return ", ".join(str(p).strip() for p in parts if p not in (None, "") and str(p).strip())


def _full_name(d: dict[str, Any]) -> str:
    return " ".join(str(p).strip() for p in (d.get("first_name"), d.get("last_name")) if p)


def _fallback_external_id(body: dict[str, Any]) -> str:
    canonical = json.dumps(body, sort_keys=True, default=str)
    return "h_" + hashlib.sha256(canonical.encode()).hexdigest()[:24]


# ---------------------------------------------------------------------------
# Platform mappers
# ---------------------------------------------------------------------------


def _map_custom(body: dict[str, Any], tenant_id: str) -> Order:
    """The relay's native shape (also what the dashboard test tool sends).

    Prices are integers in cents: ``{"name": "Kebab", "quantity": 2, "price": 1599}``.
    """
    currency = str(body.get("currency") or "USD").upper()
    customer_raw = _mapping(body, "customer", "customer")
    customer = Customer(
        name=str(_require(customer_raw, "name", "customer.name")),
        email=str(customer_raw.get("email") or ""),
        address=str(_require(customer_raw, "address", "customer.address")),
        phone=str(customer_raw.get("phone") or ""),
        latitude=_coord(customer_raw.get("latitude")),
        longitude=_coord(customer_raw.get("longitude")),
    )

    pickup = None
    restaurant = body.get("restaurant")
    if isinstance(restaurant, dict):
        pickup = Location(
            name=str(_require(restaurant, "name", "restaurant.name")),
            address=str(_require(restaurant, "address", "restaurant.address")),
            phone=str(restaurant.get("phone") or ""),
            latitude=_coord(restaurant.get("latitude")),
            longitude=_coord(restaurant.get("longitude")),
            instructions=str(restaurant.get("instructions") or ""),
        )

    reported = body.get("totalAmount")
    return Order(
        tenant_id=tenant_id,
        source_platform="custom",
        external_id=str(body.get("id") or _fallback_external_id(body)),
        customer=customer,
        items=_items(body.get("items"), "items", currency, ("name",), _cents_from_minor),
        currency=currency,
        notes=str(body.get("notes") or ""),
        pickup=pickup,
        reported_total=_cents_from_minor(reported, "totalAmount") if reported is not None else None,
    )


def _map_shopify(body: dict[str, Any], tenant_id: str) -> Order:
    """Shopify ``orders/create`` payload."""
    currency = str(body.get("currency") or "USD").upper()
    shipping = _mapping(body, "shipping_address", "shipping_address")
    customer_raw = body.get("customer") if isinstance(body.get("customer"), dict) else {}

    name = _full_name(shipping) or _full_name(customer_raw)
    if not name:
        name = str(shipping.get("name") or "")
    if not name:
        raise MalformedPayload("shipping_address.first_name")

    address = _join_address(
        _require(shipping, "address1", "shipping_address.address1"),
        shipping.get("address2"),
        shipping.get("city"),
        shipping.get("province"),
        shipping.get("zip"),
        shipping.get("country"),
    )
    customer = Customer(
        name=name,
        email=str(body.get("email") or customer_raw.get("email") or ""),
        address=address,
        phone=str(shipping.get("phone") or body.get("phone") or customer_raw.get("phone") or ""),
        latitude=_coord(shipping.get("latitude")),
        longitude=_coord(shipping.get("longitude")),
    )

    reported = body.get("total_price")
    return Order(
        tenant_id=tenant_id,
        source_platform="shopify",
        external_id=str(_require(body, "id", "id")),
        customer=customer,
        items=_items(body.get("line_items"), "line_items", currency, ("title", "name"), _cents_from_decimal),
        currency=currency,
        notes=str(body.get("note") or ""),
        reported_total=_cents_from_decimal(reported, "total_price") if reported is not None else None,
    )


def _map_woocommerce(body: dict[str, Any], tenant_id: str) -> Order:
    """WooCommerce ``order.created`` payload."""
    currency = str(body.get("currency") or "USD").upper()
    billing = body.get("billing") if isinstance(body.get("billing"), dict) else {}
    shipping = body.get("shipping") if isinstance(body.get("shipping"), dict) else {}
    target = shipping if shipping.get("address_1") else billing
    if not target.get("address_1"):
        raise MalformedPayload("shipping.address_1")

    name = _full_name(target)
    if not name:
        raise MalformedPayload("shipping.first_name")

    customer = Customer(
        name=name,
        email=str(billing.get("email") or ""),
        address=_join_address(
            target.get("address_1"),
            target.get("address_2"),
            target.get("city"),
            target.get("state"),
            target.get("postcode"),
            target.get("country"),
        ),
        phone=str(target.get("phone") or billing.get("phone") or ""),
    )

    reported = body.get("total")
    return Order(
        tenant_id=tenant_id,
        source_platform="woocommerce",
        external_id=str(_require(body, "id", "id")),
        customer=customer,
        items=_items(body.get("line_items"), "line_items", currency, ("name",), _cents_from_decimal),
        currency=currency,
        notes=str(body.get("customer_note") or ""),
        reported_total=_cents_from_decimal(reported, "total") if reported is not None else None,
    )


_MAPPERS: dict[str, Callable[[dict[str, Any], str], Order]] = {
    "custom": _map_custom,
    "shopify": _map_shopify,
    "woocommerce": _map_woocommerce,
}
