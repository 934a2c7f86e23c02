"""UberDirect (Uber Direct delivery API) client."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from orderrelay.exceptions import (
    AlreadyInTransit,
    AuthFailure,
    QuoteExpired,
    QuoteUnavailable,
    RelayError,
)
from orderrelay.models import (
    Delivery,
    DeliveryQuote,
    DeliveryStatus,
    LineItem,
    Location,
    StatusReport,
    StatusUpdate,
    utcnow,
)
from orderrelay.partners.base import DeliveryPartnerClient, Token, parse_time

logger = logging.getLogger(__name__)

_TOKEN_URL = "https://login.uber.com/oauth/v2/token"
_SCOPE = "eats.deliveries"

_QUOTE_UNAVAILABLE_CODES = {
    "address_undeliverable",
    "address_undeliverable_limited_couriers",
    "unknown_location",
    "couriers_busy",
    "pickup_window_too_small",
}
_QUOTE_EXPIRED_CODES = {"expired_quote", "quote_expired", "invalid_quote"}
_NONCANCELABLE_CODES = {"noncancelable_delivery", "delivery_not_cancelable"}


class UberDirectClient(DeliveryPartnerClient):
    """OAuth2 client-credentials; deliveries scoped under the Uber customer id."""

    provider = "UberDirect"
    live_base_url = "https://api.uber.com/v1"
    sandbox_base_url = "https://sandbox-api.uber.com/v1"
    required_credentials = ("customer_id", "client_id", "client_secret")
    signature_header = "x-uber-signature"
    status_map = {
        "pending": DeliveryStatus.CREATED,
        "processing": DeliveryStatus.CREATED,
        "pickup": DeliveryStatus.ASSIGNED,
        "picking_up": DeliveryStatus.ASSIGNED,
        "pickup_complete": DeliveryStatus.PICKED_UP,
        "picked_up": DeliveryStatus.PICKED_UP,
        "dropoff": DeliveryStatus.IN_PROGRESS,
        "delivering": DeliveryStatus.IN_PROGRESS,
        "delivered": DeliveryStatus.DELIVERED,
        "canceled": DeliveryStatus.CANCELED,
        "returned": DeliveryStatus.CANCELED,
    }

    @property
    def _customer_path(self) -> str:
        return f"/customers/{self.integration.credentials['customer_id']}"

    def _fetch_token(self) -> Token:
        creds = self.integration.credentials
        data = self._request_token(
            "POST",
            _TOKEN_URL,
            data={
                "client_id": creds["client_id"],
                "client_secret": creds["client_secret"],
                "grant_type": "client_credentials",
                "scope": _SCOPE,
            },
        )
        access_token = data.get("access_token")
        if not access_token:
            raise AuthFailure(f"{self.provider} token response carried no access_token")
        expires_in = int(data.get("expires_in") or 3600)
        return Token(value=access_token, expires_at=utcnow() + timedelta(seconds=expires_in))

    def _classify_rejection(
        self, operation: str, status: int, code: str, message: str
    ) -> RelayError | None:
        if operation == "quote" and (code in _QUOTE_UNAVAILABLE_CODES or status == 422):
            return QuoteUnavailable(f"{self.provider} cannot serve this route: {message or code}")
        if operation == "create_delivery" and code in _QUOTE_EXPIRED_CODES:
            return QuoteExpired(code)
        if operation == "cancel" and (code in _NONCANCELABLE_CODES or status == 409):
            return AlreadyInTransit(f"{self.provider} refused cancellation: {message or code}")
        return None

    @staticmethod
    def _place(prefix: str, location: Location) -> dict[str, Any]:
        body: dict[str, Any] = {
            f"{prefix}_name": location.name,
            f"{prefix}_address": location.address,
            f"{prefix}_phone_number": location.phone,
        }
        if location.latitude is not None and location.longitude is not None:
            body[f"{prefix}_latitude"] = location.latitude
            body[f"{prefix}_longitude"] = location.longitude
        if location.instructions:
            body[f"{prefix}_notes"] = location.instructions
        return body

    def get_quote(
        self,
        pickup: Location,
        dropoff: Location,
        order_value: int,
        currency: str,
        *,
        reference: str | None = None,
    ) -> DeliveryQuote:
        body = {
            **self._place("pickup", pickup),
            **self._place("dropoff", dropoff),
            "manifest_total_value": order_value,
        }
        if reference:
            body["external_store_id"] = reference
        data = self._call("POST", f"{self._customer_path}/delivery_quotes", operation="quote", json=body)
        expires_at = parse_time(data.get("expires")) or utcnow() + timedelta(minutes=15)
        return DeliveryQuote(
            id=str(data["id"]),
            provider=self.provider,
            fee=int(data.get("fee") or 0),
            currency=str(data.get("currency") or currency).upper(),
            eta_minutes=data.get("duration"),
            expires_at=expires_at,
        )

    def _create_delivery(
        self,
        quote: DeliveryQuote | None,
        pickup: Location,
        dropoff: Location,
        items: list[LineItem],
        *,
        order_value: int,
        currency: str,
        reference: str | None,
    ) -> Delivery:
        body: dict[str, Any] = {
            **self._place("pickup", pickup),
            **self._place("dropoff", dropoff),
            "manifest_items": [
                {"name": i.name, "quantity": i.quantity, "price": i.unit_price} for i in items
            ],
            "manifest_total_value": order_value,
        }
        if quote is not None:
            body["quote_id"] = quote.id
        if reference:
            body["external_id"] = reference
        data = self._call(
            "POST", f"{self._customer_path}/deliveries", operation="create_delivery", json=body
        )
        raw_status = str(data.get("status") or "pending")
        return Delivery(
            provider=self.provider,
            provider_delivery_id=str(data["id"]),
            status=self.map_status(raw_status) or DeliveryStatus.CREATED,
            provider_status=raw_status,
            pickup=pickup,
            dropoff=dropoff,
            tracking_url=str(data.get("tracking_url") or ""),
            fee=int(data["fee"]) if data.get("fee") is not None else (quote.fee if quote else None),
            currency=str(data.get("currency") or currency).upper(),
            quote_id=quote.id if quote else None,
            pickup_eta=parse_time(data.get("pickup_eta")),
            dropoff_eta=parse_time(data.get("dropoff_eta")),
        )

    def get_status(self, provider_delivery_id: str) -> StatusReport:
        data = self._call(
            "GET", f"{self._customer_path}/deliveries/{provider_delivery_id}", operation="status"
        )
        raw_status = str(data.get("status") or "")
        return StatusReport(
            status=self.map_status(raw_status) or DeliveryStatus.CREATED,
            tracking_url=str(data.get("tracking_url") or ""),
            raw_status=raw_status,
        )

    def cancel(self, provider_delivery_id: str) -> bool:
        self._call(
            "POST",
            f"{self._customer_path}/deliveries/{provider_delivery_id}/cancel",
            operation="cancel",
        )
        return True

    def parse_status_webhook(self, payload: dict[str, Any]) -> StatusUpdate | None:
        """``event.delivery_status`` notifications; other kinds are ignored."""
        kind = payload.get("kind")
        if kind and kind != "event.delivery_status":
            return None
        delivery_id = payload.get("delivery_id") or (payload.get("data") or {}).get("id")
        raw_status = payload.get("status") or (payload.get("data") or {}).get("status")
        status = self.map_status(raw_status)
        if not delivery_id or status is None:
            return None
        data = payload.get("data") or {}
        return StatusUpdate(
            provider_delivery_id=str(delivery_id),
            status=status,
            raw_status=str(raw_status),
            tracking_url=data.get("tracking_url"),
        )
