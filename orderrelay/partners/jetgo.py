"""JetGo delivery API client.

JetGo issues short-lived bearer tokens against an API key + merchant id and
quotes fees in major units, so amounts are converted to cents on the way in.
"""

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
from orderrelay.partners.base import (
    DeliveryPartnerClient,
    Token,
    location_payload,
    major_to_cents,
    parse_time,
)

logger = logging.getLogger(__name__)


def _cents_to_major(cents: int) -> str:
    return f"{cents // 100}.{cents % 100:02d}"


class JetGoClient(DeliveryPartnerClient):
    provider = "JetGo"
    live_base_url = "https://api.jetgo-delivery.com"
    sandbox_base_url = "https://api.sandbox.jetgo-delivery.com"
    required_credentials = ("api_key", "merchant_id")
    signature_header = "x-jetgo-signature"
    status_map = {
        "created": DeliveryStatus.CREATED,
        "pending": DeliveryStatus.CREATED,
        "assigned": DeliveryStatus.ASSIGNED,
        "driver_assigned": DeliveryStatus.ASSIGNED,
        "picked_up": DeliveryStatus.PICKED_UP,
        "in_progress": DeliveryStatus.IN_PROGRESS,
        "in_transit": DeliveryStatus.IN_PROGRESS,
        "delivered": DeliveryStatus.DELIVERED,
        "completed": DeliveryStatus.DELIVERED,
        "canceled": DeliveryStatus.CANCELED,
        "cancelled": DeliveryStatus.CANCELED,
        "failed": DeliveryStatus.CANCELED,
    }

    def _fetch_token(self) -> Token:
        creds = self.integration.credentials
        data = self._request_token(
            "POST",
            "/v1/auth/token",
            json={"api_key": creds["api_key"], "merchant_id": creds["merchant_id"]},
        )
        access_token = data.get("access_token") or data.get("token")
        if not access_token:
            raise AuthFailure(f"{self.provider} token response carried no access_token")
        expires_in = int(data.get("expires_in") or 3600)
        return Token(value=access_token, expires_at=utcnow() + timedelta(seconds=expires_in))

    def _classify_rejection(
        self, operation: str, status: int, code: str, message: str
    ) -> RelayError | None:
        if operation == "quote" and code in ("route_unavailable", "out_of_area", "no_drivers"):
            return QuoteUnavailable(f"{self.provider} cannot serve this route: {message or code}")
        if operation == "create_delivery" and code in ("quote_expired", "quote_not_found"):
            return QuoteExpired(code)
        if operation == "cancel" and status == 409:
            return AlreadyInTransit(f"{self.provider} refused cancellation: {message or code}")
        return None

    def get_quote(
        self,
        pickup: Location,
        dropoff: Location,
        order_value: int,
        currency: str,
        *,
        reference: str | None = None,
    ) -> DeliveryQuote:
        body: dict[str, Any] = {
            "pickup": location_payload(pickup),
            "dropoff": location_payload(dropoff),
            "order_value": _cents_to_major(order_value),
            "currency": currency,
        }
        if reference:
            body["reference"] = reference
        data = self._call("POST", "/v1/quotes", operation="quote", json=body)

        fee = major_to_cents(data.get("fee"))
        if fee is None:
            raise QuoteUnavailable(f"{self.provider} returned a quote without a fee")
        return DeliveryQuote(
            id=str(data["quote_id"] if "quote_id" in data else data["id"]),
            provider=self.provider,
            fee=fee,
            currency=str(data.get("currency") or currency).upper(),
            eta_minutes=data.get("eta_minutes") or data.get("eta"),
            expires_at=parse_time(data.get("expires_at")) or utcnow() + timedelta(minutes=5),
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
            "pickup": location_payload(pickup),
            "dropoff": location_payload(dropoff),
            "items": [
                {"name": i.name, "quantity": i.quantity, "price": _cents_to_major(i.unit_price)}
                for i in items
            ],
            "order_value": _cents_to_major(order_value),
            "currency": currency,
        }
        if quote is not None:
            body["quote_id"] = quote.id
        if reference:
            body["reference"] = reference
        data = self._call("POST", "/v1/deliveries", operation="create_delivery", json=body)

        raw_status = str(data.get("status") or "created")
        fee = major_to_cents(data.get("fee"))
        return Delivery(
            provider=self.provider,
            provider_delivery_id=str(data.get("delivery_id") or data["id"]),
            status=self.map_status(raw_status) or DeliveryStatus.CREATED,
            provider_status=raw_status,
            pickup=pickup,
            dropoff=dropoff,
            tracking_url=str(data.get("tracking_url") or ""),
            fee=fee if fee is not None else (quote.fee if quote else None),
            currency=str(data.get("currency") or currency).upper(),
            quote_id=quote.id if quote else None,
            pickup_eta=parse_time(data.get("pickup_eta")),
            dropoff_eta=parse_time(data.get("dropoff_eta")),
        )

    def get_status(self, provider_delivery_id: str) -> StatusReport:
        data = self._call("GET", f"/v1/deliveries/{provider_delivery_id}", operation="status")
        raw_status = str(data.get("status") or "")
        return StatusReport(
            status=self.map_status(raw_status) or DeliveryStatus.CREATED,
            tracking_url=str(data.get("tracking_url") or ""),
            raw_status=raw_status,
        )

    def cancel(self, provider_delivery_id: str) -> bool:
        data = self._call(
            "POST", f"/v1/deliveries/{provider_delivery_id}/cancel", operation="cancel"
        )
        return bool(data.get("success", True))

    def parse_status_webhook(self, payload: dict[str, Any]) -> StatusUpdate | None:
        event = str(payload.get("event") or "")
        if event and not event.startswith("delivery."):
            return None
        delivery_id = payload.get("delivery_id")
        status = self.map_status(payload.get("status"))
        if not delivery_id or status is None:
            return None
        return StatusUpdate(
            provider_delivery_id=str(delivery_id),
            status=status,
            raw_status=str(payload.get("status")),
            tracking_url=payload.get("tracking_url"),
        )
