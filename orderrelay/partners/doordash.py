"""DoorDash Drive v2 client.

DoorDash does not issue tokens: each caller signs its own DD-JWT-V1 with the
developer's signing secret.  The signed JWT is cached like any other token.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from datetime import timedelta
from typing import Any

from jose import JWTError, jwt

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
    new_id,
    utcnow,
)
from orderrelay.partners.base import DeliveryPartnerClient, Token, parse_time

logger = logging.getLogger(__name__)

JWT_LIFETIME = timedelta(minutes=5)
QUOTE_LIFETIME = timedelta(minutes=5)

# Webhook event names -> canonical status
_EVENT_STATUS = {
    "DASHER_CONFIRMED": DeliveryStatus.ASSIGNED,
    "DASHER_ENROUTE_TO_PICKUP": DeliveryStatus.ASSIGNED,
    "DASHER_CONFIRMED_PICKUP_ARRIVAL": DeliveryStatus.ASSIGNED,
    "DASHER_PICKED_UP": DeliveryStatus.PICKED_UP,
    "DASHER_ENROUTE_TO_DROPOFF": DeliveryStatus.IN_PROGRESS,
    "DASHER_CONFIRMED_DROPOFF_ARRIVAL": DeliveryStatus.IN_PROGRESS,
    "DASHER_DROPPED_OFF": DeliveryStatus.DELIVERED,
    "DELIVERY_CANCELLED": DeliveryStatus.CANCELED,
    "DELIVERY_RETURNED": DeliveryStatus.CANCELED,
}


def _decode_secret(secret: str) -> bytes:
    """DoorDash hands out the signing secret base64url-encoded."""
    padded = secret + "=" * (-len(secret) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as e:
        raise AuthFailure("DoorDash signing_secret is not valid base64url") from e


class DoorDashClient(DeliveryPartnerClient):
    provider = "DoorDash"
    live_base_url = "https://openapi.doordash.com"
    sandbox_base_url = "https://openapi.doordash.com"
    required_credentials = ("developer_id", "key_id", "signing_secret")
    status_map = {
        "quote": DeliveryStatus.CREATED,
        "created": DeliveryStatus.CREATED,
        "confirmed": DeliveryStatus.ASSIGNED,
        "enroute_to_pickup": DeliveryStatus.ASSIGNED,
        "arrived_at_pickup": DeliveryStatus.ASSIGNED,
        "picked_up": DeliveryStatus.PICKED_UP,
        "enroute_to_dropoff": DeliveryStatus.IN_PROGRESS,
        "arrived_at_dropoff": DeliveryStatus.IN_PROGRESS,
        "delivered": DeliveryStatus.DELIVERED,
        "cancelled": DeliveryStatus.CANCELED,
        "returned": DeliveryStatus.CANCELED,
    }

    def _fetch_token(self) -> Token:
        creds = self.integration.credentials
        now = utcnow()
        expires_at = now + JWT_LIFETIME
        claims = {
            "aud": "doordash",
            "iss": creds["developer_id"],
            "kid": creds["key_id"],
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        try:
            value = jwt.encode(
                claims,
                _decode_secret(creds["signing_secret"]),
                algorithm="HS256",
                headers={"dd-ver": "DD-JWT-V1"},
            )
        except JWTError as e:
            raise AuthFailure(f"{self.provider} JWT signing failed") from e
        return Token(value=value, expires_at=expires_at)

    def _classify_rejection(
        self, operation: str, status: int, code: str, message: str
    ) -> RelayError | None:
        if operation == "quote" and (status == 422 or "address" in code or "distance" in code):
            return QuoteUnavailable(f"{self.provider} cannot serve this route: {message or code}")
        if operation == "create_delivery" and ("expired" in code or status == 410):
            return QuoteExpired(code or "quote")
        if operation == "cancel" and status in (400, 409):
            return AlreadyInTransit(f"{self.provider} refused cancellation: {message or code}")
        return None

    @staticmethod
    def _place(prefix: str, location: Location) -> dict[str, Any]:
        name_key = "pickup_business_name" if prefix == "pickup" else "dropoff_contact_given_name"
        body: dict[str, Any] = {
            f"{prefix}_address": location.address,
            name_key: location.name,
            f"{prefix}_phone_number": location.phone,
        }
        if location.instructions:
            body[f"{prefix}_instructions"] = location.instructions
        if prefix == "dropoff" and location.latitude is not None and location.longitude is not None:
            body["dropoff_location"] = {"lat": location.latitude, "lng": location.longitude}
        return body

    def _delivery_body(
        self, external_id: str, pickup: Location, dropoff: Location, order_value: int
    ) -> dict[str, Any]:
        return {
            "external_delivery_id": external_id,
            **self._place("pickup", pickup),
            **self._place("dropoff", dropoff),
            "order_value": order_value,
        }

    def get_quote(
        self,
        pickup: Location,
        dropoff: Location,
        order_value: int,
        currency: str,
        *,
        reference: str | None = None,
    ) -> DeliveryQuote:
        # The quote is addressed by the external id we choose; accepting it
        # later creates the delivery under the same id.
        external_id = new_id("dd")
        data = self._call(
            "POST",
            "/drive/v2/quotes",
            operation="quote",
            json=self._delivery_body(external_id, pickup, dropoff, order_value),
        )
        return DeliveryQuote(
            id=str(data.get("external_delivery_id") or external_id),
            provider=self.provider,
            fee=int(data.get("fee") or 0),
            currency=str(data.get("currency") or currency).upper(),
            eta_minutes=None,
            expires_at=utcnow() + QUOTE_LIFETIME,
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
        if quote is not None:
            external_id = quote.id
            data = self._call(
                "POST",
                f"/drive/v2/quotes/{quote.id}/accept",
                operation="create_delivery",
                json={},
            )
        else:
            external_id = reference or new_id("dd")
            body = self._delivery_body(external_id, pickup, dropoff, order_value)
            body["items"] = [{"name": i.name, "quantity": i.quantity} for i in items]
            data = self._call("POST", "/drive/v2/deliveries", operation="create_delivery", json=body)

        raw_status = str(data.get("delivery_status") or "created")
        return Delivery(
            provider=self.provider,
            provider_delivery_id=str(data.get("external_delivery_id") or external_id),
            status=self.map_status(raw_status) or DeliveryStatus.CREATED,
            provider_status=raw_status,
            pickup=pickup,
            dropoff=dropoff,
            tracking_url=str(data.get("tracking_url") or ""),
            fee=int(data["fee"]) if data.get("fee") is not None else (quote.fee if quote else None),
            currency=str(data.get("currency") or currency).upper(),
            quote_id=quote.id if quote else None,
            pickup_eta=parse_time(data.get("pickup_time_estimated")),
            dropoff_eta=parse_time(data.get("dropoff_time_estimated")),
        )

    def get_status(self, provider_delivery_id: str) -> StatusReport:
        data = self._call("GET", f"/drive/v2/deliveries/{provider_delivery_id}", operation="status")
        raw_status = str(data.get("delivery_status") or "")
        return StatusReport(
            status=self.map_status(raw_status) or DeliveryStatus.CREATED,
            tracking_url=str(data.get("tracking_url") or ""),
            raw_status=raw_status,
        )

    def cancel(self, provider_delivery_id: str) -> bool:
        self._call("PUT", f"/drive/v2/deliveries/{provider_delivery_id}/cancel", operation="cancel")
        return True

    def verify_webhook(self, body: bytes, headers: dict[str, str]) -> bool:
        """DoorDash echoes a configured Authorization header value on each webhook."""
        secret = self.integration.webhook_secret
        if not secret:
            logger.warning(
                "DoorDash webhook secret not set for integration %s, rejecting",
                self.integration.id,
            )
            return False
        lowered = {k.lower(): v for k, v in headers.items()}
        supplied = lowered.get("authorization", "")
        return hmac.compare_digest(supplied.strip().encode(), secret.encode())

    def parse_status_webhook(self, payload: dict[str, Any]) -> StatusUpdate | None:
        event = str(payload.get("event_name") or "")
        status = _EVENT_STATUS.get(event)
        if status is None:
            status = self.map_status(payload.get("delivery_status"))
        delivery_id = payload.get("external_delivery_id")
        if not delivery_id or status is None:
            return None
        return StatusUpdate(
            provider_delivery_id=str(delivery_id),
            status=status,
            raw_status=event or str(payload.get("delivery_status")),
            tracking_url=payload.get("tracking_url"),
        )
