"""Webhook endpoint tests: order intake and partner status notifications.

Verifies:
- Signed order webhook -> 201 with the created delivery and tracking URL
- Redelivered webhook answers 200 with the same delivery (no second dispatch)
- A redelivery racing the first dispatch gets 409 DispatchInProgress
- Signature failures are 401 and nothing is dispatched
- Relay errors map to their HTTP statuses with a JSON body
- Partner status webhooks are verified, matched and applied monotonically
- Every inbound webhook lands in the webhook log
"""

from __future__ import annotations

import json
import threading

import pytest

from orderrelay.exceptions import QuoteUnavailable, RateLimited

ORDER_PATH = "/api/webhook/ecommerce-to-delivery"


def _order_body(**overrides) -> dict:
    body = {
        "id": "web-1001",
        "customer": {
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "address": "500 Howard St, San Francisco, CA",
            "phone": "+14155550123",
            "latitude": 37.7893,
            "longitude": -122.3961,
        },
        "items": [{"name": "Kebab", "quantity": 2, "price": 1599}],
        "totalAmount": 3198,
    }
    body.update(overrides)
    return body


@pytest.fixture
def post_order(client, ecommerce_integration, delivery_integration, sign):
    """Sign and POST an order envelope; keyword args override envelope keys."""

    def _post(order: dict | None = None, *, secret: str | None = None, **envelope):
        payload = {
            "ecommerceIntegrationId": ecommerce_integration.id,
            "deliveryIntegrationId": delivery_integration.id,
            "order": order or _order_body(),
        }
        payload.update(envelope)
        payload = {k: v for k, v in payload.items() if v is not None}
        raw = json.dumps(payload).encode()
        signature = sign(raw, secret or ecommerce_integration.webhook_secret)
        return client.post(
            ORDER_PATH,
            content=raw,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": signature},
        )

    return _post


@pytest.fixture
def post_status(client, delivery_integration, sign):
    def _post(payload: dict, *, secret: str | None = None, integration_id: int | None = None):
        raw = json.dumps(payload).encode()
        signature = sign(raw, secret or delivery_integration.webhook_secret)
        return client.post(
            f"/api/webhook/delivery/{integration_id or delivery_integration.id}",
            content=raw,
            headers={"Content-Type": "application/json", "X-Fake-Signature": signature},
        )

    return _post


# ── Order intake ──────────────────────────────────────────────────────────


class TestOrderWebhook:
    def test_kebab_order_dispatched(self, post_order, partner):
        resp = post_order()

        assert resp.status_code == 201
        data = resp.json()
        assert data["orderId"].startswith("ord_")
        assert data["delivery"]["status"] == "created"
        assert data["delivery"]["trackingUrl"].startswith("https://track.partner.invalid/")
        assert len(partner.created) == 1

    def test_order_persisted_with_integer_total(self, post_order, relay):
        order_id = post_order().json()["orderId"]
        order = relay.storage.orders.get(order_id)
        assert order.total_amount == 3198
        assert order.status.value == "received"
        assert order.ecommerce_integration_id is not None

    def test_redelivery_returns_existing_delivery(self, post_order, partner):
        first = post_order()
        second = post_order()

        assert second.status_code == 200
        assert second.json()["orderId"] == first.json()["orderId"]
        assert second.json()["delivery"]["id"] == first.json()["delivery"]["id"]
        assert len(partner.created) == 1

    def test_redelivery_after_completion(self, post_order, post_status, partner):
        first = post_order().json()
        post_status({"delivery_id": partner.created[0].provider_delivery_id, "status": "delivered"})

        again = post_order()
        assert again.status_code == 200
        assert again.json()["delivery"]["id"] == first["delivery"]["id"]
        assert again.json()["delivery"]["status"] == "delivered"

    def test_concurrent_redelivery_conflicts(self, post_order, partner):
        partner.release_create = threading.Event()
        results = {}

        def first():
            results["first"] = post_order()

        worker = threading.Thread(target=first)
        worker.start()
        assert partner.create_started.wait(timeout=5)

        second = post_order()
        partner.release_create.set()
        worker.join(timeout=5)

        assert results["first"].status_code == 201
        assert second.status_code == 409
        assert second.json()["error"] == "DispatchInProgress"
        assert second.json()["message"].startswith("Dispatch already in progress for order ord_")
        assert len(partner.created) == 1

        again = post_order()
        assert again.status_code == 200
        assert again.json()["delivery"]["id"] == results["first"].json()["delivery"]["id"]

    def test_bad_signature_rejected(self, post_order, partner, relay):
        resp = post_order(secret="not-the-secret")

        assert resp.status_code == 401
        assert resp.json()["error"] == "InvalidSignature"
        assert partner.quotes == []

    def test_missing_signature_rejected(self, client, ecommerce_integration, delivery_integration):
        raw = json.dumps(
            {
                "ecommerceIntegrationId": ecommerce_integration.id,
                "deliveryIntegrationId": delivery_integration.id,
                "order": _order_body(),
            }
        ).encode()
        resp = client.post(ORDER_PATH, content=raw, headers={"Content-Type": "application/json"})
        assert resp.status_code == 401

    def test_invalid_json(self, client):
        resp = client.post(ORDER_PATH, content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "MalformedPayload"

    def test_missing_integration_id(self, post_order):
        resp = post_order(ecommerceIntegrationId=None)
        assert resp.status_code == 400
        assert "ecommerceIntegrationId" in resp.json()["message"]

    def test_unknown_integration(self, post_order):
        resp = post_order(ecommerceIntegrationId=9999)
        assert resp.status_code == 404
        assert resp.json()["error"] == "IntegrationNotFound"

    def test_missing_customer_address(self, post_order):
        order = _order_body()
        del order["customer"]["address"]
        resp = post_order(order)
        assert resp.status_code == 400
        assert "customer.address" in resp.json()["message"]

    def test_delivery_integration_resolved_by_provider(self, post_order, partner):
        resp = post_order(deliveryIntegrationId=None, deliveryProvider="UberDirect")
        assert resp.status_code == 201
        assert len(partner.created) == 1

    def test_no_delivery_integration(self, post_order):
        resp = post_order(deliveryIntegrationId=None)
        assert resp.status_code == 400
        assert "deliveryIntegrationId" in resp.json()["message"]

    def test_inactive_delivery_integration(self, post_order, relay, delivery_integration):
        relay.registry.deactivate(delivery_integration.id)
        resp = post_order()
        assert resp.status_code == 409
        assert resp.json()["error"] == "IntegrationInactive"

    def test_quote_unavailable(self, post_order, partner):
        partner.quote_error = QuoteUnavailable("FakeGo cannot serve this route")
        resp = post_order()
        assert resp.status_code == 422
        assert resp.json() == {"message": "FakeGo cannot serve this route", "error": "QuoteUnavailable"}

    def test_partner_throttling_sets_retry_after(self, post_order, partner):
        partner.quote_error = RateLimited("FakeGo rate limited quote", retry_after=2.5)
        resp = post_order()
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "3"

    def test_unexpected_error_is_opaque(self, post_order, partner):
        partner.quote_error = RuntimeError("database password is hunter2")
        resp = post_order()
        assert resp.status_code == 500
        assert resp.json() == {"message": "Internal server error"}
        assert "hunter2" not in resp.text

    def test_inbound_webhook_logged(self, post_order, relay, ecommerce_integration):
        post_order()
        post_order(secret="wrong")

        logs = relay.webhook_log.list(ecommerce_integration.id)
        assert [(e.event_type, e.status_code) for e in logs] == [
            ("order.received", 401),
            ("order.received", 201),
        ]
        assert all(e.direction == "inbound" for e in logs)


# ── Partner status webhooks ───────────────────────────────────────────────


class TestStatusWebhook:
    @pytest.fixture
    def provider_id(self, post_order, partner):
        post_order()
        return partner.created[0].provider_delivery_id

    def test_pickup_moves_order(self, post_status, provider_id):
        resp = post_status({"delivery_id": provider_id, "status": "picked_up"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["applied"] is True
        assert data["delivery"]["status"] == "picked_up"
        assert data["orderStatus"] == "picked_up"

    def test_late_update_is_dropped(self, post_status, provider_id):
        post_status({"delivery_id": provider_id, "status": "delivered"})
        resp = post_status({"delivery_id": provider_id, "status": "assigned"})

        assert resp.status_code == 200
        assert resp.json()["applied"] is False
        assert resp.json()["delivery"]["status"] == "delivered"
        assert resp.json()["orderStatus"] == "delivered"

    def test_bad_signature(self, post_status, provider_id, relay):
        resp = post_status({"delivery_id": provider_id, "status": "delivered"}, secret="forged")

        assert resp.status_code == 401
        delivery = relay.storage.deliveries.list_active("tenant-kebab")[0]
        assert delivery.status.value == "created"

    def test_unknown_status_ignored(self, post_status, provider_id):
        resp = post_status({"delivery_id": provider_id, "status": "teleported"})
        assert resp.status_code == 200
        assert resp.json() == {"applied": False, "ignored": True}

    def test_unknown_delivery(self, post_status, provider_id):
        resp = post_status({"delivery_id": "fake-999", "status": "delivered"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "DeliveryNotFound"

    def test_ecommerce_integration_not_accepted(self, post_status, provider_id, ecommerce_integration):
        resp = post_status(
            {"delivery_id": provider_id, "status": "delivered"},
            integration_id=ecommerce_integration.id,
        )
        assert resp.status_code == 404

    def test_status_webhook_logged(self, post_status, provider_id, relay, delivery_integration):
        post_status({"delivery_id": provider_id, "status": "picked_up"})
        newest = relay.webhook_log.list(delivery_integration.id)[0]
        assert newest.event_type == "delivery.status_webhook"
        assert newest.direction == "inbound"
        assert newest.request_payload["payload"]["status"] == "picked_up"
