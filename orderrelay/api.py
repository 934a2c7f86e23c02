"""HTTP routes.

Webhook handlers read the raw body asynchronously (signatures are computed
over the exact bytes) and run the blocking relay work in the threadpool.
Every inbound webhook is recorded in the webhook log, whatever its outcome.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from orderrelay.ecommerce import normalize
from orderrelay.ecommerce.adapters import parse_body
from orderrelay.exceptions import (
    DeliveryAlreadyActive,
    InvalidOrderState,
    InvalidSignature,
    MalformedPayload,
    RelayError,
)
from orderrelay.models import IntegrationType
from orderrelay.webhook_log import INBOUND, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["relay"])

Result = tuple[int, dict[str, Any]]


def _relay(request: Request):
    return request.app.state.relay


def _tenant(request: Request) -> str:
    return request.state.tenant_id


def _int_field(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if value is None or value == "":
        raise MalformedPayload(key)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(key, "expected an integer for") from e


def _audited(
    relay,
    event_type: str,
    body: bytes,
    integration_id: int | None,
    work: Callable[[dict[str, Any]], Result],
) -> Result:
    """Parse *body*, run *work*, and record the inbound exchange either way."""
    start = time.monotonic()
    request_payload: Any = {"body_bytes": len(body)}
    try:
        payload = parse_body(body)
        request_payload = payload
        if integration_id is None and payload.get("ecommerceIntegrationId") is not None:
            integration_id = _int_field(payload, "ecommerceIntegrationId")
        status, response = work(payload)
    except RelayError as e:
        relay.webhook_log.record(
            event_type,
            request_payload,
            {"message": e.message},
            e.status_code,
            (time.monotonic() - start) * 1000,
            e.message,
            integration_id=integration_id,
            direction=INBOUND,
        )
        raise
    except Exception as e:
        relay.webhook_log.record(
            event_type,
            request_payload,
            {"message": "Internal server error"},
            500,
            (time.monotonic() - start) * 1000,
            type(e).__name__,
            integration_id=integration_id,
            direction=INBOUND,
        )
        raise
    relay.webhook_log.record(
        event_type,
        request_payload,
        response,
        status,
        (time.monotonic() - start) * 1000,
        integration_id=integration_id,
        direction=INBOUND,
    )
    return status, response


def _delivery_integration_id(relay, envelope: dict[str, Any], ecommerce, tenant_id: str) -> int:
    if envelope.get("deliveryIntegrationId") is not None:
        return _int_field(envelope, "deliveryIntegrationId")
    configured = ecommerce.settings.get("delivery_integration_id")
    if configured is not None:
        return int(configured)
    provider = envelope.get("deliveryProvider") or ecommerce.settings.get("delivery_provider")
    if provider:
        return relay.registry.resolve(tenant_id, IntegrationType.DELIVERY, str(provider)).id
    raise MalformedPayload("deliveryIntegrationId")


def _relay_order(
    relay,
    body: bytes,
    headers: dict[str, str],
    envelope: dict[str, Any],
    *,
    tenant_id: str | None = None,
    verify: bool = True,
) -> Result:
    """Normalize, store and dispatch one order webhook.

    A redelivered webhook answers 200 with the delivery already on file
    instead of dispatching again.
    """
    ecommerce_id = _int_field(envelope, "ecommerceIntegrationId")
    ecommerce = relay.registry.get(
        ecommerce_id, tenant_id=tenant_id, type=IntegrationType.ECOMMERCE
    )
    order = normalize(
        body,
        ecommerce.provider,
        secret=ecommerce.webhook_secret,
        headers=headers,
        tenant_id=ecommerce.tenant_id,
        integration_id=ecommerce.id,
        verify=verify,
    )
    delivery_id = _delivery_integration_id(relay, envelope, ecommerce, ecommerce.tenant_id)

    order = relay.orchestrator.receive(order)
    try:
        delivery = relay.orchestrator.dispatch(order, delivery_id)
    except DeliveryAlreadyActive as e:
        return 200, {"orderId": order.id, "delivery": e.delivery.summary()}
    except InvalidOrderState:
        latest = relay.orchestrator.latest_delivery(order.id)
        if latest is None:
            raise
        return 200, {"orderId": order.id, "delivery": latest.summary()}
    return 201, {"orderId": order.id, "delivery": delivery.summary()}


# ---------------------------------------------------------------------------
# Webhooks (public, signature-verified)
# ---------------------------------------------------------------------------


@router.post("/webhook/ecommerce-to-delivery")
async def ecommerce_to_delivery(request: Request):
    """Inbound e-commerce order webhook."""
    relay = _relay(request)
    body = await request.body()
    headers = dict(request.headers)

    status, payload = await run_in_threadpool(
        _audited,
        relay,
        "order.received",
        body,
        None,
        lambda envelope: _relay_order(relay, body, headers, envelope),
    )
    return JSONResponse(payload, status_code=status)


@router.post("/webhook/delivery/{integration_id}")
async def delivery_status_webhook(integration_id: int, request: Request):
    """Partner delivery status notification."""
    relay = _relay(request)
    body = await request.body()
    headers = dict(request.headers)

    def work(payload: dict[str, Any]) -> Result:
        integration = relay.registry.get(integration_id, type=IntegrationType.DELIVERY)
        client = relay.registry.client_for(integration)
        if not client.verify_webhook(body, headers):
            raise InvalidSignature(integration.provider)
        update = client.parse_status_webhook(payload)
        if update is None:
            return 200, {"applied": False, "ignored": True}
        result = relay.orchestrator.apply_status_update(integration.id, update)
        return 200, result.to_dict()

    status, payload = await run_in_threadpool(
        _audited, relay, "delivery.status_webhook", body, integration_id, work
    )
    return JSONResponse(payload, status_code=status)


@router.post("/webhook/test-ecommerce-to-delivery")
async def test_ecommerce_to_delivery(request: Request):
    """Dashboard test tool: same flow, authenticated by bearer token, unsigned."""
    relay = _relay(request)
    tenant_id = _tenant(request)
    body = await request.body()
    headers = dict(request.headers)

    status, payload = await run_in_threadpool(
        _audited,
        relay,
        "order.test",
        body,
        None,
        lambda envelope: _relay_order(
            relay, body, headers, envelope, tenant_id=tenant_id, verify=False
        ),
    )
    return JSONResponse(payload, status_code=status)


# ---------------------------------------------------------------------------
# Dashboard queries and actions (bearer auth, tenant-scoped)
# ---------------------------------------------------------------------------


@router.get("/webhooks/{integration_id}/logs")
async def webhook_logs(
    integration_id: int, request: Request, limit: int = 50, cursor: int | None = None
):
    """Newest-first webhook log page for one of the tenant's integrations."""
    relay = _relay(request)
    tenant_id = _tenant(request)

    def work() -> dict[str, Any]:
        relay.registry.get(integration_id, tenant_id=tenant_id, include_inactive=True)
        logs = relay.webhook_log.list(integration_id, limit=limit, cursor=cursor)
        page_size = max(1, min(limit, MAX_PAGE_SIZE))
        next_cursor = logs[-1].id if len(logs) == page_size else None
        return {"logs": [entry.to_dict() for entry in logs], "nextCursor": next_cursor}

    return await run_in_threadpool(work)


@router.get("/deliveries")
async def list_deliveries(request: Request, status: str = "active"):
    """Non-terminal deliveries with pickup/dropoff coordinates, for the map view."""
    if status != "active":
        raise MalformedPayload("status", f"unsupported filter {status!r} for")
    relay = _relay(request)
    tenant_id = _tenant(request)
    deliveries = await run_in_threadpool(relay.orchestrator.list_active_deliveries, tenant_id)
    return {"deliveries": [d.to_dict() for d in deliveries]}


@router.post("/deliveries/{delivery_id}/cancel")
async def cancel_delivery(delivery_id: str, request: Request):
    relay = _relay(request)
    delivery = await run_in_threadpool(
        relay.orchestrator.cancel_delivery, delivery_id, _tenant(request)
    )
    return {"delivery": delivery.to_dict()}


@router.post("/deliveries/{delivery_id}/refresh")
async def refresh_delivery(delivery_id: str, request: Request):
    relay = _relay(request)
    result = await run_in_threadpool(
        relay.orchestrator.refresh_status, delivery_id, _tenant(request)
    )
    return result.to_dict()


@router.post("/orders/{order_id}/prepared")
async def mark_prepared(order_id: str, request: Request):
    relay = _relay(request)
    order = await run_in_threadpool(relay.orchestrator.mark_prepared, order_id, _tenant(request))
    return {"order": order.to_dict()}


@router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, request: Request):
    relay = _relay(request)
    order = await run_in_threadpool(relay.orchestrator.cancel_order, order_id, _tenant(request))
    return {"order": order.to_dict()}


@router.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers["Retry-After"] = str(max(1, math.ceil(retry_after)))
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        {"message": exc.message, "error": exc.code},
        status_code=exc.status_code,
        headers=headers,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"message": "Internal server error"}, status_code=500)
