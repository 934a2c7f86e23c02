"""Relay error taxonomy.

Every error the relay surfaces to a webhook caller or dashboard derives from
``RelayError`` and carries the HTTP status it maps to.  Partner clients raise
only the terminal errors below; transient network failures are retried
inside ``orderrelay.retry`` and converted here once retries are exhausted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from orderrelay.models import Delivery

__all__ = [
    "AlreadyInTransit",
    "AuthFailure",
    "DeliveryAlreadyActive",
    "DeliveryNotFound",
    "DispatchInProgress",
    "IntegrationInactive",
    "IntegrationNotFound",
    "InvalidOrderState",
    "InvalidSignature",
    "MalformedPayload",
    "OrderNotFound",
    "ProviderRejected",
    "ProviderTimeout",
    "ProviderUnavailable",
    "QuoteExpired",
    "QuoteUnavailable",
    "RateLimited",
    "RelayError",
]


# ─────────────────────────────────────────────────────────────────────────────
# Base
# ─────────────────────────────────────────────────────────────────────────────


class RelayError(Exception):
    """Base exception for relay errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return type(self).__name__


# ─────────────────────────────────────────────────────────────────────────────
# Client input (never retried)
# ─────────────────────────────────────────────────────────────────────────────


class InvalidSignature(RelayError):
    """Raised when an inbound webhook signature does not verify."""

    status_code = 401

    def __init__(self, platform: str) -> None:
        super().__init__(f"Invalid webhook signature for {platform}")
        self.platform = platform


class MalformedPayload(RelayError):
    """Raised when a payload lacks a required field or has a bad value."""

    status_code = 400

    def __init__(self, field: str, reason: str = "missing required field") -> None:
        super().__init__(f"Malformed payload: {reason} '{field}'")
        self.field = field
        self.reason = reason


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────


class IntegrationNotFound(RelayError):
    """Raised when no integration matches the lookup."""

    status_code = 404


class IntegrationInactive(RelayError):
    """Raised when the matched integration has been deactivated."""

    status_code = 409


# ─────────────────────────────────────────────────────────────────────────────
# Orchestration
# ─────────────────────────────────────────────────────────────────────────────


class DispatchInProgress(RelayError):
    """Raised when another dispatch for the same order is in flight."""

    status_code = 409

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Dispatch already in progress for order {order_id}")
        self.order_id = order_id


class DeliveryAlreadyActive(RelayError):
    """Raised when the order already has a non-terminal delivery."""

    status_code = 409

    def __init__(self, delivery: Delivery) -> None:
        super().__init__(
            f"Order {delivery.order_id} already has active delivery {delivery.id}"
        )
        self.delivery = delivery


class InvalidOrderState(RelayError):
    """Raised when a transition is not allowed from the order's status."""

    status_code = 409


class OrderNotFound(RelayError):
    status_code = 404


class DeliveryNotFound(RelayError):
    status_code = 404


# ─────────────────────────────────────────────────────────────────────────────
# Delivery partner outcomes
# ─────────────────────────────────────────────────────────────────────────────


class AuthFailure(RelayError):
    """Raised when the partner rejects the integration's credentials."""

    status_code = 502


class QuoteUnavailable(RelayError):
    """Raised when the partner cannot serve the requested route."""

    status_code = 422


class QuoteExpired(RelayError):
    """Raised when a delivery is created from a quote past its expiry."""

    status_code = 422

    def __init__(self, quote_id: str) -> None:
        super().__init__(f"Delivery quote {quote_id} has expired")
        self.quote_id = quote_id


class AlreadyInTransit(RelayError):
    """Raised when the partner refuses cancellation after pickup."""

    status_code = 409


class ProviderRejected(RelayError):
    """Raised for partner 4xx validation errors (not retried)."""

    status_code = 422

    def __init__(self, message: str, provider_status: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class RateLimited(RelayError):
    """Raised when the partner keeps throttling after the retry budget."""

    status_code = 429

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailable(RelayError):
    """Raised when transient partner failures exhaust the retry budget."""

    status_code = 502


class ProviderTimeout(ProviderUnavailable):
    """Raised when partner calls keep timing out."""

    status_code = 504
