"""Delivery partner client base: auth caching, retries, error mapping.

Every provider client shares one contract:

- ``authenticate()`` caches the bearer token with its expiry and refreshes it
  only when absent or expired (never on every call).
- Every network call has a per-call timeout and goes through
  ``retry_with_backoff``: timeouts, connection errors, 5xx and 429 are
  retried; other 4xx responses are raised immediately.
- Only terminal outcomes leave the client, as ``orderrelay.exceptions``
  errors.  A 401 on an API call drops the cached token and re-authenticates
  once before giving up.

Token state lives on the client instance, and the registry keeps one client
per integration, so tenants never share tokens.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar

import httpx

from orderrelay.exceptions import (
    AuthFailure,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
    QuoteExpired,
    RateLimited,
    RelayError,
)
from orderrelay.models import (
    Delivery,
    DeliveryQuote,
    DeliveryStatus,
    Environment,
    Integration,
    LineItem,
    Location,
    StatusReport,
    StatusUpdate,
    utcnow,
)
from orderrelay.retry import parse_retry_after, retry_with_backoff

logger = logging.getLogger(__name__)

# Refresh tokens this long before the provider-reported expiry
TOKEN_REFRESH_LEEWAY = timedelta(seconds=60)


@dataclass(frozen=True)
class Token:
    """A cached bearer token."""

    value: str
    expires_at: datetime

    def is_valid(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) < self.expires_at - TOKEN_REFRESH_LEEWAY

    def __repr__(self) -> str:
        return f"Token(value='***', expires_at={self.expires_at.isoformat()})"


def parse_time(value: Any) -> datetime | None:
    """Parse a provider ISO-8601 timestamp (``Z`` suffix allowed)."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def major_to_cents(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except InvalidOperation:
        return None


def location_payload(location: Location) -> dict[str, Any]:
    return {
        "name": location.name,
        "address": location.address,
        "phone_number": location.phone,
        "latitude": location.latitude,
        "longitude": location.longitude,
        "instructions": location.instructions,
    }


class DeliveryPartnerClient:
    """Uniform interface over one delivery partner's HTTP API.

    Subclasses provide the base URLs, the status vocabulary, and the
    ``_fetch_token`` / request-building / response-parsing hooks.
    """

    provider: ClassVar[str] = ""
    live_base_url: ClassVar[str] = ""
    sandbox_base_url: ClassVar[str] = ""
    required_credentials: ClassVar[tuple[str, ...]] = ()
    signature_header: ClassVar[str] = ""
    status_map: ClassVar[dict[str, DeliveryStatus]] = {}

    def __init__(
        self,
        integration: Integration,
        *,
        timeout: float = 10.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        jitter: float = 0.3,
        transport: httpx.BaseTransport | None = None,
        base_url: str | None = None,
    ) -> None:
        self.integration = integration
        if base_url is None:
            base_url = (
                self.sandbox_base_url
                if integration.environment is Environment.SANDBOX
                else self.live_base_url
            )
        self.base_url = base_url
        self._http = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._token: Token | None = None
        self._token_lock = threading.Lock()
        self._send = retry_with_backoff(
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )(self._send_once)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(integration={self.integration.id}, "
            f"environment={self.integration.environment.value})"
        )

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self) -> Token:
        """Return the cached token, fetching a new one only when absent or expired."""
        with self._token_lock:
            if self._token is not None and self._token.is_valid():
                return self._token
            self._check_credentials()
            logger.info(
                "Authenticating with %s (integration=%s)", self.provider, self.integration.id
            )
            self._token = self._fetch_token()
            return self._token

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None

    def _check_credentials(self) -> None:
        missing = [k for k in self.required_credentials if not self.integration.credentials.get(k)]
        if missing:
            raise AuthFailure(
                f"{self.provider} integration {self.integration.id} is missing credential "
                f"{missing[0]!r}"
            )

    def _fetch_token(self) -> Token:
        raise NotImplementedError

    def _auth_headers(self, token: Token) -> dict[str, str]:
        return {"Authorization": f"Bearer {token.value}"}

    def _request_token(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Call the provider's token endpoint; rejections become ``AuthFailure``."""
        try:
            response = self._send(method, url, **kwargs)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if 400 <= status < 500 and status != 429:
                raise AuthFailure(
                    f"{self.provider} rejected credentials (HTTP {status})"
                ) from e
            raise self._map_status_error(e, "authenticate") from e
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{self.provider} authentication timed out") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"{self.provider} authentication failed: {type(e).__name__}") from e
        return self._json(response)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send_once(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = self._http.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    def _call(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Authenticated API call with retries and error mapping."""
        for attempt in range(2):
            token = self.authenticate()
            try:
                response = self._send(method, path, json=json, headers=self._auth_headers(token))
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 401 and attempt == 0:
                    logger.info("%s returned 401 for %s; refreshing token", self.provider, operation)
                    self.invalidate_token()
                    continue
                raise self._map_status_error(e, operation) from e
            except httpx.TimeoutException as e:
                raise ProviderTimeout(f"{self.provider} {operation} timed out") from e
            except httpx.TransportError as e:
                raise ProviderUnavailable(
                    f"{self.provider} {operation} failed: {type(e).__name__}"
                ) from e
            return self._json(response)
        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    def _map_status_error(self, e: httpx.HTTPStatusError, operation: str) -> RelayError:
        status = e.response.status_code
        body = self._json(e.response)
        message = self._error_message(body) or e.response.reason_phrase

        if status in (401, 403):
            return AuthFailure(f"{self.provider} rejected credentials during {operation}")
        if status == 429:
            return RateLimited(
                f"{self.provider} rate limited {operation}",
                retry_after=parse_retry_after(e.response),
            )
        if status >= 500:
            return ProviderUnavailable(f"{self.provider} {operation} failed with HTTP {status}")

        classified = self._classify_rejection(operation, status, self._error_code(body), message)
        if classified is not None:
            return classified
        return ProviderRejected(f"{self.provider} rejected {operation}: {message}", status)

    def _classify_rejection(
        self, operation: str, status: int, code: str, message: str
    ) -> RelayError | None:
        """Map provider-specific 4xx codes onto domain errors."""
        return None

    @staticmethod
    def _error_code(body: dict[str, Any]) -> str:
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("code") or "").lower()
        return str(body.get("code") or err or "").lower()

    @staticmethod
    def _error_message(body: dict[str, Any]) -> str:
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or "")
        return str(body.get("message") or "")

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def get_quote(
        self,
        pickup: Location,
        dropoff: Location,
        order_value: int,
        currency: str,
        *,
        reference: str | None = None,
    ) -> DeliveryQuote:
        raise NotImplementedError

    def create_delivery(
        self,
        quote: DeliveryQuote | None,
        pickup: Location,
        dropoff: Location,
        items: list[LineItem],
        *,
        order_value: int | None = None,
        currency: str = "USD",
        reference: str | None = None,
    ) -> Delivery:
        """Create a delivery, refusing locally when *quote* has already expired."""
        if quote is not None and quote.is_expired():
            raise QuoteExpired(quote.id)
        return self._create_delivery(
            quote,
            pickup,
            dropoff,
            items,
            order_value=order_value if order_value is not None else sum(i.subtotal for i in items),
            currency=currency,
            reference=reference,
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
        raise NotImplementedError

    def get_status(self, provider_delivery_id: str) -> StatusReport:
        raise NotImplementedError

    def cancel(self, provider_delivery_id: str) -> bool:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Status vocabulary and inbound notifications
    # ------------------------------------------------------------------

    @classmethod
    def map_status(cls, raw_status: str | None) -> DeliveryStatus | None:
        if not raw_status:
            return None
        status = cls.status_map.get(str(raw_status).strip().lower())
        if status is None:
            logger.warning("Unknown %s delivery status: %s", cls.provider, raw_status)
        return status

    def verify_webhook(self, body: bytes, headers: dict[str, str]) -> bool:
        """Hex HMAC-SHA256 of the raw body under the integration's webhook secret."""
        secret = self.integration.webhook_secret
        if not secret:
            logger.warning(
                "%s webhook secret not set for integration %s, rejecting",
                self.provider,
                self.integration.id,
            )
            return False
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(self.signature_header)
        if not signature:
            return False
        computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(computed, signature.strip().lower())

    def parse_status_webhook(self, payload: dict[str, Any]) -> StatusUpdate | None:
        raise NotImplementedError
