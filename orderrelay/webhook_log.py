"""Webhook Log Store: append-only audit trail of webhook exchanges.

Every inbound e-commerce webhook and every outbound partner call is
recorded here, success or failure.  Payloads are redacted before they are
stored and wrapped in a tagged envelope::

    {"event_type": "delivery.create", "payload": {...}}

Recording is best-effort: a storage failure is logged and never replaces
the outcome of the operation being recorded.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator

from orderrelay.exceptions import RelayError
from orderrelay.models import WebhookLog
from orderrelay.redaction import redact_payload, redact_text
from orderrelay.storage.base import WebhookLogRepository

logger = logging.getLogger(__name__)

INBOUND = "inbound"
OUTBOUND = "outbound"

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


def envelope(event_type: str, payload: Any, secrets: tuple[str, ...] = ()) -> dict[str, Any]:
    return {"event_type": event_type, "payload": redact_payload(payload, secrets)}


class Exchange:
    """Mutable record filled in by the caller inside ``WebhookLogStore.exchange``."""

    def __init__(self, request: Any) -> None:
        self.request = request
        self.response: Any = None
        self.status_code = 200


class WebhookLogStore:
    def __init__(self, repository: WebhookLogRepository) -> None:
        self._repo = repository

    def record(
        self,
        event_type: str,
        request_payload: Any,
        response_payload: Any,
        status_code: int,
        duration_ms: float,
        error: str | None = None,
        *,
        integration_id: int | None,
        direction: str = OUTBOUND,
        secrets: tuple[str, ...] = (),
    ) -> int | None:
        """Append one entry; returns its id, or None when storage failed.

        *secrets* are the integration's own credential values, masked
        wherever they appear in the payloads or the error text.
        """
        if error is not None:
            error = str(redact_payload(error, secrets))
        try:
            entry = self._repo.append(
                integration_id=integration_id,
                direction=direction,
                event_type=event_type,
                request_payload=envelope(event_type, request_payload, secrets),
                response_payload=envelope(event_type, response_payload, secrets),
                status_code=status_code,
                duration_ms=round(duration_ms, 2),
                error=error,
            )
        except Exception:
            logger.exception(
                "Failed to record webhook log (integration=%s event=%s)",
                integration_id,
                event_type,
            )
            return None

        logger.info(
            "WEBHOOK_AUDIT direction=%s integration=%s event=%s status=%d duration_ms=%.1f%s",
            direction,
            integration_id,
            event_type,
            status_code,
            duration_ms,
            f" error={redact_text(error)}" if error else "",
        )
        return entry.id

    def list(
        self, integration_id: int, limit: int = DEFAULT_PAGE_SIZE, cursor: int | None = None
    ) -> list[WebhookLog]:
        """Newest first.  Pass the last id of the previous page as *cursor*."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        return self._repo.list(integration_id, limit, cursor)

    @contextmanager
    def exchange(
        self,
        event_type: str,
        request_payload: Any,
        *,
        integration_id: int | None,
        direction: str = OUTBOUND,
        secrets: tuple[str, ...] = (),
    ) -> Iterator[Exchange]:
        """Time a call and record it whether it returned or raised.

        Exceptions propagate unchanged after being recorded.
        """
        ex = Exchange(request_payload)
        start = time.monotonic()
        try:
            yield ex
        except RelayError as e:
            self.record(
                event_type,
                request_payload,
                {"error": e.code, "message": e.message},
                e.status_code,
                (time.monotonic() - start) * 1000,
                e.message,
                integration_id=integration_id,
                direction=direction,
                secrets=secrets,
            )
            raise
        except Exception as e:
            self.record(
                event_type,
                request_payload,
                {"error": type(e).__name__},
                500,
                (time.monotonic() - start) * 1000,
                str(e) or type(e).__name__,
                integration_id=integration_id,
                direction=direction,
                secrets=secrets,
            )
            raise
        else:
            self.record(
                event_type,
                request_payload,
                ex.response,
                ex.status_code,
                (time.monotonic() - start) * 1000,
                integration_id=integration_id,
                direction=direction,
                secrets=secrets,
            )
