"""PostgreSQL repositories over psycopg 3.

Orders, deliveries and integrations are stored as JSONB documents keyed by
id, with the columns the relay queries on (tenant, provider id, status)
lifted out beside them.  Webhook logs are plain rows with an
auto-incrementing id that doubles as the pagination cursor.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row

from orderrelay.models import (
    Delivery,
    Integration,
    IntegrationType,
    Order,
    WebhookLog,
    utcnow,
)
from orderrelay.storage.base import Storage

logger = logging.getLogger(__name__)


def _connect(db_url: str) -> psycopg.Connection:
    return psycopg.connect(db_url, autocommit=True, row_factory=dict_row)


def _doc(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else json.loads(value)


def init_tables(db_url: str) -> None:
    """Create relay tables if they don't exist.  Idempotent."""
    with _connect(db_url) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS relay_integrations (
                id          SERIAL PRIMARY KEY,
                tenant_id   TEXT NOT NULL,
                provider    TEXT NOT NULL,
                type        TEXT NOT NULL,
                active      BOOLEAN NOT NULL DEFAULT TRUE,
                data        JSONB NOT NULL,
                created_at  TIMESTAMPTZ DEFAULT now(),
                updated_at  TIMESTAMPTZ DEFAULT now()
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS relay_orders (
                id              TEXT PRIMARY KEY,
                tenant_id       TEXT NOT NULL,
                source_platform TEXT NOT NULL,
                external_id     TEXT NOT NULL,
                status          TEXT NOT NULL,
                data            JSONB NOT NULL,
                created_at      TIMESTAMPTZ DEFAULT now(),
                updated_at      TIMESTAMPTZ DEFAULT now(),
                UNIQUE (tenant_id, source_platform, external_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS relay_deliveries (
                id                   TEXT PRIMARY KEY,
                order_id             TEXT NOT NULL REFERENCES relay_orders(id),
                tenant_id            TEXT NOT NULL,
                integration_id       INT,
                provider_delivery_id TEXT NOT NULL,
                status               TEXT NOT NULL,
                data                 JSONB NOT NULL,
                created_at           TIMESTAMPTZ DEFAULT now(),
                updated_at           TIMESTAMPTZ DEFAULT now()
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_relay_deliveries_provider
            ON relay_deliveries (integration_id, provider_delivery_id)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS relay_webhook_logs (
                id               BIGSERIAL PRIMARY KEY,
                integration_id   INT,
                direction        TEXT NOT NULL,
                event_type       TEXT NOT NULL,
                request_payload  JSONB NOT NULL DEFAULT '{}',
                response_payload JSONB NOT NULL DEFAULT '{}',
                status_code      INT NOT NULL,
                duration_ms      REAL NOT NULL DEFAULT 0,
                error            TEXT,
                created_at       TIMESTAMPTZ DEFAULT now()
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_relay_webhook_logs_integration
            ON relay_webhook_logs (integration_id, id DESC)
        """)
    logger.info("Relay tables initialized")


class PostgresOrderStore:
    def __init__(self, db_url: str) -> None:
        self._db_url = db_url

    def add(self, order: Order) -> tuple[Order, bool]:
        with _connect(self._db_url) as conn:
            row = conn.execute(
                """INSERT INTO relay_orders
                   (id, tenant_id, source_platform, external_id, status, data)
                   VALUES (%s, %s, %s, %s, %s, %s)
                   ON CONFLICT (tenant_id, source_platform, external_id) DO NOTHING
                   RETURNING id""",
                (
                    order.id,
                    order.tenant_id,
                    order.source_platform,
                    order.external_id,
                    order.status.value,
                    json.dumps(order.to_dict()),
                ),
            ).fetchone()
            if row:
                return order, True
            existing = conn.execute(
                """SELECT data FROM relay_orders
                   WHERE tenant_id = %s AND source_platform = %s AND external_id = %s""",
                (order.tenant_id, order.source_platform, order.external_id),
            ).fetchone()
        return Order.from_dict(_doc(existing["data"])), False

    def get(self, order_id: str) -> Order | None:
        with _connect(self._db_url) as conn:
            row = conn.execute(
                "SELECT data FROM relay_orders WHERE id = %s", (order_id,)
            ).fetchone()
        return Order.from_dict(_doc(row["data"])) if row else None

    def save(self, order: Order) -> None:
        order.updated_at = utcnow()
        with _connect(self._db_url) as conn:
            conn.execute(
                """UPDATE relay_orders SET status = %s, data = %s, updated_at = now()
                   WHERE id = %s""",
                (order.status.value, json.dumps(order.to_dict()), order.id),
            )


class PostgresDeliveryStore:
    def __init__(self, db_url: str) -> None:
        self._db_url = db_url

    def add(self, delivery: Delivery) -> None:
        with _connect(self._db_url) as conn:
            conn.execute(
                """INSERT INTO relay_deliveries
                   (id, order_id, tenant_id, integration_id, provider_delivery_id, status, data)
                   VALUES (%s, %s, %s, %s, %s, %s, %s)""",
                (
                    delivery.id,
                    delivery.order_id,
                    delivery.tenant_id,
                    delivery.integration_id,
                    delivery.provider_delivery_id,
                    delivery.status.value,
                    json.dumps(delivery.to_dict()),
                ),
            )

    def get(self, delivery_id: str) -> Delivery | None:
        with _connect(self._db_url) as conn:
            row = conn.execute(
                "SELECT data FROM relay_deliveries WHERE id = %s", (delivery_id,)
            ).fetchone()
        return Delivery.from_dict(_doc(row["data"])) if row else None

    def save(self, delivery: Delivery) -> None:
        delivery.updated_at = utcnow()
        with _connect(self._db_url) as conn:
            conn.execute(
                """UPDATE relay_deliveries SET status = %s, data = %s, updated_at = now()
                   WHERE id = %s""",
                (delivery.status.value, json.dumps(delivery.to_dict()), delivery.id),
            )

    def find_by_provider_id(
        self, integration_id: int, provider_delivery_id: str
    ) -> Delivery | None:
        with _connect(self._db_url) as conn:
            row = conn.execute(
                """SELECT data FROM relay_deliveries
                   WHERE integration_id = %s AND provider_delivery_id = %s
                   ORDER BY created_at DESC LIMIT 1""",
                (integration_id, provider_delivery_id),
            ).fetchone()
        return Delivery.from_dict(_doc(row["data"])) if row else None

    def list_for_order(self, order_id: str) -> list[Delivery]:
        with _connect(self._db_url) as conn:
            rows = conn.execute(
                "SELECT data FROM relay_deliveries WHERE order_id = %s ORDER BY created_at",
                (order_id,),
            ).fetchall()
        return [Delivery.from_dict(_doc(r["data"])) for r in rows]

    def list_active(self, tenant_id: str) -> list[Delivery]:
        with _connect(self._db_url) as conn:
            rows = conn.execute(
                """SELECT data FROM relay_deliveries
                   WHERE tenant_id = %s AND status NOT IN ('delivered', 'canceled')
                   ORDER BY created_at""",
                (tenant_id,),
            ).fetchall()
        return [Delivery.from_dict(_doc(r["data"])) for r in rows]


class PostgresIntegrationStore:
    def __init__(self, db_url: str) -> None:
        self._db_url = db_url

    @staticmethod
    def _load(row: dict[str, Any]) -> Integration:
        return Integration.from_dict({**_doc(row["data"]), "id": row["id"]})

    def add(self, integration: Integration) -> Integration:
        with _connect(self._db_url) as conn:
            row = conn.execute(
                """INSERT INTO relay_integrations (tenant_id, provider, type, active, data)
                   VALUES (%s, %s, %s, %s, %s)
                   RETURNING id""",
                (
                    integration.tenant_id,
                    integration.provider,
                    integration.type.value,
                    integration.active,
                    json.dumps(integration.to_dict(include_secrets=True)),
                ),
            ).fetchone()
        integration.id = row["id"]
        return integration

    def get(self, integration_id: int) -> Integration | None:
        with _connect(self._db_url) as conn:
            row = conn.execute(
                "SELECT id, data FROM relay_integrations WHERE id = %s", (integration_id,)
            ).fetchone()
        return self._load(row) if row else None

    def save(self, integration: Integration) -> None:
        integration.updated_at = utcnow()
        with _connect(self._db_url) as conn:
            conn.execute(
                """UPDATE relay_integrations
                   SET provider = %s, active = %s, data = %s, updated_at = now()
                   WHERE id = %s""",
                (
                    integration.provider,
                    integration.active,
                    json.dumps(integration.to_dict(include_secrets=True)),
                    integration.id,
                ),
            )

    def find(
        self, tenant_id: str, type: IntegrationType, provider: str | None = None
    ) -> list[Integration]:
        with _connect(self._db_url) as conn:
            rows = conn.execute(
                """SELECT id, data FROM relay_integrations
                   WHERE tenant_id = %s AND type = %s
                   ORDER BY id""",
                (tenant_id, type.value),
            ).fetchall()
        found = [self._load(r) for r in rows]
        if provider is not None:
            wanted = provider.lower().replace(" ", "").replace("_", "")
            found = [i for i in found if i.provider_key == wanted]
        return found


class PostgresWebhookLogRepository:
    def __init__(self, db_url: str) -> None:
        self._db_url = db_url

    @staticmethod
    def _load(row: dict[str, Any]) -> WebhookLog:
        return WebhookLog(
            id=row["id"],
            integration_id=row["integration_id"],
            direction=row["direction"],
            event_type=row["event_type"],
            request_payload=_doc(row["request_payload"]),
            response_payload=_doc(row["response_payload"]),
            status_code=row["status_code"],
            duration_ms=float(row["duration_ms"]),
            error=row["error"],
            created_at=row["created_at"],
        )

    def append(
        self,
        *,
        integration_id: int | None,
        direction: str,
        event_type: str,
        request_payload: dict[str, Any],
        response_payload: dict[str, Any],
        status_code: int,
        duration_ms: float,
        error: str | None,
    ) -> WebhookLog:
        with _connect(self._db_url) as conn:
            row = conn.execute(
                """INSERT INTO relay_webhook_logs
                   (integration_id, direction, event_type, request_payload,
                    response_payload, status_code, duration_ms, error)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                   RETURNING *""",
                (
                    integration_id,
                    direction,
                    event_type,
                    json.dumps(request_payload, default=str),
                    json.dumps(response_payload, default=str),
                    status_code,
                    duration_ms,
                    error,
                ),
            ).fetchone()
        return self._load(row)

    def list(
        self, integration_id: int, limit: int, cursor: int | None = None
    ) -> list[WebhookLog]:
        with _connect(self._db_url) as conn:
            if cursor is not None:
                rows = conn.execute(
                    """SELECT * FROM relay_webhook_logs
                       WHERE integration_id = %s AND id < %s
                       ORDER BY id DESC LIMIT %s""",
                    (integration_id, cursor, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT * FROM relay_webhook_logs
                       WHERE integration_id = %s
                       ORDER BY id DESC LIMIT %s""",
                    (integration_id, limit),
                ).fetchall()
        return [self._load(r) for r in rows]


def postgres_storage(db_url: str) -> Storage:
    return Storage(
        orders=PostgresOrderStore(db_url),
        deliveries=PostgresDeliveryStore(db_url),
        integrations=PostgresIntegrationStore(db_url),
        webhook_logs=PostgresWebhookLogRepository(db_url),
    )
