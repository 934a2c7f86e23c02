"""Persistence: repository protocols plus in-memory and PostgreSQL backends."""

from __future__ import annotations

from orderrelay.config import Settings
from orderrelay.storage.base import (
    DeliveryStore,
    IntegrationStore,
    OrderStore,
    Storage,
    WebhookLogRepository,
)
from orderrelay.storage.memory import memory_storage


def build_storage(settings: Settings) -> Storage:
    """Select the storage backend named by ``settings.storage_backend``."""
    if settings.storage_backend == "postgres":
        from orderrelay.storage.postgres import init_tables, postgres_storage

        init_tables(settings.database_url)
        return postgres_storage(settings.database_url)
    if settings.storage_backend != "memory":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend!r}")
    return memory_storage()


__all__ = [
    "DeliveryStore",
    "IntegrationStore",
    "OrderStore",
    "Storage",
    "WebhookLogRepository",
    "build_storage",
    "memory_storage",
]
