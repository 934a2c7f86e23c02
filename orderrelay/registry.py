"""Credential/Integration registry.

Resolves the tenant-scoped ``Integration`` for an inbound webhook or a
dispatch, and hands out one partner client per integration.  Lookups are
cached for ``cache_ttl`` seconds; this is the only cache shared across
tenants, and ``invalidate()`` is called on every credential rotation or
deactivation so a stale secret is never served.

Partner clients are keyed by integration id *and* a fingerprint of the
credentials, so each tenant has its own token cache and a rotation builds a
fresh client instead of reusing a token minted with the old credentials.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from typing import Any, Callable

from orderrelay.exceptions import IntegrationInactive, IntegrationNotFound
from orderrelay.models import Integration, IntegrationType
from orderrelay.partners import DeliveryPartnerClient, build_client
from orderrelay.storage.base import IntegrationStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Integration], DeliveryPartnerClient]


def credential_fingerprint(integration: Integration) -> str:
    material = json.dumps(
        {
            "credentials": integration.credentials,
            "environment": integration.environment.value,
            "webhook_secret": integration.webhook_secret,
        },
        sort_keys=True,
    )
    return hashlib.sha256(material.encode()).hexdigest()[:16]


class IntegrationRegistry:
    def __init__(
        self,
        store: IntegrationStore,
        *,
        cache_ttl: float = 60.0,
        client_factory: ClientFactory | None = None,
        client_options: dict[str, Any] | None = None,
    ) -> None:
        self._store = store
        self._ttl = cache_ttl
        self._options = client_options or {}
        self._factory = client_factory or (lambda i: build_client(i, **self._options))
        self._lock = threading.Lock()
        self._by_id: dict[int, tuple[float, Integration | None]] = {}
        self._resolved: dict[tuple[str, str, str], tuple[float, int | None]] = {}
        self._clients: dict[int, tuple[str, DeliveryPartnerClient]] = {}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _load(self, integration_id: int) -> Integration | None:
        now = time.monotonic()
        with self._lock:
            cached = self._by_id.get(integration_id)
            if cached is not None and now - cached[0] < self._ttl:
                return cached[1]
        integration = self._store.get(integration_id)
        with self._lock:
            self._by_id[integration_id] = (now, integration)
        return integration

    def get(
        self,
        integration_id: int,
        *,
        tenant_id: str | None = None,
        type: IntegrationType | None = None,
        include_inactive: bool = False,
    ) -> Integration:
        """Fetch an integration by id, enforcing tenant, type and active flag.

        Raises:
            IntegrationNotFound: no such id, or it belongs to another tenant or type.
            IntegrationInactive: the integration exists but was deactivated.
        """
        integration = self._load(integration_id)
        if integration is None or (tenant_id is not None and integration.tenant_id != tenant_id):
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        if type is not None and integration.type is not type:
            raise IntegrationNotFound(
                f"Integration {integration_id} is not a {type.value} integration"
            )
        if not integration.active and not include_inactive:
            raise IntegrationInactive(f"Integration {integration_id} is inactive")
        return integration

    def resolve(self, tenant_id: str, type: IntegrationType, provider: str) -> Integration:
        """Return the tenant's active integration of *type* for *provider*."""
        key = (tenant_id, type.value, provider.lower().replace(" ", "").replace("_", ""))
        now = time.monotonic()
        with self._lock:
            cached = self._resolved.get(key)
        if cached is not None and now - cached[0] < self._ttl and cached[1] is not None:
            try:
                return self.get(cached[1], tenant_id=tenant_id, type=type)
            except (IntegrationNotFound, IntegrationInactive):
                pass

        active = [i for i in self._store.find(tenant_id, type, provider) if i.active]
        if not active:
            raise IntegrationNotFound(
                f"No active {type.value} integration for provider {provider!r}"
            )
        integration = active[0]
        with self._lock:
            self._resolved[key] = (now, integration.id)
            self._by_id[integration.id] = (now, integration)
        return integration

    def invalidate(self, integration_id: int | None = None) -> None:
        """Drop cached lookups (all of them when *integration_id* is None)."""
        with self._lock:
            if integration_id is None:
                self._by_id.clear()
            else:
                self._by_id.pop(integration_id, None)
            self._resolved.clear()

    # ------------------------------------------------------------------
    # Tenant configuration
    # ------------------------------------------------------------------

    def register(self, integration: Integration) -> Integration:
        stored = self._store.add(integration)
        self.invalidate(stored.id)
        logger.info(
            "Registered %s integration %s for tenant %s (%s)",
            stored.type.value,
            stored.id,
            stored.tenant_id,
            stored.provider,
        )
        return stored

    def rotate(
        self,
        integration_id: int,
        *,
        credentials: dict[str, str] | None = None,
        webhook_secret: str | None = None,
    ) -> Integration:
        integration = self._store.get(integration_id)
        if integration is None:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        if credentials is not None:
            integration.credentials = dict(credentials)
        if webhook_secret is not None:
            integration.webhook_secret = webhook_secret
        self._store.save(integration)
        self.invalidate(integration_id)
        self._drop_client(integration_id)
        logger.info("Rotated credentials for integration %s", integration_id)
        return integration

    def deactivate(self, integration_id: int) -> Integration:
        integration = self._store.get(integration_id)
        if integration is None:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        integration.active = False
        self._store.save(integration)
        self.invalidate(integration_id)
        self._drop_client(integration_id)
        logger.info("Deactivated integration %s", integration_id)
        return integration

    # ------------------------------------------------------------------
    # Partner clients
    # ------------------------------------------------------------------

    def client_for(self, integration: Integration) -> DeliveryPartnerClient:
        fingerprint = credential_fingerprint(integration)
        stale: DeliveryPartnerClient | None = None
        with self._lock:
            cached = self._clients.get(integration.id)
            if cached is not None and cached[0] == fingerprint:
                return cached[1]
            if cached is not None:
                stale = cached[1]
            client = self._factory(integration)
            self._clients[integration.id] = (fingerprint, client)
        if stale is not None:
            stale.close()
        return client

    def _drop_client(self, integration_id: int) -> None:
        with self._lock:
            cached = self._clients.pop(integration_id, None)
        if cached is not None:
            cached[1].close()

    def close(self) -> None:
        with self._lock:
            clients = [c for _, c in self._clients.values()]
            self._clients.clear()
        for client in clients:
            client.close()
