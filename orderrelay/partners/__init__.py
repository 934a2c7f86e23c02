"""Delivery partner clients, one subclass of ``DeliveryPartnerClient`` per provider."""

from __future__ import annotations

from typing import Any

from orderrelay.exceptions import IntegrationNotFound
from orderrelay.models import Integration
from orderrelay.partners.base import DeliveryPartnerClient, Token
from orderrelay.partners.doordash import DoorDashClient
from orderrelay.partners.jetgo import JetGoClient
from orderrelay.partners.uberdirect import UberDirectClient

# Integration.provider_key -> client class
PROVIDERS: dict[str, type[DeliveryPartnerClient]] = {
    "uberdirect": UberDirectClient,
    "ubereats": UberDirectClient,
    "uber": UberDirectClient,
    "jetgo": JetGoClient,
    "doordash": DoorDashClient,
}


def build_client(integration: Integration, **kwargs: Any) -> DeliveryPartnerClient:
    cls = PROVIDERS.get(integration.provider_key)
    if cls is None:
        raise IntegrationNotFound(
            f"No delivery partner client for provider {integration.provider!r}"
        )
    return cls(integration, **kwargs)


__all__ = [
    "PROVIDERS",
    "DeliveryPartnerClient",
    "DoorDashClient",
    "JetGoClient",
    "Token",
    "UberDirectClient",
    "build_client",
]
