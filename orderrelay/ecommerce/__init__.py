"""Inbound e-commerce webhooks: signature verification and order normalization."""

from orderrelay.ecommerce.adapters import canonical_platform, normalize
from orderrelay.ecommerce.verification import verify_webhook

__all__ = ["canonical_platform", "normalize", "verify_webhook"]
