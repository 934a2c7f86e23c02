"""Webhook signature verification: constant-time HMAC for each platform.

Security contract:
- All verifications use hmac.compare_digest() (constant-time, no timing attacks)
- Verification failure -> InvalidSignature, no payload processing
- Missing secret -> verification always fails (fail-closed)
- Secrets come from the tenant's ecommerce Integration, never the environment
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def _digest(secret: str, body: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()


def verify_shopify(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify Shopify webhook HMAC-SHA256 signature.

    Shopify sends: X-Shopify-Hmac-SHA256 header (base64-encoded HMAC-SHA256).
    """
    if not secret:
        logger.warning("Shopify webhook secret not configured, rejecting webhook")
        return False
    if not signature_header:
        return False

    computed_b64 = base64.b64encode(_digest(secret, body)).decode("utf-8")
    return hmac.compare_digest(computed_b64, signature_header.strip())


def verify_woocommerce(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify WooCommerce webhook signature.

    WooCommerce sends: X-WC-Webhook-Signature header, base64 HMAC-SHA256 of
    the raw body keyed with the webhook's secret.
    """
    if not secret:
        logger.warning("WooCommerce webhook secret not configured, rejecting webhook")
        return False
    if not signature_header:
        return False

    computed_b64 = base64.b64encode(_digest(secret, body)).decode("utf-8")
    return hmac.compare_digest(computed_b64, signature_header.strip())


def verify_hex(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify a hex HMAC-SHA256 signature, optionally prefixed with ``sha256=``.

    Used by custom storefronts posting the relay's own webhook shape.
    """
    if not secret:
        logger.warning("Webhook secret not configured, rejecting webhook")
        return False
    if not signature_header:
        return False

    signature = signature_header.strip()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    computed = _digest(secret, body).hex()
    return hmac.compare_digest(computed, signature.lower())


# Platform -> verifier mapping
VERIFIERS = {
    "shopify": verify_shopify,
    "woocommerce": verify_woocommerce,
    "custom": verify_hex,
}

# Platform -> signature header (lowercase)
SIGNATURE_HEADERS = {
    "shopify": "x-shopify-hmac-sha256",
    "woocommerce": "x-wc-webhook-signature",
    "custom": "x-webhook-signature",
}


def verify_webhook(platform: str, body: bytes, headers: dict[str, str], secret: str) -> bool:
    """Verify webhook signature for a given platform.

    Args:
        platform: One of 'shopify', 'woocommerce', 'custom'
        body: Raw request body
        headers: Request headers (any case)
        secret: The ecommerce integration's webhook secret

    Returns:
        True if signature is valid
    """
    verifier = VERIFIERS.get(platform)
    if not verifier:
        logger.warning("Unknown webhook platform: %s", platform)
        return False

    lowered = {k.lower(): v for k, v in headers.items()}
    signature = lowered.get(SIGNATURE_HEADERS[platform])
    return verifier(body, signature, secret)
