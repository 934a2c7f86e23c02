"""Secret redaction for anything the relay persists or logs.

Two passes: values stored under secret-like keys are replaced wholesale,
and free-text strings are scrubbed for bearer tokens and ``key=value``
secrets that slipped into error messages or provider responses.
"""

from __future__ import annotations

import re
from typing import Any

__all__ = [
    "API_KEY_PATTERNS",
    "REDACTED",
    "SECRET_KEY_PATTERN",
    "redact_payload",
    "redact_text",
]

REDACTED = "[REDACTED]"

# Keys whose values are credential material regardless of content
SECRET_KEY_PATTERN: re.Pattern[str] = re.compile(
    r"(secret|api[_\-]?key|token|passw(or)?d|authorization|signature|"
    r"client[_\-]?secret|signing[_\-]?secret|credentials|hmac|x-shopify-hmac)",
    re.IGNORECASE,
)

_API_KEY_BEARER_PAT: re.Pattern[str] = re.compile(
    r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE
)
_API_KEY_GENERIC_PAT: re.Pattern[str] = re.compile(
    r"(?:api_key|api-key|apikey|secret|token|passwd|password)[=:\s\"']+[A-Za-z0-9._\-=+/]{8,}",
    re.IGNORECASE,
)
API_KEY_PATTERNS: tuple[re.Pattern[str], ...] = (
    _API_KEY_BEARER_PAT,
    _API_KEY_GENERIC_PAT,
)


def redact_text(text: str) -> str:
    """Mask bearer tokens and inline ``secret=value`` pairs in *text*."""
    for pattern in API_KEY_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def redact_payload(obj: Any, extra_values: tuple[str, ...] = ()) -> Any:
    """Return a redacted deep copy of JSON-like *obj*.

    Parameters
    ----------
    obj:
        dict / list / scalar tree.
    extra_values:
        Known secret strings (e.g. the integration's own credentials) to
        mask wherever they appear verbatim.
    """
    secrets = tuple(v for v in extra_values if v and len(v) >= 4)
    return _redact(obj, secrets)


def _redact(obj: Any, secrets: tuple[str, ...]) -> Any:
    if isinstance(obj, dict):
        out: dict[str, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and SECRET_KEY_PATTERN.search(key) and value not in (None, ""):
                out[key] = REDACTED
            else:
                out[key] = _redact(value, secrets)
        return out
    if isinstance(obj, (list, tuple)):
        return [_redact(v, secrets) for v in obj]
    if isinstance(obj, str):
        text = obj
        for secret in secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return redact_text(text)
    return obj
