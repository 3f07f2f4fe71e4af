"""Security utilities — webhook signatures and API key validation."""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Mapping


# ── Webhook signatures ───────────────────────────────────────
def twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Base64 HMAC-SHA1 of the full callback URL followed by the sorted form params."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def body_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def signatures_match(provided: str | None, expected: str) -> bool:
    """Constant-time comparison; a missing signature never matches."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.strip().encode(), expected.encode())


# ── API keys ─────────────────────────────────────────────────
def validate_api_key(provided: str, expected: str) -> bool:
    """Constant-time comparison for API keys."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())
