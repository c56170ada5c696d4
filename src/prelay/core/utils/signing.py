"""Webhook payload serialization and HMAC-SHA256 signatures.

Receivers verify a delivery by recomputing the HMAC over the exact request
body with the shared secret and comparing it to the `X-Signature` header.
"""

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_PREFIX = "sha256="


def canonical_json(payload: Any) -> str:
    """Deterministic JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _to_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def generate_signature(payload: bytes | str, secret: str) -> str:
    digest = hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(payload: bytes | str, signature: str, secret: str) -> bool:
    """Constant-time check of a `sha256=<hex>` signature."""
    if not signature:
        return False
    expected = generate_signature(payload, secret)
    return hmac.compare_digest(_to_bytes(expected), _to_bytes(signature))
