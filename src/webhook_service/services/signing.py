"""Wire encoding and HMAC signatures for outbound webhook payloads.

Receivers verify a delivery by recomputing::

    "sha256=" + hex(HMAC-SHA256(secret_key, raw_request_body))

over the exact request body bytes. The ``sha256=`` prefix versions the
scheme; any change to the algorithm must ship under a new prefix.
"""
from __future__ import annotations

import hmac
import json
from hashlib import sha256
from typing import Any

SIGNATURE_PREFIX = "sha256="


def encode_payload(payload: Any) -> bytes:
    """Canonical JSON body: sorted keys, compact separators, UTF-8."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sign_bytes(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def sign(payload: Any, secret: str) -> str:
    """Signature of *payload* as it is encoded on the wire."""
    return sign_bytes(encode_payload(payload), secret)


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a received ``X-Webhook-Signature`` value."""
    return hmac.compare_digest(sign_bytes(body, secret), signature)
