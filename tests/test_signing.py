from __future__ import annotations

import hmac
import json
from hashlib import sha256

from webhook_service.services.signing import (
    SIGNATURE_PREFIX,
    encode_payload,
    sign,
    sign_bytes,
    verify_signature,
)

SECRET = "0" * 64


def test_encode_payload_is_canonical():
    a = encode_payload({"b": 1, "a": {"y": 2, "x": "é"}})
    b = encode_payload({"a": {"x": "é", "y": 2}, "b": 1})
    assert a == b
    assert a == '{"a":{"x":"é","y":2},"b":1}'.encode("utf-8")


def test_sign_matches_hmac_over_wire_bytes():
    payload = {"lead_id": 42, "email": "a@example.com"}
    expected = hmac.new(SECRET.encode(), encode_payload(payload), sha256).hexdigest()
    assert sign(payload, SECRET) == f"sha256={expected}"


def test_sign_is_deterministic():
    payload = {"id": 1, "tags": ["x", "y"]}
    assert sign(payload, SECRET) == sign(json.loads(json.dumps(payload)), SECRET)


def test_sign_differs_for_different_payloads_and_secrets():
    assert sign({"id": 1}, SECRET) != sign({"id": 2}, SECRET)
    assert sign({"id": 1}, SECRET) != sign({"id": 1}, "1" * 64)


def test_verify_signature():
    body = encode_payload({"id": 1})
    signature = sign_bytes(body, SECRET)
    assert signature.startswith(SIGNATURE_PREFIX)
    assert verify_signature(body, SECRET, signature)
    assert not verify_signature(body + b" ", SECRET, signature)
    assert not verify_signature(body, "other", signature)
