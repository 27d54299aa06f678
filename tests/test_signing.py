"""Tests for webhook payload signing."""

import hashlib
import hmac

from hookrelay.services.signing import generate_secret, sign_payload, verify_signature


def test_sign_payload_format():
    sig = sign_payload(b'{"a":1}', "whsec_test")
    assert sig.startswith("sha256=")
    assert len(sig) == len("sha256=") + 64


def test_sign_payload_matches_hmac_sha256():
    body = b'{"id":"evt_1","type":"order.created"}'
    expected = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()
    assert sign_payload(body, "whsec_test") == f"sha256={expected}"


def test_sign_payload_deterministic_for_str_and_bytes():
    assert sign_payload('{"a":1}', "k") == sign_payload(b'{"a":1}', "k")


def test_verify_round_trip():
    secret = generate_secret()
    body = b'{"hello":"world"}'
    assert verify_signature(body, secret, sign_payload(body, secret)) is True


def test_verify_rejects_tampered_payload():
    secret = generate_secret()
    sig = sign_payload(b'{"amount":10}', secret)
    assert verify_signature(b'{"amount":11}', secret, sig) is False


def test_verify_rejects_wrong_secret():
    sig = sign_payload(b"payload", generate_secret())
    assert verify_signature(b"payload", generate_secret(), sig) is False


def test_verify_rejects_malformed_signatures():
    secret = "whsec_test"
    assert verify_signature(b"payload", secret, "") is False
    assert verify_signature(b"payload", secret, "sha256=abc") is False
    assert verify_signature(b"payload", secret, None) is False
    assert verify_signature(b"payload", secret, "sha256=" + "é" * 64) is False


def test_generate_secret_shape_and_uniqueness():
    secrets_seen = {generate_secret() for _ in range(50)}
    assert len(secrets_seen) == 50
    for secret in secrets_seen:
        assert secret.startswith("whsec_")
        assert len(secret) == len("whsec_") + 64
