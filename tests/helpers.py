"""Shared test helpers for RainbowPay tests.

This module contains helper functions that can be imported by both conftest.py
and individual test files. These are NOT fixtures - they are regular functions.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa


def _generate_rsa_keypair():
    """Generate RSA key pair for test JWT signing."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )
    public_key = private_key.public_key()
    return private_key, public_key


def _create_jwks(public_key, kid: str = "test-key-1") -> dict:
    """Create JWKS from public key."""
    public_numbers = public_key.public_numbers()

    def int_to_base64(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return (
            base64.urlsafe_b64encode(n.to_bytes(byte_length, "big"))
            .rstrip(b"=")
            .decode()
        )

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": kid,
                "n": int_to_base64(public_numbers.n),
                "e": int_to_base64(public_numbers.e),
            }
        ]
    }


def _create_token(
    private_key,
    kid: str = "test-key-1",
    sub: str = "user-123",
    iss: str = "https://auth.example.com",
    aud: str = "rainbowpay-api",
    exp: int | None = None,
    azp: str | None = None,
) -> str:
    """Create signed JWT for testing."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "iss": iss,
        "aud": aud,
        "exp": exp if exp is not None else now + 3600,
        "iat": now,
    }
    if azp:
        payload["azp"] = azp

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def _sign_webhook(body: bytes, secret: str, timestamp: str = "1700000000", key: str = "te") -> str:
    """Build a Paymongo-Signature header for a body."""
    digest = hmac.new(secret.encode(), timestamp.encode() + b"." + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},{key}={digest}"


def _paymongo_event(event_type: str, resource: dict, event_id: str = "evt_test0001") -> dict:
    """Webhook envelope as PayMongo sends it."""
    return {
        "data": {
            "id": event_id,
            "type": "event",
            "attributes": {
                "type": event_type,
                "livemode": False,
                "data": resource,
            },
        }
    }
