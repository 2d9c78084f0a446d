"""PayMongo webhook signature validation and envelope parsing.

Purpose:
- Validate the Paymongo-Signature header (HMAC-SHA256 over "{t}.{body}").
- Parse the body into a strict envelope before any business logic sees it.
- Never log payload or signature.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from rainbowpay.domain.errors import MalformedEventError, SignatureValidationError
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

SIGNATURE_HEADER = "Paymongo-Signature"

# te = test-mode signature, li = live-mode signature, v1 = legacy scheme.
_SIGNATURE_KEYS = ("te", "li", "v1")


class EventResource(BaseModel):
    """The gateway object an event is about (payment, source, refund)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str | None = None
    attributes: dict[str, Any] = {}


class EventAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    livemode: bool = False
    data: EventResource


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    type: str | None = None
    attributes: EventAttributes


class WebhookEnvelope(BaseModel):
    """``{"data": {"id", "attributes": {"type", "data": {...}}}}``"""

    model_config = ConfigDict(extra="ignore")

    data: EventData

    @property
    def event_id(self) -> str | None:
        return self.data.id

    @property
    def event_type(self) -> str:
        return self.data.attributes.type

    @property
    def resource(self) -> EventResource:
        return self.data.attributes.data


def parse_signature_header(header: str) -> tuple[str, list[str]]:
    """Split ``t=...,te=...,li=...`` into (timestamp, candidate signatures).

    Raises:
        SignatureValidationError: If the timestamp or every signature is absent.
    """
    timestamp = ""
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not value:
            continue
        if key == "t":
            timestamp = value
        elif key in _SIGNATURE_KEYS:
            signatures.append(value)

    if not timestamp or not signatures:
        raise SignatureValidationError("Malformed signature header")
    return timestamp, signatures


def compute_signature(raw_body: bytes, timestamp: str, secret: str) -> str:
    signed_payload = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> None:
    """Verify the header against the raw body; raise on any mismatch.

    Args:
        raw_body: Exact request bytes as received.
        signature_header: Value of the Paymongo-Signature header.
        secret: Webhook signing secret.

    Raises:
        SignatureValidationError: Header missing/malformed or no signature matches.
    """
    if not signature_header:
        raise SignatureValidationError("Missing signature header")

    timestamp, candidates = parse_signature_header(signature_header)
    expected = compute_signature(raw_body, timestamp, secret).encode("ascii")

    matched = False
    for candidate in candidates:
        # every candidate is compared, as bytes (header text may be non-ASCII)
        if hmac.compare_digest(expected, candidate.encode("utf-8")):
            matched = True
    if not matched:
        raise SignatureValidationError("Signature mismatch")


def validate_webhook_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
) -> bool:
    """Boolean form of verify_signature().

    With no secret configured validation is skipped (logged) and True is
    returned. The webhook route refuses that mode in production.
    """
    if not secret:
        logger.warning(
            "webhook signature validation skipped: no secret configured",
            extra={"extra_fields": safe_log_context(reason="missing_webhook_secret")},
        )
        return True
    try:
        verify_signature(raw_body, signature_header, secret)
    except SignatureValidationError:
        return False
    return True


def parse_event(raw_body: bytes) -> WebhookEnvelope:
    """Parse and shape-check a webhook body.

    Raises:
        MalformedEventError: Body is not JSON or lacks
            data.attributes.type / data.attributes.data.
    """
    try:
        decoded = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedEventError("Body is not valid JSON") from e

    if not isinstance(decoded, dict):
        raise MalformedEventError("Body is not a JSON object")

    try:
        return WebhookEnvelope.model_validate(decoded)
    except ValidationError as e:
        logger.warning(
            "webhook envelope rejected",
            extra={"extra_fields": safe_log_context(error_count=e.error_count())},
        )
        raise MalformedEventError("Unexpected webhook envelope") from e
