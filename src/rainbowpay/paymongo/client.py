"""Thin typed wrapper around the PayMongo REST API.

Purpose:
- Keep gateway HTTP details out of domain code.
- Convert major-unit Decimal amounts to integer centavos at the boundary.
- Parse responses into small dataclasses instead of passing raw JSON around.
- Raise GatewayError for non-2xx, timeouts and connection failures.
- Never log full payloads (only id prefixes + correlation metadata).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import requests

from rainbowpay.domain.errors import GatewayError
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import id_prefix, safe_log_context

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.paymongo.com/v1"
DEFAULT_TIMEOUT_SECONDS = 15.0

# Reason PayMongo accepts for customer-initiated refunds.
GATEWAY_REFUND_REASON = "requested_by_customer"


def to_minor_units(amount: Decimal | int | str) -> int:
    """Convert a major-unit amount (e.g. PHP) to integer minor units.

    Rounds half-up at the centavo: ``Decimal("10.005") -> 1001``.
    Floats are rejected to keep binary rounding out of money math.
    """
    if isinstance(amount, float):
        raise TypeError("amounts must be Decimal, int or str, not float")
    value = Decimal(amount)
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


@dataclass
class PaymentIntent:
    id: str
    amount: int
    currency: str
    status: str
    client_key: str | None = None
    payment_method_allowed: list[str] = field(default_factory=list)
    payment_ids: list[str] = field(default_factory=list)


@dataclass
class Source:
    id: str
    amount: int
    currency: str
    type: str
    status: str
    checkout_url: str | None = None


@dataclass
class Refund:
    id: str
    payment_id: str
    amount: int
    status: str
    reason: str | None = None


@dataclass
class Payment:
    id: str
    amount: int
    currency: str
    status: str
    payment_intent_id: str | None = None
    source_id: str | None = None


def _parse_payment_intent(data: dict[str, Any]) -> PaymentIntent:
    attrs = data.get("attributes", {})
    return PaymentIntent(
        id=data["id"],
        amount=attrs.get("amount", 0),
        currency=attrs.get("currency", ""),
        status=attrs.get("status", ""),
        client_key=attrs.get("client_key"),
        payment_method_allowed=list(attrs.get("payment_method_allowed") or []),
        payment_ids=[p.get("id") for p in attrs.get("payments") or [] if p.get("id")],
    )


def _parse_source(data: dict[str, Any]) -> Source:
    attrs = data.get("attributes", {})
    redirect = attrs.get("redirect") or {}
    return Source(
        id=data["id"],
        amount=attrs.get("amount", 0),
        currency=attrs.get("currency", ""),
        type=attrs.get("type", ""),
        status=attrs.get("status", ""),
        checkout_url=redirect.get("checkout_url"),
    )


def _parse_refund(data: dict[str, Any]) -> Refund:
    attrs = data.get("attributes", {})
    return Refund(
        id=data["id"],
        payment_id=attrs.get("payment_id", ""),
        amount=attrs.get("amount", 0),
        status=attrs.get("status", ""),
        reason=attrs.get("reason"),
    )


def _parse_payment(data: dict[str, Any]) -> Payment:
    attrs = data.get("attributes", {})
    source = attrs.get("source") or {}
    return Payment(
        id=data["id"],
        amount=attrs.get("amount", 0),
        currency=attrs.get("currency", ""),
        status=attrs.get("status", ""),
        payment_intent_id=attrs.get("payment_intent_id"),
        source_id=source.get("id"),
    )


class PaymongoClient:
    """PayMongo API client.

    Usage:
        client = PaymongoClient()  # reads PAYMONGO_SECRET_KEY from env
        source = client.create_source(
            amount=Decimal("1000.00"),
            currency="PHP",
            source_type="gcash",
            redirect_urls={"success": "...", "failed": "..."},
            idempotency_key="booking:42:gcash:1",
        )
    """

    def __init__(
        self,
        secret_key: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            secret_key: Secret API key. Defaults to PAYMONGO_SECRET_KEY.
            base_url: API root. Defaults to PAYMONGO_BASE_URL or the public API.
            timeout: Per-request timeout in seconds. Defaults to
                PAYMONGO_TIMEOUT_SECONDS or 15.

        Raises:
            RuntimeError: If no secret key is available.
        """
        self._secret_key = secret_key or os.environ.get("PAYMONGO_SECRET_KEY")
        if not self._secret_key:
            raise RuntimeError(
                "PayMongo secret key not provided. "
                "Set PAYMONGO_SECRET_KEY or pass secret_key parameter."
            )
        self._base_url = (
            base_url or os.environ.get("PAYMONGO_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        if timeout is None:
            timeout = float(
                os.environ.get("PAYMONGO_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
            )
        self._timeout = timeout

    # ── transport ────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        url = f"{self._base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                json=json_body,
                params=params,
                headers=headers,
                auth=(self._secret_key, ""),
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            logger.warning(
                "paymongo request timed out",
                extra={"extra_fields": safe_log_context(method=method, path=path)},
            )
            raise GatewayError(f"PayMongo request timed out: {method} {path}") from e
        except requests.RequestException as e:
            logger.warning(
                "paymongo request failed",
                extra={"extra_fields": safe_log_context(method=method, path=path)},
            )
            raise GatewayError(f"PayMongo unreachable: {method} {path}") from e

        if not 200 <= response.status_code < 300:
            detail, gateway_code = _error_detail(response)
            logger.warning(
                "paymongo returned error",
                extra={
                    "extra_fields": safe_log_context(
                        method=method,
                        path=path,
                        status_code=response.status_code,
                        gateway_code=gateway_code,
                    )
                },
            )
            raise GatewayError(
                f"PayMongo API error: {detail or 'Unknown error'}",
                status_code=response.status_code,
                detail=detail,
                gateway_code=gateway_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                "PayMongo returned a non-JSON body",
                status_code=response.status_code,
            ) from e

    # ── payment intents ──────────────────────────────────

    def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        allowed_methods: list[str],
        description: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        split_recipients: list[dict[str, Any]] | None = None,
        correlation_id: str | None = None,
    ) -> PaymentIntent:
        """Create a payment intent.

        Args:
            amount: Major-unit amount.
            currency: ISO currency code (e.g. 'PHP').
            allowed_methods: Gateway method names, e.g. ['card', 'gcash'].
            description: Statement description.
            idempotency_key: Key for safe caller-side retries.
            metadata: Optional string metadata.
            split_recipients: Optional split_payment recipients (live split mode).
            correlation_id: Optional correlation ID for logging.

        Returns:
            Parsed PaymentIntent.
        """
        attributes: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "payment_method_allowed": allowed_methods,
            "description": description,
            "capture_type": "automatic",
        }
        if metadata:
            attributes["metadata"] = metadata
        if split_recipients:
            attributes["split_payment"] = {
                "transfer_to": os.environ.get("PAYMONGO_MAIN_MERCHANT_ID", ""),
                "recipients": split_recipients,
            }

        body = self._request(
            "POST",
            "/payment_intents",
            json_body={"data": {"attributes": attributes}},
            idempotency_key=idempotency_key,
        )
        intent = _parse_payment_intent(body["data"])

        logger.info(
            "paymongo payment intent created",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    intent_id_prefix=id_prefix(intent.id),
                    split=bool(split_recipients),
                )
            },
        )
        return intent

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        body = self._request("GET", f"/payment_intents/{intent_id}")
        return _parse_payment_intent(body["data"])

    # ── sources (e-wallet redirects) ─────────────────────

    def create_source(
        self,
        *,
        amount: Decimal,
        currency: str,
        source_type: str,
        redirect_urls: dict[str, str],
        idempotency_key: str,
        billing: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> Source:
        """Create a redirect source (gcash, grab_pay, paymaya).

        Args:
            amount: Major-unit amount.
            currency: ISO currency code.
            source_type: Gateway source type.
            redirect_urls: Mapping with 'success' and 'failed' URLs.
            idempotency_key: Key for safe caller-side retries.
            billing: Optional billing details forwarded verbatim.
            correlation_id: Optional correlation ID for logging.

        Returns:
            Parsed Source including its checkout_url.
        """
        attributes: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "type": source_type,
            "redirect": {
                "success": redirect_urls["success"],
                "failed": redirect_urls["failed"],
            },
        }
        if billing:
            attributes["billing"] = billing

        body = self._request(
            "POST",
            "/sources",
            json_body={"data": {"attributes": attributes}},
            idempotency_key=idempotency_key,
        )
        source = _parse_source(body["data"])

        logger.info(
            "paymongo source created",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    source_id_prefix=id_prefix(source.id),
                    source_type=source_type,
                )
            },
        )
        return source

    def retrieve_source(self, source_id: str) -> Source:
        body = self._request("GET", f"/sources/{source_id}")
        return _parse_source(body["data"])

    # ── refunds ──────────────────────────────────────────

    def create_refund(
        self,
        *,
        payment_id: str,
        amount: Decimal,
        reason: str = GATEWAY_REFUND_REASON,
        notes: str | None = None,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        correlation_id: str | None = None,
    ) -> Refund:
        """Refund (part of) a settled payment.

        Args:
            payment_id: Gateway payment id (pay_...).
            amount: Major-unit amount to refund.
            reason: Gateway reason code.
            notes: Free-text note stored on the gateway refund.
            idempotency_key: Key for safe caller-side retries.
            metadata: Optional string metadata (booking/refund ids).
            correlation_id: Optional correlation ID for logging.

        Returns:
            Parsed Refund.
        """
        attributes: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "payment_id": payment_id,
            "reason": reason,
        }
        if notes:
            attributes["notes"] = notes
        if metadata:
            attributes["metadata"] = metadata

        body = self._request(
            "POST",
            "/refunds",
            json_body={"data": {"attributes": attributes}},
            idempotency_key=idempotency_key,
        )
        refund = _parse_refund(body["data"])

        logger.info(
            "paymongo refund created",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    refund_id_prefix=id_prefix(refund.id),
                    payment_id_prefix=id_prefix(payment_id),
                    status=refund.status,
                )
            },
        )
        return refund

    # ── payments ─────────────────────────────────────────

    def list_payments(
        self,
        *,
        before: str | None = None,
        after: str | None = None,
        limit: int | None = None,
    ) -> list[Payment]:
        """List payments, newest first, with PayMongo cursor filters."""
        params: dict[str, Any] = {}
        if before:
            params["before"] = before
        if after:
            params["after"] = after
        if limit:
            params["limit"] = limit

        body = self._request("GET", "/payments", params=params or None)
        return [_parse_payment(item) for item in body.get("data") or []]

    def validate_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: str | None,
        secret: str | None,
    ) -> bool:
        """See rainbowpay.paymongo.webhook.validate_webhook_signature."""
        from rainbowpay.paymongo.webhook import validate_webhook_signature

        return validate_webhook_signature(raw_body, signature_header, secret)


def _error_detail(response: requests.Response) -> tuple[str | None, str | None]:
    """Pull errors[0].detail / errors[0].code from an error body."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    errors = body.get("errors") if isinstance(body, dict) else None
    if not errors:
        return None, None
    first = errors[0] or {}
    return first.get("detail"), first.get("code")
