"""Platform commission / provider payout split.

compute_split() is pure. Totals must already be whole cents. The provider
amount is derived by subtraction from the rounded platform fee, so
fee + provider always equals the given total exactly.

Split mode is passed in by the caller (see SplitMode.from_env()); nothing
here reads or mutates process-wide state.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from rainbowpay.infra.repositories.splits_repository import upsert_split

CENT = Decimal("0.01")
DEFAULT_COMMISSION_RATE = Decimal("15")


class SplitMode(str, Enum):
    """How the split is settled.

    SIMULATED: gateway charges one plain payment; the intended split is
        stored for later settlement.
    LIVE: split recipients are sent to the gateway with the payment intent.
    """

    SIMULATED = "simulated"
    LIVE = "live"

    @classmethod
    def from_env(cls) -> "SplitMode":
        raw = os.environ.get("SPLIT_PAYMENTS_MODE", cls.SIMULATED.value).strip().lower()
        try:
            return cls(raw)
        except ValueError:
            return cls.SIMULATED


@dataclass(frozen=True)
class Split:
    total_amount: Decimal
    commission_rate: Decimal
    platform_fee_amount: Decimal
    provider_amount: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "total_amount": str(self.total_amount),
            "commission_rate": str(self.commission_rate),
            "platform_fee_amount": str(self.platform_fee_amount),
            "provider_amount": str(self.provider_amount),
        }


def _as_decimal(value: Decimal | int | str, name: str) -> Decimal:
    if isinstance(value, float):
        raise TypeError(f"{name} must be Decimal, int or str, not float")
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"{name} is not a number: {value!r}") from e


def compute_split(
    total_amount: Decimal | int | str,
    commission_rate_percent: Decimal | int | str,
) -> Split:
    """Split a booking total into platform fee and provider payout.

    Args:
        total_amount: Booking amount in major units (> 0, at most 2 decimals).
        commission_rate_percent: Platform commission, 0..100.

    Returns:
        Split with fee = round_half_up(total * rate / 100, 0.01) and
        provider = total - fee.

    Raises:
        ValueError: If total <= 0, has fractional cents, or rate outside 0..100.

    Example:
        >>> compute_split(Decimal("1000.00"), 15).provider_amount
        Decimal('850.00')
    """
    total = _as_decimal(total_amount, "total_amount")
    rate = _as_decimal(commission_rate_percent, "commission_rate_percent")

    if not total.is_finite() or total <= 0:
        raise ValueError("total_amount must be positive")
    if total != total.quantize(CENT):
        raise ValueError(f"total_amount has fractional cents: {total}")
    total = total.quantize(CENT)
    if rate < 0 or rate > 100:
        raise ValueError("commission_rate_percent must be between 0 and 100")

    platform_fee = (total * rate / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    provider = total - platform_fee

    return Split(
        total_amount=total,
        commission_rate=rate,
        platform_fee_amount=platform_fee,
        provider_amount=provider,
    )


def resolve_commission_rate(provider_rate: Decimal | None) -> Decimal:
    """Provider's own rate, else DEFAULT_COMMISSION_RATE env, else 15%."""
    if provider_rate is not None:
        return Decimal(provider_rate)
    return Decimal(os.environ.get("DEFAULT_COMMISSION_RATE", DEFAULT_COMMISSION_RATE))


def split_recipients(split: Split, provider_merchant_id: str) -> list[dict[str, Any]]:
    """Gateway split_payment recipients for LIVE mode (amounts in centavos)."""
    from rainbowpay.paymongo.client import to_minor_units

    return [
        {
            "merchant_id": provider_merchant_id,
            "split_type": "fixed",
            "value": to_minor_units(split.provider_amount),
        }
    ]


def record_split(
    cur: PgCursor,
    *,
    booking_id: int,
    split: Split,
    mode: SplitMode,
    transaction_id: int | None,
    main_payment_id: str | None,
) -> dict[str, Any]:
    """Persist the split for a booking's payment attempt.

    The split follows the latest attempt until one settles; the ledger then
    rebinds it to the succeeded transaction.

    SIMULATED stores split_status='simulated' (no money moved by the gateway
    on the provider's behalf); LIVE stores 'pending' until settlement.
    """
    return upsert_split(
        cur,
        booking_id=booking_id,
        transaction_id=transaction_id,
        main_payment_id=main_payment_id,
        platform_fee_amount=split.platform_fee_amount,
        provider_amount=split.provider_amount,
        total_amount=split.total_amount,
        commission_rate=split.commission_rate,
        split_status="simulated" if mode is SplitMode.SIMULATED else "pending",
    )
