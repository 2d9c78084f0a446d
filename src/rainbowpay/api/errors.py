"""HTTP translation of engine errors and response shaping."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi import HTTPException

from rainbowpay.domain.errors import PaymentEngineError


def to_http_exception(err: PaymentEngineError) -> HTTPException:
    """HTTPException carrying ``{"code", "message"}`` as detail."""
    return HTTPException(status_code=err.http_status, detail=err.to_detail())


def to_jsonable(value: Any) -> Any:
    """Response-safe copy of a row/structure.

    Money stays exact: Decimals are rendered as strings, not floats.
    """
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value
