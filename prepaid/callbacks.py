"""
Normalization of Daraja settlement callbacks.

The gateway does not use one fixed field naming: C2B confirmations, the
sandbox simulator and hand-rolled test payloads spell the same value several
ways. `normalize_callback` maps every known spelling onto `NormalizedCallback`
before any business logic sees the payload.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .exceptions import ValidationError
from .logs import get_logger
from .models import NormalizedCallback

log = get_logger(__name__)

# canonical field -> accepted payload keys, first present wins
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "result_code": ("ResultCode", "resultCode"),
    "result_desc": ("ResultDesc", "resultDesc"),
    "receipt_number": ("MpesaReceiptNumber", "mpesaReceiptNumber", "TransactionID", "TransID"),
    "amount": ("Amount", "amount", "TransAmount"),
    "transaction_date": ("TransactionDate", "transactionDate", "TransTime"),
    "bill_ref": ("BillRefNumber", "billRefNumber", "AccountReference"),
    "phone_number": ("PhoneNumber", "phoneNumber", "MSISDN"),
    # "Coversation" is the gateway's own spelling
    "conversation_id": (
        "OriginatorCoversationID",
        "originatorCoversationID",
        "OriginatorConversationID",
        "originatorConversationID",
    ),
}

# A payload without a result code is not a settlement confirmation.
DEFAULT_RESULT_CODE = 1

DARAJA_DATE_FORMAT = "%Y%m%d%H%M%S"


def _pick(payload: dict, field: str) -> Any:
    for key in FIELD_ALIASES[field]:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _result_code(value: Any) -> int:
    if value is None:
        return DEFAULT_RESULT_CODE
    try:
        return int(str(value).strip())
    except ValueError:
        log.warning("Unparseable ResultCode %r, treating as failure", value)
        return DEFAULT_RESULT_CODE


def _amount(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"invalid amount {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"invalid amount {value!r}")
    return amount


def normalize_callback(payload: Any) -> NormalizedCallback:
    """Map a raw callback body onto the canonical shape.

    Raises ValidationError("missing bill reference") when no meter reference
    is present under any known key.
    """
    if not isinstance(payload, dict):
        raise ValidationError("callback payload must be a JSON object")

    bill_ref = _text(_pick(payload, "bill_ref"))
    if not bill_ref:
        raise ValidationError("missing bill reference")

    return NormalizedCallback(
        result_code=_result_code(_pick(payload, "result_code")),
        result_desc=_text(_pick(payload, "result_desc")) or "Unknown result",
        receipt_number=_text(_pick(payload, "receipt_number")),
        amount=_amount(_pick(payload, "amount")),
        transaction_date=_text(_pick(payload, "transaction_date")),
        bill_ref=bill_ref,
        phone_number=_text(_pick(payload, "phone_number")),
        conversation_id=_text(_pick(payload, "conversation_id")),
        raw=payload,
    )


def parse_transaction_date(value: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Parse a gateway date into an aware UTC datetime.

    Compact `YYYYMMDDHHMMSS` values are read as UTC; other values are tried
    as ISO-8601. Anything unparseable falls back to `now`.
    """
    fallback = now or datetime.now(timezone.utc)
    if not value:
        return fallback
    try:
        if len(value) == 14 and value.isdigit():
            return datetime.strptime(value, DARAJA_DATE_FORMAT).replace(tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        log.warning("Error parsing transaction date %r, using current time", value)
        return fallback
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)

