"""Normalisation of raw BHB receipt and debtor payloads.

BHB reports the same logical value under different keys depending on the
record type and API version. Each such value is resolved by an ordered,
declarative list of extractors; the first one that yields a usable value
wins. Malformed monetary or date fields fall back to zero/None so that a
single bad record never aborts a batch. A payload that is not an object, or
whose amounts cannot be represented in cents, raises ``NormalizationError``
for the caller to record and skip.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple

from .dto import NormalizedDebtor, NormalizedInvoice, PaymentStatus
from .errors import NormalizationError

CENT = Decimal("0.01")
ZERO = Decimal("0")
PAID_EPSILON = Decimal("0.01")
DEFAULT_PAYMENT_TERM_DAYS = 14

DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%Y-%m-%d %H:%M:%S", "%d/%m/%Y")
_GERMAN_AMOUNT_RE = re.compile(r"^-?\d{1,3}(\.\d{3})*(,\d+)?$|^-?\d+,\d+$")

Extractor = Callable[[Mapping[str, Any]], Any]


def _nested(outer: str, inner: str) -> Extractor:
    def extract(raw: Mapping[str, Any]) -> Any:
        value = raw.get(outer)
        if isinstance(value, Mapping):
            return value.get(inner)
        return None

    return extract


def _flat(key: str) -> Extractor:
    return lambda raw: raw.get(key)


# Strict priority order; the first positive integer wins.
DEBTOR_NUMBER_EXTRACTORS: Tuple[Tuple[str, Extractor], ...] = (
    ("counterparty.postingaccount_number", _nested("counterparty", "postingaccount_number")),
    ("debtor.postingaccount_number", _nested("debtor", "postingaccount_number")),
    ("counterparty_postingaccount_number", _flat("counterparty_postingaccount_number")),
    ("creditor_debtor", _flat("creditor_debtor")),
    ("debtor_number", _flat("debtor_number")),
    ("postingaccount_number", _flat("postingaccount_number")),
)

COUNTERPARTY_NAME_EXTRACTORS: Tuple[Tuple[str, Extractor], ...] = (
    ("counterparty", _flat("counterparty")),
    ("counterparty.name", _nested("counterparty", "name")),
    ("debtor.name", _nested("debtor", "name")),
    ("counterparty_name", _flat("counterparty_name")),
)

EXTERNAL_ID_EXTRACTORS: Tuple[Tuple[str, Extractor], ...] = (
    ("id_by_customer", _flat("id_by_customer")),
    ("id", _flat("id")),
)

PAID_AMOUNT_KEYS: Tuple[str, ...] = ("amount_paid", "amount_paid_fixed")


def first_match(
    raw: Mapping[str, Any],
    extractors: Sequence[Tuple[str, Extractor]],
    coerce: Callable[[Any], Any],
) -> Any:
    """Return the first coerced value that is not ``None``."""
    for _, extract in extractors:
        try:
            value = coerce(extract(raw))
        except (TypeError, ValueError):
            continue
        if value is not None:
            return value
    return None


def positive_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value > 0 and value.is_integer() else None
    text = str(value).strip()
    if not text.isdigit():
        return None
    number = int(text)
    return number if number > 0 else None


def non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        candidate = value.strip()
        if candidate:
            return candidate
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def parse_amount(value: Any) -> Decimal:
    """Parse an upstream amount; anything unparseable becomes ``0``."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        text = str(value).strip().replace("€", "").replace("EUR", "").strip()
        if not text:
            return ZERO
        if _GERMAN_AMOUNT_RE.match(text):
            text = text.replace(".", "").replace(",", ".")
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return ZERO
    if not amount.is_finite():
        return ZERO
    return amount


def parse_date(value: Any) -> Optional[date]:
    """Parse an ISO or German formatted date; unparseable input yields ``None``."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text.startswith("0000"):
        return None
    for pattern in DATE_FORMATS:
        try:
            return datetime.strptime(text, pattern).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def is_deleted(raw: Mapping[str, Any]) -> bool:
    flag = raw.get("deleted")
    if isinstance(flag, str):
        return flag.strip().lower() in ("1", "true", "yes")
    return flag in (1, True)


def extract_debtor_number(raw: Mapping[str, Any]) -> int:
    """Debtor posting-account number referenced by a receipt, ``0`` if none."""
    return first_match(raw, DEBTOR_NUMBER_EXTRACTORS, positive_int) or 0


def extract_counterparty_name(raw: Mapping[str, Any]) -> Optional[str]:
    return first_match(raw, COUNTERPARTY_NAME_EXTRACTORS, non_empty_str)


def compute_amounts(raw: Mapping[str, Any]) -> Tuple[Decimal, Decimal, Decimal]:
    """Return ``(total, paid, open)`` as non-negative cent amounts.

    Outbound invoices carry a negative ``amount``; the total is its magnitude.
    All paid-amount variants are summed.
    """
    total = abs(parse_amount(raw.get("amount"))).quantize(CENT, rounding=ROUND_HALF_UP)
    paid = sum((parse_amount(raw.get(key)) for key in PAID_AMOUNT_KEYS), ZERO)
    paid = paid.quantize(CENT, rounding=ROUND_HALF_UP)
    open_amount = min(total, max(ZERO, total - paid))
    return total, paid, open_amount


def payment_status_for(open_amount: Decimal) -> PaymentStatus:
    return PaymentStatus.PAID if open_amount < PAID_EPSILON else PaymentStatus.UNPAID


def normalize_invoice(raw: Mapping[str, Any]) -> Optional[NormalizedInvoice]:
    """Normalise one receipt; soft-deleted or id-less records yield ``None``.

    Raises:
        NormalizationError: If ``raw`` is not an object or its amounts overflow.
    """
    _require_mapping(raw, "receipt")
    if is_deleted(raw):
        return None

    external_id = first_match(raw, EXTERNAL_ID_EXTRACTORS, non_empty_str)
    if external_id is None:
        return None

    try:
        total, paid, open_amount = compute_amounts(raw)
    except ArithmeticError as exc:
        raise NormalizationError(f"receipt {external_id}: amount out of range") from exc
    invoice_number = (
        non_empty_str(raw.get("invoicenumber"))
        or non_empty_str(raw.get("invoice_number"))
        or external_id
    )

    return NormalizedInvoice(
        external_id=external_id,
        invoice_number=invoice_number,
        debtor_number=extract_debtor_number(raw),
        counterparty=extract_counterparty_name(raw),
        receipt_date=parse_date(raw.get("date")),
        due_date=parse_date(raw.get("due_date")),
        amount_total=total,
        amount_paid=paid,
        amount_open=open_amount,
        payment_status=payment_status_for(open_amount),
        raw=dict(raw),
    )


def _require_mapping(raw: Any, kind: str) -> None:
    if not isinstance(raw, Mapping):
        raise NormalizationError(f"{kind} payload is {type(raw).__name__}, expected object")


def _first_str(raw: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = non_empty_str(raw.get(key))
        if value is not None:
            return value
    return None


def normalize_debtor(raw: Mapping[str, Any]) -> Optional[NormalizedDebtor]:
    """Normalise one debtor; records without a positive number yield ``None``."""
    _require_mapping(raw, "debtor")
    if is_deleted(raw):
        return None

    number = positive_int(raw.get("postingaccount_number"))
    if number is None:
        return None

    return NormalizedDebtor(
        number=number,
        name=_first_str(raw, "name") or f"Debitor {number}",
        email=_first_str(raw, "email"),
        contact_person=_first_str(raw, "contact_person", "contactperson"),
        street=_first_str(raw, "street"),
        additional_addressline=_first_str(raw, "additional_addressline", "addressline2"),
        zip=_first_str(raw, "zip", "postcode"),
        city=_first_str(raw, "city"),
        country=_first_str(raw, "country"),
        sales_tax_id_eu=_first_str(raw, "sales_tax_id_eu", "vat_id", "ustid"),
        uid_ch=_first_str(raw, "uid_ch"),
        iban=_first_str(raw, "iban"),
        bic=_first_str(raw, "bic"),
        raw=dict(raw),
    )
