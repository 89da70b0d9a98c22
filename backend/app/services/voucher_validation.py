"""Field validators for the voucher draft.

Every validator takes the raw text a submitter (or the extractor) produced and returns a
``ValidationResult``. Validation failures are values, never exceptions: the conversation
re-prompts with ``error`` and stays in the same state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Optional

from app.core.config import get_settings
from app.schemas.voucher import VoucherDraft, VoucherField

_AMOUNT_RE = re.compile(r"^\d+(\.\d{1,2})?$", re.ASCII)
_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")
_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d", "%Y/%m/%d")
_DATE_SHAPE_RE = re.compile(r"^(\d{1,2}[/-]\d{1,2}[/-]\d{4}|\d{4}[/-]\d{1,2}[/-]\d{1,2})$")

MIN_REFERENCE_LENGTH = 3


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    value: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: str) -> "ValidationResult":
        return cls(valid=True, value=value)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


def _clean_amount(raw: str) -> str:
    return raw.strip().lstrip("$").strip().replace(",", "")


def validate_amount(raw: Optional[str]) -> ValidationResult:
    raw = "" if raw is None else str(raw)
    error = f"El monto '{raw}' no es válido. Escribe un número mayor a cero (ejemplo: 1500 o 1500.50)"
    cleaned = _clean_amount(raw)
    # Plain ASCII digits with at most two decimals; Decimal alone would take "1e3" or "١٥".
    if not _AMOUNT_RE.fullmatch(cleaned):
        return ValidationResult.fail(error)
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return ValidationResult.fail(error)
    if amount <= 0:
        return ValidationResult.fail(error)
    return ValidationResult.ok(cleaned)


def parse_payment_date(raw: str) -> Optional[date]:
    value = raw.strip()
    if not _DATE_SHAPE_RE.match(value):
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def validate_date(raw: Optional[str]) -> ValidationResult:
    value = (raw or "").strip()
    if not value or parse_payment_date(value) is None:
        return ValidationResult.fail("La fecha debe estar en formato DD/MM/YYYY o YYYY-MM-DD")
    return ValidationResult.ok(value)


def parse_transaction_time(raw: str) -> Optional[time]:
    match = _TIME_RE.match(raw.strip())
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return time(int(hours), int(minutes), int(seconds or 0))


def validate_time(raw: Optional[str]) -> ValidationResult:
    value = (raw or "").strip()
    if not value or parse_transaction_time(value) is None:
        return ValidationResult.fail("La hora debe estar en formato HH:MM (ejemplo: 14:30)")
    return ValidationResult.ok(value)


def validate_reference(raw: Optional[str]) -> ValidationResult:
    value = (raw or "").strip()
    if not value:
        # Optional field: blank clears it.
        return ValidationResult.ok("")
    if len(value) < MIN_REFERENCE_LENGTH:
        return ValidationResult.fail(
            f"La referencia debe tener al menos {MIN_REFERENCE_LENGTH} caracteres"
        )
    return ValidationResult.ok(value)


def validate_house_number(
    raw: Optional[str],
    *,
    min_house: Optional[int] = None,
    max_house: Optional[int] = None,
) -> ValidationResult:
    if min_house is None or max_house is None:
        settings = get_settings()
        min_house = settings.house_number_min if min_house is None else min_house
        max_house = settings.house_number_max if max_house is None else max_house

    error = f"El número de casa debe ser un valor entre {min_house} y {max_house}"
    value = (raw or "").strip()
    if not value.isdigit():
        return ValidationResult.fail(error)
    number = int(value)
    if number < min_house or number > max_house:
        return ValidationResult.fail(error)
    return ValidationResult.ok(str(number))


_VALIDATORS = {
    VoucherField.AMOUNT: validate_amount,
    VoucherField.PAYMENT_DATE: validate_date,
    VoucherField.REFERENCE: validate_reference,
    VoucherField.TRANSACTION_TIME: validate_time,
    VoucherField.HOUSE_NUMBER: validate_house_number,
}


def validate_field(field: VoucherField, raw: Optional[str]) -> ValidationResult:
    return _VALIDATORS[field](raw)


def apply_field(draft: VoucherDraft, field: VoucherField, raw: Optional[str]) -> ValidationResult:
    """Validate *raw* for *field* and write it into *draft* only when it is valid."""
    result = validate_field(field, raw)
    if not result.valid:
        return result
    if field is VoucherField.HOUSE_NUMBER:
        draft.house_number = int(result.value)
    else:
        setattr(draft, field.attribute, result.value)
    return result


def combine_payment_datetime(payment_date: str, transaction_time: str) -> datetime:
    """Receipt date + time as a naive timestamp. Raises ValueError on malformed input."""
    day = parse_payment_date(payment_date or "")
    if day is None:
        raise ValueError(f"Invalid payment date: {payment_date!r}")
    moment = parse_transaction_time(transaction_time or "")
    if moment is None:
        raise ValueError(f"Invalid transaction time: {transaction_time!r}")
    return datetime.combine(day, moment)


def amount_as_decimal(amount: str) -> Decimal:
    return Decimal(_clean_amount(amount))
