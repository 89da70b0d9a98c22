"""Atomic creation of a voucher and its linked rows.

Everything happens in the caller's session and is committed once at the end. Each
confirmation-code attempt runs in its own SAVEPOINT so a code collision only discards
that insert. Any failure rolls the whole transaction back and surfaces as
``VoucherCommitError``; no partial rows survive.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.voucher import House, HouseRecord, Record, TransactionStatus, User, Voucher
from app.schemas.voucher import UserRole, UserStatus, ValidationStatus, VoucherDraft
from app.services.db_retry import is_retryable_db_error
from app.services.voucher_validation import amount_as_decimal, combine_payment_datetime
from app.utils.phone import log_safe

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_SUFFIX_LENGTH = 5


class VoucherCommitError(RuntimeError):
    pass


class ConfirmationCodeExhaustedError(VoucherCommitError):
    pass


def is_retryable_commit_error(exc: BaseException) -> bool:
    """A failed commit is worth repeating only when its root cause was a transient DB error."""
    if isinstance(exc, ConfirmationCodeExhaustedError):
        return False
    cause = exc.__cause__ if isinstance(exc, VoucherCommitError) else exc
    return cause is not None and is_retryable_db_error(cause)


@dataclass(frozen=True)
class Submitter:
    phone: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class CommitResult:
    voucher_id: int
    confirmation_code: str
    house_number: int
    amount: Decimal


def generate_confirmation_code(now: Optional[datetime] = None) -> str:
    """``YYYYMM-XXXXX``: current year and month plus 5 random uppercase alphanumerics."""
    if now is None:
        now = datetime.now(ZoneInfo(get_settings().business_timezone))
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{now.year:04d}{now.month:02d}-{suffix}"


def _code_exists(db: Session, code: str) -> bool:
    return db.execute(select(Voucher.id).where(Voucher.confirmation_code == code)).first() is not None


def _insert_voucher_with_unique_code(
    db: Session,
    *,
    payment_at: datetime,
    amount: Decimal,
    reference: str,
    artifact_handle: str,
    code_factory: Callable[[], str],
    max_attempts: int,
) -> Voucher:
    for attempt in range(1, max_attempts + 1):
        code = code_factory()
        voucher = Voucher(
            date=payment_at,
            authorization_number=reference or None,
            confirmation_code=code,
            amount=amount,
            confirmation_status=False,
            url=artifact_handle,
        )
        try:
            with db.begin_nested():
                db.add(voucher)
                db.flush()
        except IntegrityError:
            if not _code_exists(db, code):
                raise
            logger.warning("Confirmation code collision on attempt %s/%s", attempt, max_attempts)
            continue
        return voucher
    raise ConfirmationCodeExhaustedError(
        f"Could not generate a unique confirmation code after {max_attempts} attempts"
    )


def _find_or_create_user(db: Session, submitter: Submitter) -> User:
    user = None
    if submitter.phone:
        user = db.execute(select(User).where(User.phone == submitter.phone)).scalars().first()
    if user is None and submitter.email:
        user = db.execute(select(User).where(User.email == submitter.email)).scalars().first()
    if user is not None:
        return user

    user = User(
        phone=submitter.phone,
        email=submitter.email,
        name=submitter.name,
        role=UserRole.TENANT.value,
        status=UserStatus.ACTIVE.value,
    )
    db.add(user)
    db.flush()
    return user


def _ensure_house(db: Session, number_house: int, owner: User) -> House:
    house = db.execute(select(House).where(House.number_house == number_house)).scalars().first()
    if house is None:
        house = House(number_house=number_house, user_id=owner.id)
        db.add(house)
        db.flush()
        return house
    if house.user_id != owner.id:
        # Last payer wins the house.
        logger.info("Reassigning house %s to the submitting user", number_house)
        house.user_id = owner.id
        db.flush()
    return house


def commit_voucher(
    db: Session,
    *,
    draft: VoucherDraft,
    artifact_handle: str,
    submitter: Submitter,
    code_factory: Callable[[], str] = generate_confirmation_code,
    max_attempts: Optional[int] = None,
) -> CommitResult:
    if draft.house_number is None:
        raise VoucherCommitError("Draft has no house number")
    if max_attempts is None:
        max_attempts = get_settings().confirmation_code_max_attempts

    try:
        payment_at = combine_payment_datetime(draft.payment_date, draft.transaction_time)
        amount = amount_as_decimal(draft.amount)

        voucher = _insert_voucher_with_unique_code(
            db,
            payment_at=payment_at,
            amount=amount,
            reference=draft.reference,
            artifact_handle=artifact_handle,
            code_factory=code_factory,
            max_attempts=max(1, int(max_attempts)),
        )
        code = voucher.confirmation_code

        stored = db.execute(select(Voucher).where(Voucher.confirmation_code == code)).scalars().first()
        if stored is None:
            raise VoucherCommitError(f"Voucher {code} not found after insert")

        user = _find_or_create_user(db, submitter)

        record = Record(vouchers_id=stored.id)
        db.add(record)
        db.flush()

        db.add(
            TransactionStatus(
                vouchers_id=stored.id,
                identified_house_number=draft.house_number,
                validation_status=ValidationStatus.PENDING.value,
            )
        )

        house = _ensure_house(db, draft.house_number, user)

        db.add(HouseRecord(house_id=house.id, record_id=record.id))
        db.flush()
        voucher_id = stored.id

        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception(
            "Voucher commit failed submitter=%s house=%s",
            log_safe(submitter.phone or submitter.email or ""),
            draft.house_number,
        )
        if isinstance(exc, VoucherCommitError):
            raise
        raise VoucherCommitError("Voucher commit failed") from exc

    logger.info("Voucher committed id=%s code=%s house=%s", voucher_id, code, draft.house_number)
    return CommitResult(
        voucher_id=voucher_id,
        confirmation_code=code,
        house_number=draft.house_number,
        amount=amount,
    )
