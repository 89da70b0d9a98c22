"""Detect a receipt that was already committed for the same house.

A prior voucher is a duplicate when its payment timestamp matches to the second, its
amount matches within an epsilon, and it resolves (voucher -> record -> house_record ->
house) to the same house number. Any unexpected failure reports "not a duplicate": a
missed duplicate is cheaper than blocking a legitimate payment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.voucher import House, HouseRecord, Record, Voucher
from app.services.db_retry import call_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DuplicateCheckResult:
    is_duplicate: bool
    voucher_id: Optional[int] = None
    confirmation_code: Optional[str] = None


NOT_DUPLICATE = DuplicateCheckResult(is_duplicate=False)


def _to_second(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.replace(tzinfo=None)
    return value.replace(microsecond=0)


def _find_candidates(db: Session, payment_at: datetime, amount: Decimal, epsilon: Decimal) -> list[Voucher]:
    start = _to_second(payment_at)
    stmt = (
        select(Voucher)
        .where(
            Voucher.date >= start - timedelta(seconds=1),
            Voucher.date < start + timedelta(seconds=2),
            Voucher.amount > amount - epsilon,
            Voucher.amount < amount + epsilon,
        )
        .order_by(Voucher.id)
    )
    return list(db.execute(stmt).scalars().all())


def resolve_house_number(db: Session, voucher_id: int) -> Optional[int]:
    """Follow voucher -> records -> house_records -> house. None when the chain is broken."""
    record_ids = db.execute(select(Record.id).where(Record.vouchers_id == voucher_id).order_by(Record.id)).scalars().all()
    for record_id in record_ids:
        house_id = (
            db.execute(
                select(HouseRecord.house_id).where(HouseRecord.record_id == record_id).order_by(HouseRecord.id).limit(1)
            )
            .scalars()
            .first()
        )
        if house_id is None:
            continue
        number = db.execute(select(House.number_house).where(House.id == house_id)).scalars().first()
        if number is not None:
            return int(number)
    return None


class DuplicateDetector:
    def __init__(
        self,
        *,
        epsilon: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._epsilon = Decimal(str(settings.duplicate_amount_epsilon if epsilon is None else epsilon))
        self._retry_attempts = settings.db_retry_max_attempts if retry_attempts is None else retry_attempts
        self._retry_base_delay = settings.db_retry_base_delay_seconds if retry_base_delay is None else retry_base_delay

    def check(self, db: Session, *, payment_at: datetime, amount: Decimal, house_number: int) -> DuplicateCheckResult:
        try:
            return self._check(db, payment_at=payment_at, amount=Decimal(amount), house_number=house_number)
        except Exception:
            logger.warning("Duplicate check failed; allowing voucher", exc_info=True)
            try:
                db.rollback()
            except Exception:
                logger.warning("Rollback after failed duplicate check also failed", exc_info=True)
            return NOT_DUPLICATE

    def _check(self, db: Session, *, payment_at: datetime, amount: Decimal, house_number: int) -> DuplicateCheckResult:
        target = _to_second(payment_at)
        candidates = call_with_retry(
            lambda: _find_candidates(db, payment_at, amount, self._epsilon),
            max_attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            label="duplicate lookup",
        )
        matches = [
            v
            for v in candidates
            if _to_second(v.date) == target and abs(Decimal(v.amount) - amount) < self._epsilon
        ]
        if not matches:
            return NOT_DUPLICATE

        logger.info("Found %s vouchers with same timestamp and amount; checking house", len(matches))
        for voucher in matches:
            try:
                resolved = resolve_house_number(db, voucher.id)
            except Exception:
                logger.warning("Could not resolve house for voucher id=%s; skipping", voucher.id, exc_info=True)
                continue
            if resolved == house_number:
                logger.warning(
                    "Duplicate voucher detected id=%s code=%s house=%s",
                    voucher.id,
                    voucher.confirmation_code,
                    house_number,
                )
                return DuplicateCheckResult(
                    is_duplicate=True,
                    voucher_id=voucher.id,
                    confirmation_code=voucher.confirmation_code,
                )
        return NOT_DUPLICATE
