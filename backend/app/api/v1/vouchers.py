"""REST access to vouchers: listing, detail, one-shot OCR and the two-step web intake.

The web intake keeps no server-side conversation: ``/frontend/upload`` returns the fields
read from the receipt and ``/frontend/confirm`` receives them back, corrected by the user.
"""

from __future__ import annotations

import logging
import mimetypes
from datetime import date, datetime, time, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_db, get_runtime
from app.core.runtime import VoucherRuntime
from app.models.voucher import Voucher
from app.schemas.voucher import (
    VoucherConfirmIn,
    VoucherConfirmOut,
    VoucherDetailOut,
    VoucherDraft,
    VoucherField,
    VoucherOut,
    VoucherUploadOut,
)
from app.services import voucher_messages as msg
from app.services.db_retry import call_with_retry
from app.services.duplicate_detector import resolve_house_number
from app.services.voucher_commit import (
    ConfirmationCodeExhaustedError,
    Submitter,
    VoucherCommitError,
    commit_voucher,
    is_retryable_commit_error,
)
from app.services.voucher_extraction import ExtractionError, UnsupportedMediaError, normalize_mime
from app.services.voucher_validation import (
    amount_as_decimal,
    combine_payment_datetime,
    validate_amount,
    validate_date,
    validate_house_number,
    validate_reference,
    validate_time,
)
from app.utils.phone import log_safe, normalize_phone
from app.utils.rate_limit import enforce_webhook_rate_limit

router = APIRouter()
logger = logging.getLogger(__name__)

DEFAULT_TRANSACTION_TIME = "12:00:00"
MAX_PAGE_SIZE = 500


def _ensure_voucher_api_enabled() -> None:
    if not get_settings().enable_voucher_api:
        raise HTTPException(404, "No encontrado")


def _enforce_upload_rate_limit(request: Request) -> None:
    enforce_webhook_rate_limit(
        request,
        scope="voucher_upload",
        ip_limit=get_settings().rate_limit_voucher_upload_ip_per_min,
    )


def _voucher_out(db: Session, voucher: Voucher) -> VoucherOut:
    out = VoucherOut.model_validate(voucher)
    out.number_house = resolve_house_number(db, voucher.id)
    return out


# ── Listing ──


@router.get("/vouchers", response_model=list[VoucherOut], dependencies=[Depends(_ensure_voucher_api_enabled)])
def list_vouchers(
    confirmation_status: Optional[bool] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Vouchers newest first. ``end_date`` is inclusive."""
    if start_date and end_date and start_date > end_date:
        raise HTTPException(400, "start_date no puede ser posterior a end_date")

    stmt = select(Voucher)
    if confirmation_status is not None:
        stmt = stmt.where(Voucher.confirmation_status == confirmation_status)
    if start_date is not None:
        stmt = stmt.where(Voucher.date >= datetime.combine(start_date, time.min))
    if end_date is not None:
        stmt = stmt.where(Voucher.date < datetime.combine(end_date + timedelta(days=1), time.min))
    stmt = stmt.order_by(Voucher.date.desc(), Voucher.id.desc()).limit(limit).offset(offset)

    vouchers = db.execute(stmt).scalars().all()
    return [_voucher_out(db, voucher) for voucher in vouchers]


@router.get(
    "/vouchers/{voucher_id}",
    response_model=VoucherDetailOut,
    dependencies=[Depends(_ensure_voucher_api_enabled)],
)
def get_voucher(
    voucher_id: int,
    db: Session = Depends(get_db),
    runtime: VoucherRuntime = Depends(get_runtime),
):
    voucher = db.get(Voucher, voucher_id)
    if voucher is None:
        raise HTTPException(404, f"Voucher con ID {voucher_id} no encontrado")

    out = VoucherDetailOut.model_validate(voucher)
    out.number_house = resolve_house_number(db, voucher.id)
    if voucher.url:
        # A missing link must not hide the voucher itself.
        try:
            out.view_url = runtime.storage.signed_url(voucher.url, get_settings().receipt_view_url_ttl_seconds)
        except Exception:
            logger.warning("Could not sign receipt URL voucher_id=%s", voucher.id, exc_info=True)
    return out


# ── Receipt intake ──


def _upload_mime(upload: UploadFile) -> str:
    mime = normalize_mime(upload.content_type)
    if mime and mime != "application/octet-stream":
        return mime
    guessed, _ = mimetypes.guess_type(upload.filename or "")
    return normalize_mime(guessed) or mime


def _suggestions(missing: list[VoucherField]) -> list[str]:
    return [f"Indica el dato: {msg.FIELD_LABELS[field]}" for field in missing]


async def _extract_upload(runtime: VoucherRuntime, upload: UploadFile, locale: str) -> VoucherUploadOut:
    content = await upload.read()
    if not content:
        raise HTTPException(400, "El archivo está vacío")
    max_bytes = get_settings().voucher_upload_max_bytes
    if len(content) > max_bytes:
        raise HTTPException(413, f"El archivo excede el tamaño máximo de {max_bytes // (1024 * 1024)} MB")

    mime = _upload_mime(upload)
    try:
        result = await runtime.extractor.extract(content, upload.filename, mime, locale)
    except UnsupportedMediaError as exc:
        raise HTTPException(400, msg.unsupported_file_type(exc.mime_type)) from None
    except ExtractionError as exc:
        logger.warning("Receipt upload could not be processed file=%s: %s", upload.filename, exc)
        raise HTTPException(400, "No se pudo procesar el comprobante. Intenta con otra imagen o PDF.") from None

    draft: VoucherDraft = result.draft
    missing = draft.missing_fields()
    if missing:
        message = draft.missing_prompt or msg.missing_field_prompt(missing[0], first=True)
    else:
        message = msg.confirmation_summary(draft)
    return VoucherUploadOut(
        draft=draft,
        artifact_handle=result.artifact_handle,
        original_filename=result.original_filename,
        valid=not missing,
        missing_fields=missing,
        suggestions=_suggestions(missing),
        message=message,
    )


@router.post(
    "/vouchers/ocr-service",
    response_model=VoucherUploadOut,
    dependencies=[Depends(_ensure_voucher_api_enabled), Depends(_enforce_upload_rate_limit)],
)
async def ocr_service(
    file: UploadFile = File(...),
    language: str = Form("es"),
    runtime: VoucherRuntime = Depends(get_runtime),
):
    """Store a receipt and read its fields, with the chat message a submitter would get."""
    return await _extract_upload(runtime, file, language or "es")


@router.post(
    "/vouchers/frontend/upload",
    response_model=VoucherUploadOut,
    dependencies=[Depends(_ensure_voucher_api_enabled), Depends(_enforce_upload_rate_limit)],
)
async def frontend_upload(
    file: UploadFile = File(...),
    language: str = Form("es"),
    runtime: VoucherRuntime = Depends(get_runtime),
):
    return await _extract_upload(runtime, file, language or "es")


def _submitter(body: VoucherConfirmIn) -> Submitter:
    phone = None
    if body.phone:
        try:
            phone = normalize_phone(body.phone)
        except ValueError:
            raise HTTPException(400, {"message": "Datos inválidos", "errors": {"phone": "Teléfono no válido"}}) from None
    email = body.email.strip().lower() if body.email else None
    return Submitter(phone=phone, email=email or None)


@router.post(
    "/vouchers/frontend/confirm",
    response_model=VoucherConfirmOut,
    dependencies=[Depends(_ensure_voucher_api_enabled)],
)
def frontend_confirm(
    body: VoucherConfirmIn,
    db: Session = Depends(get_db),
    runtime: VoucherRuntime = Depends(get_runtime),
):
    """Validate the fields the user confirmed, reject duplicates and commit the voucher."""
    checks = {
        VoucherField.AMOUNT: validate_amount(body.amount),
        VoucherField.PAYMENT_DATE: validate_date(body.payment_date),
        VoucherField.TRANSACTION_TIME: validate_time(body.transaction_time or DEFAULT_TRANSACTION_TIME),
        VoucherField.REFERENCE: validate_reference(body.reference),
        VoucherField.HOUSE_NUMBER: validate_house_number(str(body.house_number)),
    }
    errors = {field.value: result.error for field, result in checks.items() if not result.valid}
    if errors:
        raise HTTPException(400, {"message": "Datos inválidos", "errors": errors})

    draft = VoucherDraft(
        amount=checks[VoucherField.AMOUNT].value,
        payment_date=checks[VoucherField.PAYMENT_DATE].value,
        transaction_time=checks[VoucherField.TRANSACTION_TIME].value,
        reference=checks[VoucherField.REFERENCE].value,
        house_number=int(checks[VoucherField.HOUSE_NUMBER].value),
    )
    submitter = _submitter(body)

    duplicate = runtime.duplicates.check(
        db,
        payment_at=combine_payment_datetime(draft.payment_date, draft.transaction_time),
        amount=amount_as_decimal(draft.amount),
        house_number=draft.house_number,
    )
    if duplicate.is_duplicate:
        raise HTTPException(409, msg.duplicate_message(duplicate.confirmation_code))

    settings = get_settings()
    try:
        result = call_with_retry(
            lambda: commit_voucher(db, draft=draft, artifact_handle=body.artifact_handle, submitter=submitter),
            is_retryable=is_retryable_commit_error,
            max_attempts=settings.db_retry_max_attempts,
            base_delay=settings.db_retry_base_delay_seconds,
            label="voucher commit",
        )
    except ConfirmationCodeExhaustedError:
        raise HTTPException(400, "No se pudo generar un código de confirmación único. Intenta nuevamente.") from None
    except VoucherCommitError:
        raise HTTPException(500, msg.GENERIC_RETRY) from None

    logger.info(
        "Voucher confirmed from web code=%s house=%s submitter=%s",
        result.confirmation_code,
        result.house_number,
        log_safe(submitter.phone or submitter.email or ""),
    )
    voucher = db.get(Voucher, result.voucher_id)
    return VoucherConfirmOut(confirmation_code=result.confirmation_code, voucher=_voucher_out(db, voucher))
