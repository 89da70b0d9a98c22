"""Receipt intake: upload the artifact, read its fields, build the draft.

The upload happens first and is permanent; a failure after it raises ``ExtractionError``
and leaves the stored file in place.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from app.core.storage import ReceiptStorage, StorageError
from app.schemas.voucher import VoucherDraft, VoucherField
from app.services.ai.voucher_extract.service import VoucherExtractError, extract_voucher_fields
from app.services.house_number import decode_house_number
from app.services.voucher_messages import missing_field_prompt
from app.services.voucher_validation import validate_amount, validate_date, validate_reference, validate_time

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/heic",
    "image/heif",
}
PDF_TYPE = "application/pdf"


class UnsupportedMediaError(ValueError):
    def __init__(self, mime_type: str) -> None:
        super().__init__(f"Unsupported media type: {mime_type or 'unknown'}")
        self.mime_type = mime_type


class ExtractionError(RuntimeError):
    pass


@dataclass
class ExtractionResult:
    draft: VoucherDraft
    artifact_handle: str
    original_filename: Optional[str] = None


def normalize_mime(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def is_supported_media(content_type: Optional[str]) -> bool:
    mime = normalize_mime(content_type)
    return mime == PDF_TYPE or mime in SUPPORTED_IMAGE_TYPES


def build_draft(*, monto: str, fecha_pago: str, referencia: str, hora_transaccion: str) -> VoucherDraft:
    """Keep only values that pass validation; decode the house number from the amount."""
    amount = validate_amount(monto)
    payment_date = validate_date(fecha_pago)
    transaction_time = validate_time(hora_transaccion)
    reference = validate_reference(referencia)

    draft = VoucherDraft(
        amount=amount.value if amount.valid else "",
        payment_date=payment_date.value if payment_date.valid else "",
        transaction_time=transaction_time.value if transaction_time.valid else "",
        reference=reference.value if reference.valid else "",
    )
    draft.house_number = decode_house_number(draft.amount)

    pending = [f for f in draft.missing_fields() if f is not VoucherField.HOUSE_NUMBER]
    if pending:
        draft.fields_incomplete = True
        draft.missing_prompt = missing_field_prompt(pending[0], first=True)
    return draft


class VoucherExtractor:
    def __init__(self, storage: Optional[ReceiptStorage] = None) -> None:
        self._storage = storage or ReceiptStorage()

    async def extract(
        self,
        content: bytes,
        filename: Optional[str],
        content_type: Optional[str],
        locale: str = "es",
    ) -> ExtractionResult:
        mime = normalize_mime(content_type)
        if not is_supported_media(mime):
            raise UnsupportedMediaError(mime)

        try:
            handle = await asyncio.to_thread(
                self._storage.upload,
                filename=filename,
                content=content,
                content_type=mime,
            )
        except StorageError as exc:
            raise ExtractionError("receipt_upload_failed") from exc

        try:
            fields = await extract_voucher_fields(content, mime_type=mime, filename=filename or "", locale=locale)
        except VoucherExtractError as exc:
            logger.warning("Receipt stored but extraction failed path=%s", handle)
            raise ExtractionError(str(exc)) from exc

        draft = build_draft(
            monto=fields.monto,
            fecha_pago=fields.fecha_pago,
            referencia=fields.referencia,
            hora_transaccion=fields.hora_transaccion,
        )
        logger.info(
            "Receipt extracted path=%s missing=%s model=%s",
            handle,
            [f.value for f in draft.missing_fields()],
            fields.model_version,
        )
        return ExtractionResult(draft=draft, artifact_handle=handle, original_filename=filename)
