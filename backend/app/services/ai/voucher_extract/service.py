"""Voucher receipt extraction — asks the configured AI provider for the payment fields."""

from __future__ import annotations

import logging

from app.services.ai.common.json_tools import extract_json_object
from app.services.ai.common.providers import Attachment
from app.services.ai.common.router import resolve
from app.services.ai.voucher_extract.contracts import AIVoucherExtractResult

logger = logging.getLogger(__name__)


class VoucherExtractError(RuntimeError):
    pass


VOUCHER_EXTRACT_PROMPT = """Eres un extractor de datos de comprobantes de pago bancarios (MXN).
Lee el comprobante adjunto y responde SOLO con un objeto JSON con estos campos:
- monto: importe pagado tal como aparece, sin símbolo de moneda ni comas (ejemplo: "1500.15")
- fecha_pago: fecha de la operación en formato YYYY-MM-DD
- referencia: referencia, folio o número de autorización bancaria
- hora_transaccion: hora de la operación en formato HH:MM:SS (24 horas)

Si un campo no aparece o no es legible, usa una cadena vacía. No inventes valores.
Idioma del comprobante: {locale}"""


async def extract_voucher_fields(
    content: bytes,
    *,
    mime_type: str,
    filename: str = "",
    locale: str = "es",
) -> AIVoucherExtractResult:
    """Read ``monto``/``fecha_pago``/``referencia``/``hora_transaccion`` from a receipt.

    Raises ``VoucherExtractError`` when the provider call fails or its answer holds no JSON
    object.
    """
    config = resolve("voucher_extract")
    prompt = VOUCHER_EXTRACT_PROMPT.format(locale=locale or "es")

    try:
        result = await config.provider.generate(
            prompt,
            attachments=[Attachment(content=content, mime_type=mime_type, filename=filename)],
            model=config.model,
            temperature=0.0,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
        )
    except Exception as exc:
        logger.exception("AI voucher extraction failed provider=%s", config.provider.name)
        raise VoucherExtractError("provider_call_failed") from exc

    parsed = extract_json_object(result.raw_text)
    if parsed is None:
        logger.warning("AI returned non-JSON voucher response: %s", result.raw_text[:200])
        raise VoucherExtractError("invalid_provider_response")

    logger.info(
        "Voucher fields extracted provider=%s model=%s latency_ms=%s",
        result.provider,
        result.model,
        result.latency_ms,
    )
    return AIVoucherExtractResult(
        monto=parsed.get("monto"),
        fecha_pago=parsed.get("fecha_pago"),
        referencia=parsed.get("referencia"),
        hora_transaccion=parsed.get("hora_transaccion"),
        model_version=f"{result.provider}:{result.model}",
        raw_extraction=parsed,
    )
