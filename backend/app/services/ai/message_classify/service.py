"""Idle message classification — decides how to answer text sent outside a voucher flow."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from app.services.ai.common.json_tools import extract_json_object
from app.services.ai.common.router import resolve
from app.services.ai.message_classify.contracts import AIMessageClassification

logger = logging.getLogger(__name__)


class MessageClassifyError(RuntimeError):
    pass


MESSAGE_CLASSIFY_PROMPT = """Eres un asistente de mensajería para un condominio que SOLO recibe comprobantes de pago.
Clasifica el mensaje del usuario en una de estas categorías:
- "payment_info": pregunta sobre pagos, montos, fechas o cuentas bancarias
- "payment_voucher": indica que ya pagó o que va a enviar un comprobante
- "greeting": saludo simple
- "off_topic": cualquier tema que no sea de pagos

Responde SOLO con un objeto JSON con esta estructura:
{{"intent": "...", "confidence": 0.0 a 1.0, "response": "texto breve para el usuario"}}

Mensaje del usuario:
{text}"""


async def classify_message(text: str) -> AIMessageClassification:
    """Classify *text* into a ``MessageIntent`` with a suggested reply.

    Raises ``MessageClassifyError`` when the provider call fails or its answer holds no
    usable intent.
    """
    config = resolve("message_classify")
    prompt = MESSAGE_CLASSIFY_PROMPT.format(text=text.strip())

    try:
        result = await config.provider.generate(
            prompt,
            model=config.model,
            temperature=0.0,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
        )
    except Exception as exc:
        logger.exception("AI message classification failed provider=%s", config.provider.name)
        raise MessageClassifyError("provider_call_failed") from exc

    parsed = extract_json_object(result.raw_text)
    if parsed is None or not parsed.get("intent"):
        logger.warning("AI returned no intent: %s", result.raw_text[:200])
        raise MessageClassifyError("invalid_provider_response")

    try:
        classification = AIMessageClassification.model_validate(parsed)
    except ValidationError as exc:
        raise MessageClassifyError("invalid_provider_response") from exc

    logger.info(
        "Message classified intent=%s confidence=%.2f provider=%s",
        classification.intent.value,
        classification.confidence,
        result.provider,
    )
    return classification


async def classified_reply(text: str) -> str:
    """Reply text for an idle message, per its classified intent."""
    classification = await classify_message(text)
    return classification.reply_text()
