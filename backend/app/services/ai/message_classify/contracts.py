"""Message classify scope contracts."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, field_validator


class MessageIntent(str, Enum):
    PAYMENT_INFO = "payment_info"
    PAYMENT_VOUCHER = "payment_voucher"
    GREETING = "greeting"
    OFF_TOPIC = "off_topic"


OFF_TOPIC_REPLY = "Lo lamento, solo estoy configurado para recibir información respecto a los pagos en el condominio."

DEFAULT_REPLIES = {
    MessageIntent.PAYMENT_INFO: (
        "Para dudas sobre tus pagos contacta a la administración. "
        "Si ya pagaste, envíame tu comprobante como imagen o PDF."
    ),
    MessageIntent.PAYMENT_VOUCHER: "Perfecto, por favor envía tu comprobante de pago como imagen o PDF.",
    MessageIntent.GREETING: "¡Hola! Envíame tu comprobante de pago como imagen o PDF para procesarlo.",
    MessageIntent.OFF_TOPIC: OFF_TOPIC_REPLY,
}


class AIMessageClassification(BaseModel):
    """Intent of a free-text message received outside a voucher conversation."""

    intent: MessageIntent
    confidence: float = 0.8
    response: str = ""

    @field_validator("intent", mode="before")
    @classmethod
    def _normalize_intent(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            if value not in {item.value for item in MessageIntent}:
                return MessageIntent.OFF_TOPIC
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.8
        return min(max(number, 0.0), 1.0)

    @field_validator("response", mode="before")
    @classmethod
    def _as_text(cls, value):
        if value is None:
            return ""
        return str(value).strip()

    def reply_text(self) -> str:
        # Off-topic answers never come from the model.
        if self.intent is MessageIntent.OFF_TOPIC:
            return OFF_TOPIC_REPLY
        return self.response or DEFAULT_REPLIES[self.intent]
