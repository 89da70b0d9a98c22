from __future__ import annotations

import logging
import mimetypes

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator
from twilio.twiml.messaging_response import MessagingResponse

from app.core.config import get_settings
from app.core.dependencies import get_db, get_runtime
from app.core.runtime import CHANNEL_TWILIO_WHATSAPP, VoucherRuntime
from app.services import voucher_messages as msg
from app.services.messaging import MessagingError, TwilioWhatsAppMessenger
from app.utils.phone import log_safe
from app.utils.rate_limit import enforce_webhook_rate_limit, sender_allowed

router = APIRouter()
logger = logging.getLogger(__name__)


def _twilio_request_url(request: Request) -> str:
    url = request.url
    proto = request.headers.get("x-forwarded-proto")
    host = request.headers.get("x-forwarded-host")
    if proto:
        url = url.replace(scheme=proto)
    if host:
        url = url.replace(netloc=host)
    return str(url)


def _empty_twiml() -> Response:
    return Response(content=str(MessagingResponse()), media_type="application/xml")


def _twilio_signature_valid(request: Request, form: dict) -> bool:
    settings = get_settings()
    if settings.allow_insecure_webhooks:
        return True
    if not settings.twilio_auth_token:
        raise HTTPException(500, "Twilio no está configurado")
    signature = request.headers.get("X-Twilio-Signature")
    validator = RequestValidator(settings.twilio_auth_token)
    request_url = settings.twilio_webhook_url or _twilio_request_url(request)
    return bool(signature and validator.validate(request_url, form, signature))


def _sender_key(from_value: str) -> str:
    """``whatsapp:+521...`` -> ``521...``, the same key the Cloud API webhook uses."""
    value = (from_value or "").strip()
    if value.startswith("whatsapp:"):
        value = value[len("whatsapp:") :]
    return value.lstrip("+")


@router.post("/webhook/twilio/whatsapp")
async def twilio_whatsapp_webhook(
    request: Request,
    db: Session = Depends(get_db),
    runtime: VoucherRuntime = Depends(get_runtime),
):
    """
    WhatsApp via Twilio Messaging:
    - Validates Twilio signature (or bypasses when ALLOW_INSECURE_WEBHOOKS=true).
    - ``MediaUrl0`` starts a new receipt; ``Body`` is a reply (numbers map to offered options).
    - Always answers with empty TwiML; replies go out through the REST API.
    """
    settings = get_settings()
    if not settings.enable_twilio_whatsapp:
        raise HTTPException(404, "No encontrado")
    enforce_webhook_rate_limit(request, scope="twilio_whatsapp", ip_limit=settings.rate_limit_twilio_ip_per_min)

    form = {key: str(value) for key, value in (await request.form()).items()}
    if not _twilio_signature_valid(request, form):
        logger.warning("Twilio signature invalid from=%s", log_safe(form.get("From", "")))
        raise HTTPException(403, "Firma inválida")

    sender = _sender_key(form.get("From", ""))
    if not sender:
        raise HTTPException(400, "Falta el remitente")
    message_sid = form.get("MessageSid") or form.get("SmsMessageSid") or ""
    if message_sid and runtime.dedup.seen(f"twilio:{message_sid}"):
        return _empty_twiml()
    if not sender_allowed("twilio_whatsapp", sender):
        logger.warning("Twilio sender rate limited from=%s", log_safe(sender))
        return _empty_twiml()

    conversation = runtime.conversation(CHANNEL_TWILIO_WHATSAPP)
    messenger = conversation.messenger

    try:
        num_media = int(form.get("NumMedia") or 0)
    except ValueError:
        num_media = 0

    if num_media > 0 and form.get("MediaUrl0"):
        if not isinstance(messenger, TwilioWhatsAppMessenger):
            raise RuntimeError("Twilio channel is not wired to the Twilio messenger")
        try:
            content, mime_type = await messenger.download_media(form["MediaUrl0"])
        except MessagingError:
            await messenger.send_text(sender, msg.PROCESSING_ERROR)
            return _empty_twiml()
        mime_type = mime_type or form.get("MediaContentType0", "")
        ext = mimetypes.guess_extension(mime_type) or ""
        await conversation.handle_artifact(
            sender,
            content=content,
            filename=f"{message_sid or 'twilio'}{ext}",
            content_type=mime_type,
        )
        return _empty_twiml()

    text = form.get("Body", "")
    if isinstance(messenger, TwilioWhatsAppMessenger):
        text = messenger.resolve_reply(sender, text)
    await conversation.handle_reply(db, sender, text)
    return _empty_twiml()
