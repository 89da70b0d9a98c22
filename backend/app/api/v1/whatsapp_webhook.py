"""WhatsApp Cloud API webhook — receipts and replies from residents."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import mimetypes
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_db, get_runtime
from app.core.runtime import CHANNEL_WHATSAPP, VoucherRuntime
from app.services import voucher_messages as msg
from app.services.messaging import MessagingError
from app.utils.phone import log_safe
from app.utils.rate_limit import enforce_webhook_rate_limit, sender_allowed

router = APIRouter()
logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"


@dataclass(frozen=True)
class InboundMessage:
    message_id: str
    sender: str
    kind: str
    text: str = ""
    media_id: str = ""
    mime_type: str = ""
    filename: str = ""


def _ensure_whatsapp_enabled() -> None:
    if not get_settings().enable_whatsapp_webhook:
        raise HTTPException(404, "No encontrado")


def verify_meta_signature(raw_body: bytes, header: Optional[str], app_secret: str) -> bool:
    """Check ``X-Hub-Signature-256: sha256=<hex>`` against the app secret."""
    if not header or not header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(header[len("sha256=") :], expected)


def parse_inbound_message(body: dict[str, Any]) -> Optional[InboundMessage]:
    """First message of ``entry[0].changes[0].value``; None for status callbacks."""
    try:
        value = body["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        return None
    messages = value.get("messages") or []
    if not messages:
        return None
    message = messages[0]
    kind = str(message.get("type") or "")
    base = {"message_id": str(message.get("id") or ""), "sender": str(message.get("from") or "")}

    if kind == "text":
        return InboundMessage(kind=kind, text=str((message.get("text") or {}).get("body") or ""), **base)
    if kind == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return InboundMessage(kind=kind, text=str(reply.get("id") or ""), **base)
    if kind == "button":
        button = message.get("button") or {}
        return InboundMessage(kind=kind, text=str(button.get("payload") or button.get("text") or ""), **base)
    if kind in ("image", "document"):
        media = message.get(kind) or {}
        return InboundMessage(
            kind=kind,
            media_id=str(media.get("id") or ""),
            mime_type=str(media.get("mime_type") or ""),
            filename=str(media.get("filename") or ""),
            **base,
        )
    return InboundMessage(kind=kind or "unknown", **base)


def _media_filename(message: InboundMessage) -> str:
    if message.filename:
        return message.filename
    ext = mimetypes.guess_extension(message.mime_type or "") or ""
    return f"{message.media_id}{ext}"


@router.get("/webhook/whatsapp", response_class=PlainTextResponse)
async def whatsapp_verify(request: Request):
    """Meta subscription handshake."""
    _ensure_whatsapp_enabled()
    settings = get_settings()
    params = request.query_params
    token = params.get("hub.verify_token") or ""
    if (
        params.get("hub.mode") == "subscribe"
        and settings.whatsapp_verify_token
        and hmac.compare_digest(token, settings.whatsapp_verify_token)
    ):
        return PlainTextResponse(params.get("hub.challenge") or "")
    raise HTTPException(403, "Token de verificación inválido")


@router.post("/webhook/whatsapp")
async def whatsapp_webhook(
    request: Request,
    db: Session = Depends(get_db),
    runtime: VoucherRuntime = Depends(get_runtime),
):
    _ensure_whatsapp_enabled()
    settings = get_settings()
    enforce_webhook_rate_limit(request, scope="whatsapp", ip_limit=settings.rate_limit_whatsapp_ip_per_min)

    raw_body = await request.body()
    if settings.whatsapp_app_secret and not verify_meta_signature(
        raw_body, request.headers.get("X-Hub-Signature-256"), settings.whatsapp_app_secret
    ):
        logger.warning("WhatsApp webhook signature invalid")
        raise HTTPException(403, "Firma inválida")

    try:
        body = json.loads(raw_body or b"{}")
    except ValueError as exc:
        raise HTTPException(400, "JSON inválido") from exc
    if not isinstance(body, dict):
        raise HTTPException(400, "JSON inválido")

    message = parse_inbound_message(body)
    if message is None or not message.sender:
        return {"status": "ignored"}
    if runtime.dedup.seen(f"whatsapp:{message.message_id}"):
        logger.info("Duplicate WhatsApp message id=%s ignored", message.message_id)
        return {"status": "duplicate"}
    if not sender_allowed("whatsapp", message.sender):
        logger.warning("WhatsApp sender rate limited from=%s", log_safe(message.sender))
        return {"status": "rate_limited"}

    conversation = runtime.conversation(CHANNEL_WHATSAPP)
    sender = message.sender

    if message.kind == "image" or (message.kind == "document" and message.mime_type == PDF_MIME):
        try:
            content, mime_type = await runtime.whatsapp.download_media(message.media_id)
        except MessagingError:
            await conversation.messenger.send_text(sender, msg.PROCESSING_ERROR)
            return {"status": "media_error"}
        await conversation.handle_artifact(
            sender,
            content=content,
            filename=_media_filename(message),
            content_type=mime_type or message.mime_type,
        )
        return {"status": "ok"}

    if message.kind == "document":
        await conversation.messenger.send_text(sender, msg.ONLY_PDF_SUPPORTED)
        return {"status": "unsupported"}

    if message.kind in ("text", "interactive", "button"):
        await conversation.handle_reply(db, sender, message.text)
        return {"status": "ok"}

    await conversation.messenger.send_text(sender, msg.UNSUPPORTED_MESSAGE)
    return {"status": "unsupported"}
