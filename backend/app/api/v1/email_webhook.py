"""CloudMailin inbound email webhook — receipts attached to emails and replies to our prompts."""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_db, get_runtime
from app.core.runtime import CHANNEL_EMAIL, VoucherRuntime
from app.services.messaging import EmailMessenger
from app.services.voucher_extraction import is_supported_media, normalize_mime
from app.utils.phone import log_safe
from app.utils.rate_limit import enforce_webhook_rate_limit, sender_allowed

router = APIRouter()
logger = logging.getLogger(__name__)


def _ensure_email_webhook_enabled() -> None:
    settings = get_settings()
    if not settings.enable_email_webhook:
        raise HTTPException(404, "No encontrado")
    if not settings.cloudmailin_username or not settings.cloudmailin_password:
        raise HTTPException(500, "Autenticación del webhook de CloudMailin no configurada")


def verify_basic_auth(request: Request, expected_user: str, expected_pass: str) -> bool:
    """Verify HTTP Basic Auth credentials from CloudMailin webhook."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(auth[6:], validate=True).decode("utf-8")
        user, password = decoded.split(":", 1)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return False
    return hmac.compare_digest(user, expected_user) and hmac.compare_digest(password, expected_pass)


def _first_receipt_attachment(attachments: Any) -> Optional[tuple[bytes, str, str]]:
    """``(content, filename, mime)`` of the first image/PDF attachment with inline content."""
    if not isinstance(attachments, list):
        return None
    for item in attachments:
        if not isinstance(item, dict):
            continue
        mime = normalize_mime(str(item.get("content_type") or ""))
        if not is_supported_media(mime) or not item.get("content"):
            continue
        try:
            content = base64.b64decode(str(item["content"]))
        except (binascii.Error, ValueError):
            logger.warning("Skipping attachment with invalid base64 file=%s", item.get("file_name"))
            continue
        return content, str(item.get("file_name") or "comprobante"), mime
    return None


def _reply_text(body: dict[str, Any]) -> str:
    """CloudMailin's ``reply_plain`` strips quoted history; fall back to the first plain line."""
    reply_plain = str(body.get("reply_plain") or "").strip()
    if reply_plain:
        return reply_plain.splitlines()[0].strip()
    for line in str(body.get("plain") or "").splitlines():
        line = line.strip()
        if line and not line.startswith(">"):
            return line
    return ""


@router.post("/webhook/email/inbound")
async def email_inbound_webhook(
    request: Request,
    db: Session = Depends(get_db),
    runtime: VoucherRuntime = Depends(get_runtime),
):
    """Receive inbound email from CloudMailin and feed it to the voucher conversation."""
    _ensure_email_webhook_enabled()
    settings = get_settings()
    enforce_webhook_rate_limit(request, scope="email_webhook", ip_limit=settings.rate_limit_email_webhook_ip_per_min)

    # --- Basic Auth verification (CloudMailin sends credentials in URL → Authorization header) ---
    if not verify_basic_auth(request, settings.cloudmailin_username, settings.cloudmailin_password):
        logger.warning("Email webhook auth failed")
        raise HTTPException(403, "Credenciales inválidas")

    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(400, "JSON inválido") from exc
    if not isinstance(body, dict):
        raise HTTPException(400, "JSON inválido")

    envelope = body.get("envelope") or {}
    headers = body.get("headers") or {}
    sender = str(envelope.get("from") or "").strip().lower()
    message_id = str(headers.get("message_id") or headers.get("Message-Id") or "").strip()

    if not sender:
        raise HTTPException(400, "Falta el remitente")

    # --- Idempotency: skip duplicate Message-Id ---
    if message_id and runtime.dedup.seen(f"email:{message_id}"):
        logger.info("Duplicate email Message-Id=%s — skipping", message_id)
        return {"status": "duplicate"}

    if not sender_allowed("email_webhook", sender):
        raise HTTPException(429, "Too Many Requests")

    conversation = runtime.conversation(CHANNEL_EMAIL)
    attachment = _first_receipt_attachment(body.get("attachments"))
    if attachment is not None:
        content, filename, mime = attachment
        logger.info("Email receipt from=%s file=%s", log_safe(sender), filename)
        await conversation.handle_artifact(sender, content=content, filename=filename, content_type=mime)
        return {"status": "ok"}

    text = _reply_text(body)
    messenger = conversation.messenger
    if isinstance(messenger, EmailMessenger):
        text = messenger.resolve_reply(sender, text)
    await conversation.handle_reply(db, sender, text)
    return {"status": "ok"}
