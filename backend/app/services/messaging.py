"""Outbound messaging channels used by the voucher conversation.

``Messenger`` is the contract the orchestrator talks to. WhatsApp Cloud API supports
interactive buttons and lists natively; Twilio and email render them as numbered text.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import smtplib
import ssl
import time
from collections.abc import Callable
from dataclasses import dataclass
from email.message import EmailMessage
from threading import Lock
from typing import Any, Optional

import httpx

from app.utils.phone import log_safe

logger = logging.getLogger(__name__)

MAX_BUTTONS = 3
BUTTON_TITLE_MAX = 20
ROW_TITLE_MAX = 24
ROW_DESCRIPTION_MAX = 72


class MessagingError(RuntimeError):
    pass


@dataclass(frozen=True)
class ButtonOption:
    id: str
    title: str


@dataclass(frozen=True)
class ListRow:
    id: str
    title: str
    description: str = ""


@dataclass(frozen=True)
class ListSection:
    rows: list[ListRow]
    title: str = ""


class Messenger(abc.ABC):
    channel: str = "base"

    @abc.abstractmethod
    async def send_text(self, to: str, body: str) -> None: ...

    @abc.abstractmethod
    async def send_buttons(self, to: str, body: str, options: list[ButtonOption]) -> None: ...

    @abc.abstractmethod
    async def send_list(self, to: str, body: str, button_label: str, sections: list[ListSection]) -> None: ...


def _cut(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


# ── WhatsApp Cloud API ───────────────────────────────────────────────


class WhatsAppCloudMessenger(Messenger):
    channel = "whatsapp"

    def __init__(
        self,
        *,
        token: str,
        phone_number_id: str,
        api_version: str = "v21.0",
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._token = token
        self._phone_number_id = phone_number_id
        self._api_version = api_version
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self._token}"},
        )

    @property
    def messages_url(self) -> str:
        return f"{self._base_url}/{self._api_version}/{self._phone_number_id}/messages"

    async def _post(self, to: str, payload: dict[str, Any]) -> None:
        if not self._token or not self._phone_number_id:
            raise MessagingError("WhatsApp Cloud API is not configured")
        body = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to, **payload}
        try:
            async with self._client() as client:
                resp = await client.post(self.messages_url, json=body)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "WhatsApp API error to=%s status=%s body=%s",
                log_safe(to),
                exc.response.status_code,
                exc.response.text[:300],
            )
            raise MessagingError(f"WhatsApp API returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.exception("WhatsApp API request failed to=%s", log_safe(to))
            raise MessagingError("WhatsApp API request failed") from exc
        logger.info("WhatsApp %s sent to=%s", payload.get("type"), log_safe(to))

    async def send_text(self, to: str, body: str) -> None:
        await self._post(to, {"type": "text", "text": {"preview_url": False, "body": body}})

    async def send_buttons(self, to: str, body: str, options: list[ButtonOption]) -> None:
        if len(options) > MAX_BUTTONS:
            logger.warning("WhatsApp allows %s buttons; dropping %s", MAX_BUTTONS, len(options) - MAX_BUTTONS)
            options = options[:MAX_BUTTONS]
        buttons = [
            {"type": "reply", "reply": {"id": opt.id, "title": _cut(opt.title, BUTTON_TITLE_MAX)}}
            for opt in options
        ]
        await self._post(
            to,
            {
                "type": "interactive",
                "interactive": {"type": "button", "body": {"text": body}, "action": {"buttons": buttons}},
            },
        )

    async def send_list(self, to: str, body: str, button_label: str, sections: list[ListSection]) -> None:
        rendered = []
        for section in sections:
            rows = []
            for row in section.rows:
                item = {"id": row.id, "title": _cut(row.title, ROW_TITLE_MAX)}
                if row.description:
                    item["description"] = _cut(row.description, ROW_DESCRIPTION_MAX)
                rows.append(item)
            entry: dict[str, Any] = {"rows": rows}
            if section.title:
                entry["title"] = _cut(section.title, ROW_TITLE_MAX)
            rendered.append(entry)
        await self._post(
            to,
            {
                "type": "interactive",
                "interactive": {
                    "type": "list",
                    "body": {"text": body},
                    "action": {"button": _cut(button_label, BUTTON_TITLE_MAX), "sections": rendered},
                },
            },
        )

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        """Fetch an inbound media object. Returns ``(content, mime_type)``."""
        if not self._token:
            raise MessagingError("WhatsApp Cloud API is not configured")
        meta_url = f"{self._base_url}/{self._api_version}/{media_id}"
        try:
            async with self._client() as client:
                meta = await client.get(meta_url)
                meta.raise_for_status()
                info = meta.json()
                media = await client.get(info["url"])
                media.raise_for_status()
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.exception("WhatsApp media download failed media_id=%s", media_id)
            raise MessagingError("WhatsApp media download failed") from exc
        mime_type = str(info.get("mime_type") or media.headers.get("content-type") or "")
        return media.content, mime_type.split(";")[0].strip()


# ── Text rendering for channels without interactive widgets ──────────


class _OptionMemory:
    """Remembers, per recipient, which option id each offered number stands for."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._options: dict[str, tuple[float, dict[str, str]]] = {}
        self._lock = Lock()

    def remember(self, to: str, option_ids: list[str]) -> None:
        offered = {str(i): option_id for i, option_id in enumerate(option_ids, start=1)}
        with self._lock:
            self._options[to] = (self._clock(), offered)

    def forget(self, to: str) -> None:
        with self._lock:
            self._options.pop(to, None)

    def resolve(self, to: str, reply: str) -> str:
        """Translate a numeric reply. Offered options are forgotten after the first reply."""
        key = (reply or "").strip()
        with self._lock:
            _, offered = self._options.pop(to, (0.0, {}))
        return offered.get(key, reply)

    def sweep(self, max_age_seconds: float) -> int:
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            stale = [to for to, (offered_at, _) in self._options.items() if offered_at < cutoff]
            for to in stale:
                del self._options[to]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._options)


def render_numbered(
    body: str,
    entries: list[tuple[str, str]],
    *,
    hint: str,
    option_ids: Optional[list[str]] = None,
) -> str:
    lines = [body, ""]
    for index, (title, description) in enumerate(entries, start=1):
        line = f"{index}. {title}"
        if description:
            line += f" ({description})"
        if option_ids:
            line += f" [{option_ids[index - 1]}]"
        lines.append(line)
    lines.append("")
    lines.append(hint)
    return "\n".join(lines)


class NumberedTextMessenger(Messenger):
    """Channel without interactive widgets: options go out as a numbered list.

    Only the latest prompt's options are remembered. Any plain text sent afterwards
    replaces the prompt, so the mapping is dropped and a later "2" stays "2".
    """

    reply_hint = "Responde con el número de tu opción."
    show_option_ids = False

    def __init__(self) -> None:
        self._memory = _OptionMemory()

    def resolve_reply(self, to: str, reply: str) -> str:
        return self._memory.resolve(to, reply)

    def sweep_options(self, max_age_seconds: float) -> int:
        return self._memory.sweep(max_age_seconds)

    @abc.abstractmethod
    async def _deliver(self, to: str, body: str) -> None: ...

    async def send_text(self, to: str, body: str) -> None:
        self._memory.forget(to)
        await self._deliver(to, body)

    async def send_buttons(self, to: str, body: str, options: list[ButtonOption]) -> None:
        await self._send_options(to, body, [(opt.id, opt.title, "") for opt in options])

    async def send_list(self, to: str, body: str, button_label: str, sections: list[ListSection]) -> None:
        rows = [row for section in sections for row in section.rows]
        await self._send_options(to, body, [(row.id, row.title, row.description) for row in rows])

    async def _send_options(self, to: str, body: str, entries: list[tuple[str, str, str]]) -> None:
        option_ids = [option_id for option_id, _, _ in entries]
        text = render_numbered(
            body,
            [(title, description) for _, title, description in entries],
            hint=self.reply_hint,
            option_ids=option_ids if self.show_option_ids else None,
        )
        self._memory.remember(to, option_ids)
        await self._deliver(to, text)


# ── WhatsApp over Twilio ─────────────────────────────────────────────


class TwilioWhatsAppMessenger(NumberedTextMessenger):
    channel = "twilio_whatsapp"

    def __init__(self, *, account_sid: str, auth_token: str, from_number: str) -> None:
        super().__init__()
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number

    def _client(self):
        from twilio.rest import Client  # lazy import, only needed when sending

        return Client(self._account_sid, self._auth_token)

    @staticmethod
    def _whatsapp_address(number: str) -> str:
        number = number.strip()
        if number.startswith("whatsapp:"):
            return number
        if not number.startswith("+"):
            number = f"+{number}"
        return f"whatsapp:{number}"

    async def download_media(
        self,
        media_url: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> tuple[bytes, str]:
        """Fetch an inbound ``MediaUrlN``; Twilio media needs the account credentials."""
        try:
            async with httpx.AsyncClient(
                timeout=30.0,
                transport=transport,
                auth=(self._account_sid, self._auth_token),
                follow_redirects=True,
            ) as client:
                resp = await client.get(media_url)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.exception("Twilio media download failed")
            raise MessagingError("Twilio media download failed") from exc
        mime_type = resp.headers.get("content-type") or ""
        return resp.content, mime_type.split(";")[0].strip()

    def _send_sync(self, to: str, body: str) -> None:
        from twilio.base.exceptions import TwilioRestException

        if not self._account_sid or not self._auth_token or not self._from_number:
            raise MessagingError("Twilio WhatsApp is not configured")
        try:
            message = self._client().messages.create(
                to=self._whatsapp_address(to),
                from_=self._whatsapp_address(self._from_number),
                body=body,
            )
        except TwilioRestException as exc:
            logger.exception("Twilio API error sending WhatsApp to=%s", log_safe(to))
            raise MessagingError("Twilio API error") from exc
        logger.info("Twilio WhatsApp sent to=%s sid=%s", log_safe(to), message.sid)

    async def _deliver(self, to: str, body: str) -> None:
        await asyncio.to_thread(self._send_sync, to, body)


# ── Email (SMTP) ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_tls: bool
    from_email: str


def send_email_via_smtp(*, smtp: SmtpConfig, to_email: str, subject: str, body_text: str) -> None:
    msg = EmailMessage()
    msg["From"] = smtp.from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body_text)

    context = ssl.create_default_context()

    # Port 465 uses implicit SSL (SMTP_SSL), port 587 uses STARTTLS
    if smtp.port == 465:
        server = smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=20, context=context)
    else:
        server = smtplib.SMTP(smtp.host, smtp.port, timeout=20)
        if smtp.use_tls:
            server.starttls(context=context)
    try:
        if smtp.user and smtp.password:
            server.login(smtp.user, smtp.password)
        server.send_message(msg)
    finally:
        try:
            server.quit()
        except smtplib.SMTPException:
            logger.debug("SMTP quit failed", exc_info=True)


class EmailMessenger(NumberedTextMessenger):
    """Replies by SMTP. Residents may answer with the option number or its bracketed id."""

    channel = "email"
    reply_hint = "Responde este correo con el número de tu opción o la clave entre corchetes."
    show_option_ids = True

    def __init__(self, smtp: Optional[SmtpConfig], *, subject: str = "Registro de pago") -> None:
        super().__init__()
        self._smtp = smtp
        self._subject = subject

    def _send_sync(self, to: str, body: str) -> None:
        if self._smtp is None or not self._smtp.host:
            raise MessagingError("SMTP is not configured")
        try:
            send_email_via_smtp(smtp=self._smtp, to_email=to, subject=self._subject, body_text=body)
        except (smtplib.SMTPException, OSError) as exc:
            logger.exception("SMTP send failed to=%s", log_safe(to))
            raise MessagingError("SMTP send failed") from exc
        logger.info("Email sent to=%s", log_safe(to))

    async def _deliver(self, to: str, body: str) -> None:
        await asyncio.to_thread(self._send_sync, to, body)
