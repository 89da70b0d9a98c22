"""Tests for the WhatsApp-over-Twilio webhook.

Covers:
- Feature flag and Twilio signature validation
- Empty TwiML responses
- MessageSid dedup
- Media receipts and numbered replies mapped back to option ids
"""

import unittest

from twilio.request_validator import RequestValidator

from app.core.runtime import CHANNEL_TWILIO_WHATSAPP
from app.schemas.voucher import ConversationState, VoucherDraft
from app.services import voucher_messages as msg
from app.services.messaging import MessagingError
from tests.conftest import WebhookTestCase, settings_env

URL = "/api/v1/webhook/twilio/whatsapp"
FULL_URL = "http://testserver" + URL
TOKEN = "twilio-token"
SENDER = "5215512345678"

_ENABLED = {
    "ENABLE_TWILIO_WHATSAPP": "true",
    "TWILIO_AUTH_TOKEN": TOKEN,
    "TWILIO_WEBHOOK_URL": FULL_URL,
}


def _form(body: str = "", sid: str = "SM1", **extra) -> dict:
    data = {"From": f"whatsapp:+{SENDER}", "To": "whatsapp:+14155238886", "Body": body, "MessageSid": sid, "NumMedia": "0"}
    data.update(extra)
    return data


class TwilioWhatsAppWebhookTests(WebhookTestCase):
    def _post(self, data: dict, *, sign: bool = True):
        headers = {}
        if sign:
            headers["X-Twilio-Signature"] = RequestValidator(TOKEN).compute_signature(FULL_URL, data)
        return self.client.post(URL, data=data, headers=headers)

    @property
    def sent(self):
        return self.messages(CHANNEL_TWILIO_WHATSAPP)

    def test_disabled_by_default(self):
        resp = self._post(_form("hola"))
        self.assertEqual(resp.status_code, 404)

    def test_missing_signature_rejected(self):
        with settings_env(**_ENABLED):
            resp = self._post(_form("hola"), sign=False)
        self.assertEqual(resp.status_code, 403)

    def test_tampered_form_rejected(self):
        data = _form("hola")
        signature = RequestValidator(TOKEN).compute_signature(FULL_URL, data)
        with settings_env(**_ENABLED):
            resp = self.client.post(URL, data={**data, "Body": "otro"}, headers={"X-Twilio-Signature": signature})
        self.assertEqual(resp.status_code, 403)

    def test_insecure_mode_skips_signature(self):
        with settings_env(ENABLE_TWILIO_WHATSAPP="true", ALLOW_INSECURE_WEBHOOKS="true"):
            resp = self._post(_form("hola"), sign=False)
        self.assertEqual(resp.status_code, 200)

    def test_missing_token_is_server_error(self):
        with settings_env(ENABLE_TWILIO_WHATSAPP="true", TWILIO_AUTH_TOKEN=""):
            resp = self._post(_form("hola"), sign=False)
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"detail": "Error interno"})

    def test_text_reply_returns_empty_twiml(self):
        with settings_env(**_ENABLED):
            resp = self._post(_form("hola"))
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("application/xml"))
        self.assertIn("<Response", resp.text)
        self.assertEqual(self.sent[-1][1], SENDER)
        self.assertEqual(self.sent[-1][2], msg.IDLE_HELP)

    def test_duplicate_sid(self):
        with settings_env(**_ENABLED):
            self._post(_form("hola", sid="SMdup"))
            self._post(_form("hola", sid="SMdup"))
        self.assertEqual(len(self.sent), 1)

    def test_media_download_failure(self):
        self.runtime.conversation(CHANNEL_TWILIO_WHATSAPP).messenger.media = MessagingError("boom")
        with settings_env(**_ENABLED):
            self._post(_form(sid="SMm", NumMedia="1", MediaUrl0="https://api.twilio.com/m/1", MediaContentType0="image/jpeg"))
        self.assertEqual(self.sent[-1][2], msg.PROCESSING_ERROR)

    def test_media_then_numbered_confirmation(self):
        self.extractor.draft = VoucherDraft(
            amount="500.15", payment_date="2025-01-10", transaction_time="10:30:00", reference="ABC", house_number=15
        )
        media = _form(sid="SMa", NumMedia="1", MediaUrl0="https://api.twilio.com/m/1", MediaContentType0="image/jpeg")
        with settings_env(**_ENABLED):
            self._post(media)
            messenger = self.runtime.conversation(CHANNEL_TWILIO_WHATSAPP).messenger
            self.assertEqual(messenger.downloads, ["https://api.twilio.com/m/1"])
            self.assertTrue(self.extractor.calls[0][0].startswith("SMa"))
            self.assertIs(self.runtime.store.get(SENDER).state, ConversationState.WAITING_CONFIRMATION)
            self.assertIn("1. ✅ Sí, es correcto", self.sent[-1][2])

            # "2" maps to the cancel button and opens the correction list.
            self._post(_form("2", sid="SMb"))
            self.assertIs(self.runtime.store.get(SENDER).state, ConversationState.WAITING_CORRECTION_TYPE)

            # "5" is the last correction row: cancel everything.
            self._post(_form("5", sid="SMc"))
        self.assertIsNone(self.runtime.store.get(SENDER))
        self.assertEqual(self.sent[-1][2], msg.CANCELLED)


if __name__ == "__main__":
    unittest.main()
