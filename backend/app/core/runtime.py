from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from app.core.config import Settings, get_settings
from app.core.storage import ReceiptStorage
from app.services.ai.message_classify.service import classified_reply
from app.services.conversation_state import ConversationStateStore
from app.services.duplicate_detector import DuplicateDetector
from app.services.message_dedup import MessageDeduplicator
from app.services.messaging import (
    EmailMessenger,
    NumberedTextMessenger,
    SmtpConfig,
    TwilioWhatsAppMessenger,
    WhatsAppCloudMessenger,
)
from app.services.voucher_conversation import VoucherConversation
from app.services.voucher_extraction import VoucherExtractor

logger = logging.getLogger(__name__)

CHANNEL_WHATSAPP = "whatsapp"
CHANNEL_TWILIO_WHATSAPP = "twilio_whatsapp"
CHANNEL_EMAIL = "email"


@dataclass
class VoucherRuntime:
    """Process-wide objects shared by every inbound channel."""

    store: ConversationStateStore
    dedup: MessageDeduplicator
    extractor: VoucherExtractor
    whatsapp: WhatsAppCloudMessenger
    conversations: dict[str, VoucherConversation] = field(default_factory=dict)
    storage: ReceiptStorage = field(default_factory=ReceiptStorage)
    duplicates: DuplicateDetector = field(default_factory=DuplicateDetector)

    def conversation(self, channel: str) -> VoucherConversation:
        try:
            return self.conversations[channel]
        except KeyError:
            raise RuntimeError(f"No conversation configured for channel {channel!r}") from None

    def sweep_conversations(self) -> int:
        """Evict idle conversations and the numbered options offered to those submitters."""
        removed = self.store.sweep()
        for conversation in self.conversations.values():
            messenger = conversation.messenger
            if isinstance(messenger, NumberedTextMessenger):
                messenger.sweep_options(self.store.timeout_seconds)
        return removed


def _smtp_config(settings: Settings) -> Optional[SmtpConfig]:
    if not settings.smtp_host:
        return None
    return SmtpConfig(
        host=settings.smtp_host,
        port=int(settings.smtp_port),
        user=settings.smtp_user or None,
        password=settings.smtp_password or None,
        use_tls=bool(settings.smtp_use_tls),
        from_email=settings.smtp_from_email or settings.smtp_user,
    )


def build_voucher_runtime(settings: Optional[Settings] = None) -> VoucherRuntime:
    settings = settings or get_settings()

    # One store for all channels: keys are phone numbers or email addresses.
    store = ConversationStateStore(timeout_seconds=settings.conversation_timeout_seconds)
    dedup = MessageDeduplicator(retention_seconds=settings.message_dedup_retention_seconds)
    storage = ReceiptStorage()
    extractor = VoucherExtractor(storage)
    detector = DuplicateDetector()
    idle_responder = classified_reply if settings.enable_message_classifier else None

    whatsapp = WhatsAppCloudMessenger(
        token=settings.whatsapp_api_token,
        phone_number_id=settings.whatsapp_phone_number_id,
        api_version=settings.whatsapp_api_version,
    )
    messengers = {
        CHANNEL_WHATSAPP: whatsapp,
        CHANNEL_TWILIO_WHATSAPP: TwilioWhatsAppMessenger(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_whatsapp_from_number,
        ),
        CHANNEL_EMAIL: EmailMessenger(_smtp_config(settings)),
    }
    conversations = {
        channel: VoucherConversation(
            store=store,
            messenger=messenger,
            extractor=extractor,
            storage=storage,
            duplicate_detector=detector,
            idle_responder=idle_responder,
        )
        for channel, messenger in messengers.items()
    }
    logger.info(
        "Voucher runtime ready timeout=%ss channels=%s classifier=%s",
        settings.conversation_timeout_seconds,
        sorted(conversations),
        idle_responder is not None,
    )
    return VoucherRuntime(
        store=store,
        dedup=dedup,
        extractor=extractor,
        whatsapp=whatsapp,
        conversations=conversations,
        storage=storage,
        duplicates=detector,
    )
