import os
import unittest
from contextlib import contextmanager
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.dependencies import build_engine, get_db, get_runtime
from app.core.runtime import CHANNEL_EMAIL, CHANNEL_TWILIO_WHATSAPP, CHANNEL_WHATSAPP, VoucherRuntime
from app.models.voucher import Base
from app.schemas.voucher import VoucherDraft
from app.services.conversation_state import ConversationStateStore
from app.services.duplicate_detector import DuplicateDetector
from app.services.message_dedup import MessageDeduplicator
from app.services.messaging import (
    ButtonOption,
    EmailMessenger,
    ListSection,
    Messenger,
    TwilioWhatsAppMessenger,
)
from app.services.voucher_conversation import VoucherConversation
from app.services.voucher_extraction import ExtractionResult, UnsupportedMediaError
from app.utils.rate_limit import rate_limiter


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@contextmanager
def settings_env(**env: str):
    """Patch env vars and rebuild settings for the duration of the block."""
    from unittest.mock import patch

    with patch.dict(os.environ, env, clear=False):
        get_settings.cache_clear()
        try:
            yield get_settings()
        finally:
            get_settings.cache_clear()


def make_sqlite_engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_engine():
    engine = make_sqlite_engine()
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    SessionLocal = sessionmaker(bind=db_engine, autoflush=False)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class RecordingMessenger(Messenger):
    """Collects outbound messages as ``(kind, to, body, extra)`` tuples."""

    channel = "test"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str, object]] = []

    async def send_text(self, to: str, body: str) -> None:
        self.sent.append(("text", to, body, None))

    async def send_buttons(self, to: str, body: str, options: list[ButtonOption]) -> None:
        self.sent.append(("buttons", to, body, [opt.id for opt in options]))

    async def send_list(self, to: str, body: str, button_label: str, sections: list[ListSection]) -> None:
        self.sent.append(("list", to, body, [row.id for section in sections for row in section.rows]))

    @property
    def last(self) -> tuple[str, str, str, object]:
        return self.sent[-1]

    def bodies(self) -> list[str]:
        return [body for _, _, body, _ in self.sent]


class FakeStorage:
    def __init__(self) -> None:
        self.uploads: list[str] = []
        self.deleted: list[tuple[Optional[str], str]] = []

    def upload(self, *, filename, content, content_type) -> str:
        handle = f"2025/01/{len(self.uploads) + 1:04d}-{filename or 'file'}"
        self.uploads.append(handle)
        return handle

    def delete(self, handle, reason) -> bool:
        self.deleted.append((handle, reason))
        return True

    def signed_url(self, handle, expires_in) -> Optional[str]:
        if handle is None:
            return None
        return f"https://storage.test/signed/{handle}?ttl={expires_in}"


class FakeExtractor:
    """Returns a prepared draft; raises what it is told to raise."""

    def __init__(self, draft: Optional[VoucherDraft] = None, *, error: Optional[Exception] = None) -> None:
        self.draft = draft or VoucherDraft()
        self.error = error
        self.calls: list[tuple[Optional[str], Optional[str]]] = []

    async def extract(self, content, filename, content_type, locale="es") -> ExtractionResult:
        self.calls.append((filename, content_type))
        if content_type and not (content_type.startswith("image/") or content_type == "application/pdf"):
            raise UnsupportedMediaError(content_type)
        if self.error is not None:
            raise self.error
        return ExtractionResult(
            draft=self.draft.model_copy(deep=True),
            artifact_handle=f"2025/01/{filename or 'receipt'}",
            original_filename=filename,
        )


# ── Webhook runtime ──


class RecordingWhatsApp(RecordingMessenger):
    channel = "whatsapp"

    def __init__(self, media=(b"\xff\xd8jpeg", "image/jpeg")) -> None:
        super().__init__()
        self.media = media
        self.downloads: list[str] = []

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        self.downloads.append(media_id)
        if isinstance(self.media, Exception):
            raise self.media
        return self.media


class RecordingTwilioMessenger(TwilioWhatsAppMessenger):
    """Real numbered rendering and option memory; sends and downloads are recorded."""

    def __init__(self, media=(b"\xff\xd8jpeg", "image/jpeg")) -> None:
        super().__init__(account_sid="AC123", auth_token="twilio-token", from_number="14155238886")
        self.sent: list[tuple[str, str, str, object]] = []
        self.media = media
        self.downloads: list[str] = []

    async def _deliver(self, to: str, body: str) -> None:
        self.sent.append(("text", to, body, None))

    async def download_media(self, media_url, *, transport=None) -> tuple[bytes, str]:
        self.downloads.append(media_url)
        if isinstance(self.media, Exception):
            raise self.media
        return self.media


class RecordingEmailMessenger(EmailMessenger):
    def __init__(self) -> None:
        super().__init__(None)
        self.sent: list[tuple[str, str, str, object]] = []

    async def _deliver(self, to: str, body: str) -> None:
        self.sent.append(("text", to, body, None))


def make_runtime(extractor=None, *, whatsapp=None, twilio=None, email=None, idle_responder=None) -> VoucherRuntime:
    store = ConversationStateStore(timeout_seconds=600)
    storage = FakeStorage()
    detector = DuplicateDetector(retry_attempts=1, retry_base_delay=0)
    extractor = extractor or FakeExtractor()
    whatsapp = whatsapp or RecordingWhatsApp()
    messengers = {
        CHANNEL_WHATSAPP: whatsapp,
        CHANNEL_TWILIO_WHATSAPP: twilio or RecordingTwilioMessenger(),
        CHANNEL_EMAIL: email or RecordingEmailMessenger(),
    }
    conversations = {
        channel: VoucherConversation(
            store=store,
            messenger=messenger,
            extractor=extractor,
            storage=storage,
            duplicate_detector=detector,
            idle_responder=idle_responder,
            retry_attempts=1,
            retry_base_delay=0,
            sleep=lambda _: None,
        )
        for channel, messenger in messengers.items()
    }
    return VoucherRuntime(
        store=store,
        dedup=MessageDeduplicator(retention_seconds=3600),
        extractor=extractor,
        whatsapp=whatsapp,
        conversations=conversations,
        storage=storage,
        duplicates=detector,
    )


class WebhookTestCase(unittest.TestCase):
    """TestClient against the real app with a fake runtime and an in-memory database."""

    def setUp(self):
        from app.main import app

        self.engine = make_sqlite_engine()
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False)
        self.extractor = FakeExtractor()
        self.runtime = make_runtime(self.extractor)
        rate_limiter.reset()

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        def override_get_runtime():
            return self.runtime

        self.app = app
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_runtime] = override_get_runtime
        self.client = TestClient(app)

    def tearDown(self):
        self.app.dependency_overrides.clear()
        rate_limiter.reset()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def messages(self, channel: str) -> list[tuple[str, str, str, object]]:
        return self.runtime.conversation(channel).messenger.sent
