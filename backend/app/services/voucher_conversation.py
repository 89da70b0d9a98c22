"""Per-submitter conversation that turns an uploaded receipt into a committed voucher.

Flow:
1. A receipt arrives: upload + extraction, then the draft is confirmed, or the submitter is
   asked for the house number or for each missing field.
2. The submitter confirms (duplicate check + atomic commit) or picks a field to correct.
3. Every handler runs under the submitter's lock; failures are caught once in
   ``_recover`` which answers the submitter and clears the context.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.storage import ReceiptStorage
from app.schemas.voucher import CORRECTABLE_FIELDS, ConversationState, VoucherField
from app.services import voucher_messages as msg
from app.services.conversation_state import ConversationContext, ConversationPayload, ConversationStateStore
from app.services.db_retry import call_with_retry
from app.services.duplicate_detector import DuplicateDetector
from app.services.messaging import Messenger
from app.services.voucher_commit import CommitResult, Submitter, commit_voucher, is_retryable_commit_error
from app.services.voucher_extraction import ExtractionError, UnsupportedMediaError, VoucherExtractor
from app.services.voucher_validation import amount_as_decimal, apply_field, combine_payment_datetime
from app.utils.phone import log_safe, normalize_phone

logger = logging.getLogger(__name__)

REASON_USER_CANCELLED = "cancelacion-usuario"
REASON_DUPLICATE = "voucher-duplicado"
REASON_EMPTY_QUEUE = "flujo-incompleto-sin-campos-faltantes"

Handler = Callable[[Session, str, str, ConversationContext], Awaitable[None]]


class SessionError(RuntimeError):
    """Context is absent or lacks data the current step needs."""


def submitter_for(sender: str) -> Submitter:
    if "@" in sender:
        return Submitter(email=sender.strip().lower())
    try:
        return Submitter(phone=normalize_phone(sender))
    except ValueError:
        return Submitter(phone=sender)


class VoucherConversation:
    def __init__(
        self,
        *,
        store: ConversationStateStore,
        messenger: Messenger,
        extractor: VoucherExtractor,
        storage: Optional[ReceiptStorage] = None,
        duplicate_detector: Optional[DuplicateDetector] = None,
        commit: Callable[..., CommitResult] = commit_voucher,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        idle_responder: Optional[Callable[[str], Awaitable[str]]] = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._messenger = messenger
        self._extractor = extractor
        self._storage = storage or ReceiptStorage()
        self._duplicates = duplicate_detector or DuplicateDetector()
        self._commit = commit
        self._retry_attempts = settings.db_retry_max_attempts if retry_attempts is None else retry_attempts
        self._retry_base_delay = (
            settings.db_retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        )
        self._sleep = sleep
        self._idle_responder = idle_responder
        self._handlers: dict[ConversationState, Handler] = {
            ConversationState.WAITING_HOUSE_NUMBER: self._on_house_number,
            ConversationState.WAITING_MISSING_DATA: self._on_missing_data,
            ConversationState.WAITING_CONFIRMATION: self._on_confirmation,
            ConversationState.WAITING_CORRECTION_TYPE: self._on_correction_type,
            ConversationState.WAITING_CORRECTION_VALUE: self._on_correction_value,
        }

    @property
    def store(self) -> ConversationStateStore:
        return self._store

    @property
    def messenger(self) -> Messenger:
        return self._messenger

    # ── Entry points ──────────────────────────────────────────────────

    async def handle_artifact(
        self,
        sender: str,
        *,
        content: bytes,
        filename: Optional[str],
        content_type: Optional[str],
        locale: str = "es",
    ) -> None:
        async with self._store.hold(sender):
            try:
                await self._start(sender, content=content, filename=filename, content_type=content_type, locale=locale)
            except Exception as exc:
                await self._recover(sender, exc)

    async def handle_reply(self, db: Session, sender: str, text: str) -> None:
        async with self._store.hold(sender):
            try:
                context = self._store.get(sender)
                if context is None:
                    await self._messenger.send_text(sender, await self._idle_reply(sender, text))
                    return
                handler = self._handlers.get(context.state)
                if handler is None:
                    logger.error("Unhandled conversation state=%s sender=%s", context.state, log_safe(sender))
                    self._store.clear(sender)
                    return
                await handler(db, sender, (text or "").strip(), context)
            except Exception as exc:
                await self._recover(sender, exc)

    async def _idle_reply(self, sender: str, text: str) -> str:
        if self._idle_responder is None or not (text or "").strip():
            return msg.IDLE_HELP
        try:
            return await self._idle_responder(text) or msg.IDLE_HELP
        except Exception:
            logger.warning("Idle message classification failed sender=%s", log_safe(sender), exc_info=True)
            return msg.IDLE_HELP

    async def _recover(self, sender: str, exc: Exception) -> None:
        if isinstance(exc, SessionError):
            logger.warning("Conversation session error sender=%s: %s", log_safe(sender), exc)
            body = msg.SESSION_EXPIRED
        else:
            logger.exception("Conversation handler failed sender=%s", log_safe(sender))
            body = msg.GENERIC_RETRY
        # Receipt stays in storage; only duplicates and cancellations delete it.
        self._store.clear(sender)
        try:
            await self._messenger.send_text(sender, body)
        except Exception:
            logger.exception("Could not notify sender=%s after failure", log_safe(sender))

    # ── New receipt ───────────────────────────────────────────────────

    async def _start(
        self,
        sender: str,
        *,
        content: bytes,
        filename: Optional[str],
        content_type: Optional[str],
        locale: str,
    ) -> None:
        if self._store.get(sender) is not None:
            logger.info("New receipt replaces the conversation in progress sender=%s", log_safe(sender))
            self._store.clear(sender)

        try:
            extracted = await self._extractor.extract(content, filename, content_type, locale=locale)
        except UnsupportedMediaError as exc:
            await self._messenger.send_text(sender, msg.unsupported_file_type(exc.mime_type))
            return
        except ExtractionError:
            logger.warning("Receipt extraction failed sender=%s", log_safe(sender), exc_info=True)
            await self._messenger.send_text(sender, msg.PROCESSING_ERROR)
            return

        draft = extracted.draft
        payload = ConversationPayload(
            draft=draft,
            artifact_handle=extracted.artifact_handle,
            original_filename=extracted.original_filename,
        )
        missing = draft.missing_fields()

        if not missing:
            await self._ask_confirmation(sender, payload)
            return

        if missing == [VoucherField.HOUSE_NUMBER]:
            self._store.set(sender, ConversationState.WAITING_HOUSE_NUMBER, payload)
            logger.info("Waiting for house number sender=%s", log_safe(sender))
            await self._messenger.send_text(sender, msg.house_number_prompt())
            return

        payload.missing_fields = missing
        self._store.set(sender, ConversationState.WAITING_MISSING_DATA, payload)
        logger.info("Waiting for missing data sender=%s fields=%s", log_safe(sender), [f.value for f in missing])
        await self._prompt_field(sender, missing[0], first=True)

    # ── State handlers ────────────────────────────────────────────────

    async def _on_house_number(self, db: Session, sender: str, text: str, context: ConversationContext) -> None:
        payload = context.payload
        result = apply_field(payload.draft, VoucherField.HOUSE_NUMBER, text)
        if not result.valid:
            self._store.touch(sender)
            await self._messenger.send_text(sender, result.error)
            return
        await self._ask_confirmation(sender, payload)

    async def _on_missing_data(self, db: Session, sender: str, text: str, context: ConversationContext) -> None:
        payload = context.payload
        if not payload.missing_fields:
            logger.warning("Missing-data state without pending fields sender=%s", log_safe(sender))
            await self._discard(payload.artifact_handle, REASON_EMPTY_QUEUE)
            self._store.clear(sender)
            await self._messenger.send_text(sender, msg.FLOW_ERROR)
            return

        field = payload.missing_fields[0]
        if not await self._accept_value(sender, field, text, payload):
            return

        payload.missing_fields.pop(0)
        if payload.missing_fields:
            self._store.set(sender, ConversationState.WAITING_MISSING_DATA, payload)
            await self._prompt_field(sender, payload.missing_fields[0])
            return

        if not payload.artifact_handle:
            raise SessionError("artifact handle missing after collecting data")
        await self._ask_confirmation(sender, payload)

    async def _on_confirmation(self, db: Session, sender: str, text: str, context: ConversationContext) -> None:
        if msg.is_affirmative(text):
            await self._confirm(db, sender, context.payload)
            return
        if msg.is_negative(text):
            self._store.set(sender, ConversationState.WAITING_CORRECTION_TYPE, context.payload)
            await self._messenger.send_list(sender, msg.CORRECTION_PROMPT, msg.CORRECTION_BUTTON, msg.correction_sections())
            return
        self._store.touch(sender)
        await self._messenger.send_text(sender, msg.CONFIRMATION_RETRY)

    async def _on_correction_type(self, db: Session, sender: str, text: str, context: ConversationContext) -> None:
        payload = context.payload
        choice = text.lower()
        if choice == msg.CANCEL_ALL_ID:
            await self._discard(payload.artifact_handle, REASON_USER_CANCELLED)
            self._store.clear(sender)
            logger.info("Voucher registration cancelled sender=%s", log_safe(sender))
            await self._messenger.send_text(sender, msg.CANCELLED)
            return

        field = next((f for f in CORRECTABLE_FIELDS if f.value == choice), None)
        if field is None:
            self._store.touch(sender)
            await self._messenger.send_list(sender, msg.INVALID_OPTION, msg.CORRECTION_BUTTON, msg.correction_sections())
            return

        payload.field_to_correct = field
        self._store.set(sender, ConversationState.WAITING_CORRECTION_VALUE, payload)
        if field is VoucherField.PAYMENT_DATE:
            await self._messenger.send_list(sender, msg.DATE_PROMPT, msg.DATE_BUTTON, msg.recent_date_sections())
        else:
            await self._messenger.send_text(sender, msg.correction_value_prompt(field))

    async def _on_correction_value(self, db: Session, sender: str, text: str, context: ConversationContext) -> None:
        payload = context.payload
        field = payload.field_to_correct
        if field is None:
            raise SessionError("no field selected for correction")
        if not await self._accept_value(sender, field, text, payload):
            return
        payload.field_to_correct = None
        await self._ask_confirmation(sender, payload)

    # ── Helpers ───────────────────────────────────────────────────────

    async def _accept_value(self, sender: str, field: VoucherField, text: str, payload: ConversationPayload) -> bool:
        """Validate and store *text* for *field*. On rejection re-prompts and returns False."""
        if field is VoucherField.PAYMENT_DATE:
            if text.lower() == msg.MANUAL_DATE_ID:
                self._store.touch(sender)
                await self._messenger.send_text(sender, msg.MANUAL_DATE_PROMPT)
                return False
            text = msg.resolve_date_shortcut(text) or text

        result = apply_field(payload.draft, field, text)
        if not result.valid:
            self._store.touch(sender)
            await self._messenger.send_text(sender, result.error)
            return False
        return True

    async def _prompt_field(self, sender: str, field: VoucherField, *, first: bool = False) -> None:
        if field is VoucherField.PAYMENT_DATE:
            body = msg.missing_field_prompt(field, first=first) + "\n\n" + msg.DATE_PROMPT
            await self._messenger.send_list(sender, body, msg.DATE_BUTTON, msg.recent_date_sections())
        elif field is VoucherField.HOUSE_NUMBER:
            await self._messenger.send_text(sender, msg.house_number_prompt())
        else:
            await self._messenger.send_text(sender, msg.missing_field_prompt(field, first=first))

    async def _ask_confirmation(self, sender: str, payload: ConversationPayload) -> None:
        payload.missing_fields = []
        payload.field_to_correct = None
        payload.draft.fields_incomplete = False
        payload.draft.missing_prompt = None
        self._store.set(sender, ConversationState.WAITING_CONFIRMATION, payload)
        await self._messenger.send_buttons(
            sender,
            msg.confirmation_summary(payload.draft),
            msg.CONFIRM_CANCEL_BUTTONS,
        )

    async def _confirm(self, db: Session, sender: str, payload: ConversationPayload) -> None:
        draft = payload.draft
        if not payload.artifact_handle:
            raise SessionError("artifact handle missing at confirmation")
        if draft.house_number is None:
            raise SessionError("house number missing at confirmation")

        payment_at = combine_payment_datetime(draft.payment_date, draft.transaction_time)
        amount = amount_as_decimal(draft.amount)

        # Database work and its retry backoff run in a worker thread, off the event loop.
        duplicate = await asyncio.to_thread(
            self._duplicates.check,
            db,
            payment_at=payment_at,
            amount=amount,
            house_number=draft.house_number,
        )
        if duplicate.is_duplicate:
            await self._discard(payload.artifact_handle, REASON_DUPLICATE)
            self._store.clear(sender)
            await self._messenger.send_text(sender, msg.duplicate_message(duplicate.confirmation_code))
            return

        submitter = submitter_for(sender)
        result = await asyncio.to_thread(
            call_with_retry,
            lambda: self._commit(
                db,
                draft=draft,
                artifact_handle=payload.artifact_handle,
                submitter=submitter,
            ),
            is_retryable=is_retryable_commit_error,
            max_attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
            label="voucher commit",
        )
        self._store.clear(sender)
        # Committed: a failed notification must not reach _recover.
        try:
            await self._messenger.send_text(
                sender,
                msg.success_message(
                    confirmation_code=result.confirmation_code,
                    house_number=result.house_number,
                    amount=f"{result.amount:.2f}",
                ),
            )
        except Exception:
            logger.exception(
                "Voucher committed code=%s but the confirmation was not delivered sender=%s",
                result.confirmation_code,
                log_safe(sender),
            )

    async def _discard(self, artifact_handle: Optional[str], reason: str) -> None:
        await asyncio.to_thread(self._storage.delete, artifact_handle, reason)
