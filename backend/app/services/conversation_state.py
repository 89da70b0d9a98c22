"""In-memory conversation state keyed by submitter (phone number or email address).

The store owns its clock and timeout so it can be swapped for a shared cache without
touching the orchestrator. Entries expire lazily on ``get`` and actively on ``sweep``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Optional

from app.schemas.voucher import ConversationState, VoucherDraft, VoucherField

logger = logging.getLogger(__name__)


@dataclass
class ConversationPayload:
    draft: VoucherDraft = field(default_factory=VoucherDraft)
    artifact_handle: Optional[str] = None
    original_filename: Optional[str] = None
    missing_fields: list[VoucherField] = field(default_factory=list)
    field_to_correct: Optional[VoucherField] = None


@dataclass
class ConversationContext:
    state: ConversationState
    payload: ConversationPayload
    last_activity: float


class ConversationStateStore:
    def __init__(
        self,
        *,
        timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._timeout_seconds = float(timeout_seconds)
        self._clock = clock
        self._contexts: dict[str, ConversationContext] = {}
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._lock = Lock()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def _expired(self, context: ConversationContext, now: float) -> bool:
        return now - context.last_activity > self._timeout_seconds

    def get(self, key: str) -> Optional[ConversationContext]:
        now = self._clock()
        with self._lock:
            context = self._contexts.get(key)
            if context is None:
                return None
            if self._expired(context, now):
                del self._contexts[key]
                logger.info("Conversation expired on read state=%s", context.state.value)
                return None
            return context

    def set(self, key: str, state: ConversationState, payload: ConversationPayload) -> ConversationContext:
        context = ConversationContext(state=state, payload=payload, last_activity=self._clock())
        with self._lock:
            self._contexts[key] = context
        return context

    def touch(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            context = self._contexts.get(key)
            if context is None or self._expired(context, now):
                return False
            context.last_activity = now
            return True

    def clear(self, key: str) -> None:
        with self._lock:
            self._contexts.pop(key, None)

    def sweep(self) -> int:
        """Drop every context idle for longer than the timeout. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [key for key, ctx in self._contexts.items() if self._expired(ctx, now)]
            for key in stale:
                del self._contexts[key]
            # A released lock reads as unlocked while a waiter is still queued on it;
            # only locks with no holder or waiter may go.
            idle_locks = [
                key
                for key, lock in self._key_locks.items()
                if key not in self._contexts and not lock.locked() and not self._lock_users.get(key)
            ]
            for key in idle_locks:
                del self._key_locks[key]
        if stale:
            logger.info("Swept %s expired conversations", len(stale))
        return len(stale)

    def lock(self, key: str) -> asyncio.Lock:
        """Per-submitter mutex. Handlers take it through ``hold`` so sweeps can see waiters."""
        with self._lock:
            key_lock = self._key_locks.get(key)
            if key_lock is None:
                key_lock = asyncio.Lock()
                self._key_locks[key] = key_lock
            return key_lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the submitter's lock while handling one inbound event."""
        with self._lock:
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with self.lock(key):
                yield
        finally:
            with self._lock:
                remaining = self._lock_users.get(key, 1) - 1
                if remaining > 0:
                    self._lock_users[key] = remaining
                else:
                    self._lock_users.pop(key, None)

    def stats(self) -> dict:
        now = self._clock()
        by_state = {state: 0 for state in ConversationState}
        with self._lock:
            live = [ctx for ctx in self._contexts.values() if not self._expired(ctx, now)]
        for ctx in live:
            by_state[ctx.state] += 1
        return {"total": len(live), "by_state": by_state}

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)
