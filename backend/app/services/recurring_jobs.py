from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from app.core.config import get_settings
from app.services.message_dedup import MessageDeduplicator

logger = logging.getLogger(__name__)


def _clamp(value, *, low: int, high: int, default: int) -> int:
    return int(max(low, min(high, int(value or default))))


async def _sweep_loop(sweep: Callable[[], int], *, interval_seconds: int, name: str) -> None:
    # Backoff on errors to avoid tight loops.
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            if not get_settings().enable_recurring_jobs:
                continue
            removed = sweep()
            if removed:
                logger.info("%s removed %s entries", name, removed)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s worker error", name)
            await asyncio.sleep(error_sleep)


def start_conversation_sweep_worker(sweep: Callable[[], int]) -> asyncio.Task | None:
    """
    Starts the in-process loop that evicts idle conversations. ``sweep`` is usually
    ``VoucherRuntime.sweep_conversations``. Callers keep the task reference and cancel
    it on shutdown.
    """
    settings = get_settings()
    interval = _clamp(settings.conversation_sweep_interval_seconds, low=5, high=3600, default=300)
    return asyncio.create_task(
        _sweep_loop(sweep, interval_seconds=interval, name="Conversation sweep")
    )


def start_message_dedup_sweep_worker(dedup: MessageDeduplicator) -> asyncio.Task | None:
    settings = get_settings()
    interval = _clamp(settings.message_dedup_sweep_interval_seconds, low=60, high=86400, default=3600)
    return asyncio.create_task(
        _sweep_loop(dedup.sweep, interval_seconds=interval, name="Message dedup sweep")
    )
