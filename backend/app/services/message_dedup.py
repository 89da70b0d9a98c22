"""Inbound message ids already handled, so provider retries are answered only once."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from threading import Lock

logger = logging.getLogger(__name__)


class MessageDeduplicator:
    def __init__(
        self,
        *,
        retention_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self._retention_seconds = float(retention_seconds)
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._lock = Lock()

    def seen(self, message_id: str) -> bool:
        """True when *message_id* was recorded within retention; otherwise records it."""
        if not message_id:
            return False
        now = self._clock()
        with self._lock:
            first_seen = self._seen.get(message_id)
            if first_seen is not None and now - first_seen <= self._retention_seconds:
                return True
            self._seen[message_id] = now
            return False

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [mid for mid, ts in self._seen.items() if now - ts > self._retention_seconds]
            for mid in stale:
                del self._seen[mid]
        if stale:
            logger.info("Dropped %s processed message ids", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
