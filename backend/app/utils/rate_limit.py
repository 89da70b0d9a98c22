import ipaddress
import time
from collections import deque
from collections.abc import Callable
from threading import Lock
from typing import Optional

from fastapi import HTTPException, Request

from app.core.config import get_settings

_MAX_BUCKETS = 50_000
_PRUNE_INTERVAL_SECONDS = 60
WINDOW_SECONDS = 60


class SlidingWindowRateLimiter:
    """Per-key request counts over a sliding window, kept in process memory."""

    def __init__(
        self,
        *,
        max_buckets: int = _MAX_BUCKETS,
        prune_interval_seconds: int = _PRUNE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._max_buckets = max_buckets
        self._prune_interval_seconds = max(1, int(prune_interval_seconds))
        self._last_prune_at = 0.0
        self._clock = clock

    def allow(self, key: str, limit: int, window_seconds: int = WINDOW_SECONDS) -> tuple[bool, int]:
        """Count one hit for *key*. Returns ``(allowed, hits_in_window)``; limit <= 0 disables."""
        if limit <= 0 or window_seconds <= 0:
            return True, 0
        now = self._clock()
        cutoff = now - window_seconds
        with self._lock:
            if len(self._buckets) > self._max_buckets or now - self._last_prune_at >= self._prune_interval_seconds:
                self._prune(cutoff)
                self._last_prune_at = now

            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) >= limit:
                return False, len(bucket)
            bucket.append(now)
            return True, len(bucket)

    def _prune(self, cutoff: float) -> None:
        # Called under lock.
        empty = []
        for key, bucket in self._buckets.items():
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if not bucket:
                empty.append(key)
        for key in empty:
            del self._buckets[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_prune_at = 0.0


rate_limiter = SlidingWindowRateLimiter()


def _ip_in_networks(ip: str, networks: list[str]) -> bool:
    try:
        ip_obj = ipaddress.ip_address(ip)
    except ValueError:
        return ip in networks
    for entry in networks:
        try:
            if ip_obj in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            if entry == ip:
                return True
    return False


def get_client_ip(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> Optional[str]:
    """Client IP for rate limiting.

    ``X-Real-IP`` / ``X-Forwarded-For`` are honoured only when the direct peer is inside
    ``TRUSTED_PROXY_CIDRS``; otherwise they could be spoofed by the caller.
    """
    peer_ip = request.client.host if request.client else None
    trusted = get_settings().trusted_proxy_cidrs if trusted_proxy_cidrs is None else trusted_proxy_cidrs
    if not (peer_ip and trusted and _ip_in_networks(peer_ip, trusted)):
        return peer_ip

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # Rightmost hop was appended by our own proxy.
        parts = [p.strip() for p in forwarded.split(",") if p.strip()]
        if parts:
            return parts[-1]
    return peer_ip


def enforce_webhook_rate_limit(request: Request, *, scope: str, ip_limit: int) -> str:
    """Reject with 429 when the caller IP exceeded *ip_limit* hits per minute. Returns the IP."""
    ip = get_client_ip(request) or "unknown"
    if not get_settings().rate_limit_webhook_enabled:
        return ip
    allowed, _ = rate_limiter.allow(f"{scope}:ip:{ip}", ip_limit)
    if not allowed:
        raise HTTPException(429, "Too Many Requests")
    return ip


def sender_allowed(scope: str, sender: str) -> bool:
    """Per-submitter budget; over-limit messages are dropped without a reply."""
    settings = get_settings()
    if not settings.rate_limit_webhook_enabled or not sender:
        return True
    allowed, _ = rate_limiter.allow(f"{scope}:sender:{sender}", settings.rate_limit_sender_per_min)
    return allowed
