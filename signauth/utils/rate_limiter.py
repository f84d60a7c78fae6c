"""
In-memory token bucket rate limiter for per-IP throttling of the public
signing endpoints.

This is a coarse first line of defence only. The limits that matter for
correctness (resend cooldown, per-request issue cap, verification lockout)
are persisted on the signature request and OTP challenge rows.
"""
import threading
import time
from dataclasses import dataclass
from typing import Dict, Tuple


@dataclass
class TokenBucket:
    tokens: float
    last_update: float
    max_tokens: int
    refill_rate: float  # tokens per second


class RateLimiter:
    """Thread-safe token bucket keyed by an arbitrary string (usually IP)."""

    def __init__(self, max_requests: int = 5, window_seconds: int = 60):
        self.max_tokens = max_requests
        self.refill_rate = max_requests / window_seconds
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = 3600
        self._last_cleanup = time.monotonic()

    def _get_bucket(self, key: str) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(
                tokens=float(self.max_tokens),
                last_update=time.monotonic(),
                max_tokens=self.max_tokens,
                refill_rate=self.refill_rate,
            )
            self._buckets[key] = bucket
        return bucket

    def _refill_bucket(self, bucket: TokenBucket) -> None:
        now = time.monotonic()
        elapsed = now - bucket.last_update
        bucket.tokens = min(bucket.max_tokens, bucket.tokens + elapsed * bucket.refill_rate)
        bucket.last_update = now

    def _cleanup_old_buckets(self) -> None:
        now = time.monotonic()
        if now - self._last_cleanup < self._cleanup_interval:
            return
        cutoff = now - self._cleanup_interval
        for key in [k for k, b in self._buckets.items() if b.last_update < cutoff]:
            del self._buckets[key]
        self._last_cleanup = now

    def is_allowed(self, key: str) -> Tuple[bool, int]:
        """
        Consume one token for ``key``.

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        with self._lock:
            self._cleanup_old_buckets()
            bucket = self._get_bucket(key)
            self._refill_bucket(bucket)

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True, 0
            retry_after = int((1 - bucket.tokens) / bucket.refill_rate) + 1
            return False, retry_after


_otp_request_limiter: RateLimiter = None
_verify_limiter: RateLimiter = None


def get_otp_request_limiter() -> RateLimiter:
    """Per-IP limiter for ``request-otp`` (default 5 per minute)."""
    global _otp_request_limiter
    if _otp_request_limiter is None:
        from signauth.config import get_settings
        settings = get_settings()
        _otp_request_limiter = RateLimiter(
            max_requests=settings.ip_otp_request_limit,
            window_seconds=settings.ip_rate_window_seconds,
        )
    return _otp_request_limiter


def get_verify_limiter() -> RateLimiter:
    """Per-IP limiter for ``verify`` (default 10 per minute)."""
    global _verify_limiter
    if _verify_limiter is None:
        from signauth.config import get_settings
        settings = get_settings()
        _verify_limiter = RateLimiter(
            max_requests=settings.ip_verify_limit,
            window_seconds=settings.ip_rate_window_seconds,
        )
    return _verify_limiter
