"""
Tests for rate limiter.
"""
import time
import pytest

from signauth.utils.rate_limiter import RateLimiter


class TestRateLimiter:
    """Tests for token bucket rate limiter."""

    def test_allows_within_limit(self):
        """Requests within limit are allowed."""
        limiter = RateLimiter(max_requests=5, window_seconds=60)

        for i in range(5):
            allowed, retry_after = limiter.is_allowed("test-key")
            assert allowed is True
            assert retry_after == 0

    def test_blocks_over_limit(self):
        """Requests over limit are blocked."""
        limiter = RateLimiter(max_requests=3, window_seconds=60)

        # Use up all tokens
        for _ in range(3):
            limiter.is_allowed("test-key")

        # Next request should be blocked
        allowed, retry_after = limiter.is_allowed("test-key")
        assert allowed is False
        assert retry_after > 0

    def test_different_keys_independent(self):
        """Different keys have independent limits."""
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        # Use up key1
        limiter.is_allowed("key1")
        limiter.is_allowed("key1")

        # key2 should still be allowed
        allowed, _ = limiter.is_allowed("key2")
        assert allowed is True

    def test_refills_over_time(self):
        """Tokens refill over time."""
        limiter = RateLimiter(max_requests=1, window_seconds=1)

        # Use the token
        limiter.is_allowed("test-key")

        # Immediately blocked
        allowed1, _ = limiter.is_allowed("test-key")
        assert allowed1 is False

        # Wait for refill
        time.sleep(1.1)

        # Should be allowed again
        allowed2, _ = limiter.is_allowed("test-key")
        assert allowed2 is True

    def test_actions_are_keyed_separately(self):
        """request-otp and verify budgets for one IP do not share tokens."""
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        assert limiter.is_allowed("request-otp:203.0.113.10")[0] is True
        assert limiter.is_allowed("request-otp:203.0.113.10")[0] is False
        assert limiter.is_allowed("verify:203.0.113.10")[0] is True

    def test_retry_after_matches_refill_rate(self):
        """One token every 12s at 5/minute."""
        limiter = RateLimiter(max_requests=5, window_seconds=60)
        for _ in range(5):
            limiter.is_allowed("test-key")

        allowed, retry_after = limiter.is_allowed("test-key")
        assert allowed is False
        assert 1 <= retry_after <= 13
