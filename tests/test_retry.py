"""
Unit tests for the retry policy and request counters.
"""

import pytest

from kintone_backup.api.retry import (
    DEFAULT_INITIAL_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
    ApiStats,
    RetryPolicy,
)


class TestRetryPolicyDefaults:
    """Tests for default retry settings."""

    def test_defaults(self):
        """Test that the policy uses five retries from 1s up to 32s."""
        policy = RetryPolicy()

        assert policy.max_retries == DEFAULT_MAX_RETRIES == 5
        assert policy.initial_delay == DEFAULT_INITIAL_RETRY_DELAY == 1.0
        assert policy.max_delay == DEFAULT_MAX_RETRY_DELAY == 32.0
        assert policy.jitter == 0.2

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        """Test that rate limits and server errors are retryable."""
        assert RetryPolicy().is_retryable_status(status)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 520, None])
    def test_non_retryable_statuses(self, status):
        """Test that client errors are not retryable."""
        assert not RetryPolicy().is_retryable_status(status)


class TestBackoffDelays:
    """Tests for the computed backoff delays."""

    def test_base_delay_doubles_until_cap(self):
        """Test that base delays double per attempt and stop at the cap."""
        policy = RetryPolicy()

        delays = [policy.base_delay(n) for n in range(1, 9)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 32.0, 32.0]

    def test_base_delay_is_non_decreasing(self):
        """Test that the base delay never decreases with the attempt number."""
        policy = RetryPolicy(initial_delay=0.5, max_delay=10.0, multiplier=3.0)

        delays = [policy.base_delay(n) for n in range(1, 20)]

        assert delays == sorted(delays)
        assert max(delays) == 10.0

    def test_base_delay_rejects_attempt_zero(self):
        """Test that attempts are 1-based."""
        with pytest.raises(ValueError, match="attempt must be >= 1"):
            RetryPolicy().base_delay(0)

    @pytest.mark.parametrize("random_value", [0.0, 0.25, 0.5, 0.75, 0.999999])
    def test_jitter_stays_within_twenty_percent(self, random_value):
        """Test that jittered delays lie within +/-20% of the base delay."""
        policy = RetryPolicy(rng=lambda: random_value)

        for attempt in range(1, 10):
            base = policy.base_delay(attempt)
            delay = policy.next_delay(attempt)
            assert base * 0.8 <= delay <= base * 1.2

    def test_jitter_extremes(self):
        """Test the lowest and middle jitter values exactly."""
        low = RetryPolicy(rng=lambda: 0.0)
        middle = RetryPolicy(rng=lambda: 0.5)

        assert low.next_delay(3) == pytest.approx(4.0 * 0.8)
        assert middle.next_delay(3) == pytest.approx(4.0)

    def test_retry_after_overrides_computed_delay(self):
        """Test that a server wait hint takes precedence."""
        policy = RetryPolicy(rng=lambda: 0.0)

        assert policy.next_delay(1, retry_after=7.5) == 7.5
        assert policy.next_delay(6, retry_after=0) == 0.0

    def test_negative_retry_after_is_clamped(self):
        """Test that a negative hint never produces a negative delay."""
        assert RetryPolicy().next_delay(1, retry_after=-3) == 0.0

    def test_retry_after_may_exceed_max_delay(self):
        """Test that a hint above the backoff cap is still honoured."""
        policy = RetryPolicy()

        assert policy.next_delay(1, retry_after=60) == 60.0
        assert policy.next_delay(1, retry_after=60) > policy.max_delay

    def test_retry_after_has_its_own_ceiling(self):
        """Test that an oversized hint is limited to max_retry_after."""
        assert RetryPolicy().next_delay(1, retry_after=3600) == 300.0
        assert RetryPolicy(max_retry_after=90).next_delay(1, retry_after=120) == 90.0


class TestApiStats:
    """Tests for caller-owned request counters."""

    def test_counts_requests_and_retries(self):
        """Test that requests and retries are counted independently."""
        stats = ApiStats()

        stats.record_request()
        stats.record_request(2)
        stats.record_retry()

        assert stats.api_request_count == 3
        assert stats.retry_count == 1
        assert stats.to_dict() == {"api_request_count": 3, "retry_count": 1}

    def test_reset(self):
        """Test that reset zeroes both counters."""
        stats = ApiStats(api_request_count=4, retry_count=2)

        stats.reset()

        assert stats.api_request_count == 0
        assert stats.retry_count == 0
