"""Tests for the throttling backoff policy."""

from __future__ import annotations

import pytest

from hamsafar.gateway.retry_policy import RetryPolicy
from hamsafar.gateway.types import DispatchConfig


class TestRetryPolicy:
    @pytest.fixture
    def policy(self):
        return RetryPolicy(max_retries=5, default_retry_after=60.0, backoff_ceiling=300.0)

    def test_default_base_without_hint(self, policy):
        assert policy.next_delay(attempt=1) == 60.0
        assert policy.next_delay(attempt=2) == 120.0
        assert policy.next_delay(attempt=3) == 240.0

    def test_capped_at_ceiling(self, policy):
        assert policy.next_delay(attempt=4) == 300.0
        assert policy.next_delay(attempt=5) == 300.0

    def test_upstream_hint_replaces_default_base(self, policy):
        assert policy.next_delay(attempt=1, retry_after=7.0) == 7.0
        assert policy.next_delay(attempt=3, retry_after=7.0) == 28.0

    def test_zero_hint_falls_back_to_default(self, policy):
        assert policy.next_delay(attempt=1, retry_after=0.0) == 60.0

    def test_delays_non_decreasing(self, policy):
        delays = [policy.next_delay(attempt=a) for a in range(1, 10)]
        assert delays == sorted(delays)
        assert max(delays) == 300.0

    def test_never_shorter_than_previous(self, policy):
        first = policy.next_delay(attempt=1, retry_after=40.0)
        second = policy.next_delay(attempt=2, retry_after=5.0, previous=first)
        assert first == 40.0
        assert second == 40.0

    def test_previous_still_capped(self, policy):
        assert policy.next_delay(attempt=1, retry_after=1.0, previous=900.0) == 300.0

    def test_exhausted(self, policy):
        assert not policy.exhausted(4)
        assert policy.exhausted(5)

    def test_from_config(self):
        config = DispatchConfig(max_retries=3, default_retry_after=10.0, backoff_ceiling=45.0)
        policy = RetryPolicy.from_config(config)
        assert policy.max_retries == 3
        assert policy.next_delay(attempt=3) == 40.0
        assert policy.next_delay(attempt=4) == 45.0

    def test_calculate_backoff(self):
        assert RetryPolicy.calculate_backoff(attempt=1, base_delay=2.0, max_delay=100.0) == 2.0
        assert RetryPolicy.calculate_backoff(attempt=6, base_delay=2.0, max_delay=100.0) == 64.0
        assert RetryPolicy.calculate_backoff(attempt=20, base_delay=2.0, max_delay=100.0) == 100.0
