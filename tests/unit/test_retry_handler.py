"""Tests for retry handler backoff growth and the retry budget."""

import pytest

from agent_fleet.safeguards.retry_handler import RetryHandler


class TestBackoff:
    def test_exponential_growth(self):
        handler = RetryHandler(initial_backoff=1.0, multiplier=2.0, max_backoff=60.0)
        assert [handler.calculate_backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_backoff(self):
        handler = RetryHandler(initial_backoff=5.0, multiplier=3.0, max_backoff=20.0)
        assert handler.calculate_backoff(3) == 20.0

    def test_no_backoff_before_first_failure(self):
        assert RetryHandler().calculate_backoff(0) == 0.0


class TestRetryBudget:
    def test_retries_until_budget_spent(self):
        handler = RetryHandler(max_retries=3)
        assert [handler.should_retry(n) for n in (1, 2, 3, 4)] == [True, True, True, False]
        assert handler.max_attempts == 4

    def test_zero_retries(self):
        handler = RetryHandler(max_retries=0)
        assert handler.should_retry(1) is False
        assert handler.max_attempts == 1

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryHandler(max_retries=-1)

    def test_default_is_three_attempts(self):
        handler = RetryHandler()
        assert [handler.should_retry(n) for n in (1, 2, 3)] == [True, True, False]
        assert handler.max_attempts == 3
