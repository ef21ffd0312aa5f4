"""
Retry policy tests
"""
import pytest

from salesbot_engine.config import EngineSettings
from salesbot_engine.core.error_handler import RetryPolicy, RetryStrategy, calculate_retry_delay


class TestRetryPolicy:

    def test_from_settings(self):
        settings = EngineSettings(max_dispatch_retries=3, retry_initial_delay=0.5, retry_max_delay=4)
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_retries == 3
        assert policy.initial_delay == 0.5
        assert policy.can_retry(2)
        assert not policy.can_retry(3)

    @pytest.mark.parametrize("strategy,expected", [
        (RetryStrategy.FIXED_DELAY, [1.0, 1.0, 1.0, 1.0]),
        (RetryStrategy.LINEAR_BACKOFF, [1.0, 2.0, 3.0, 4.0]),
        (RetryStrategy.EXPONENTIAL_BACKOFF, [1.0, 2.0, 4.0, 5.0]),
    ])
    def test_delays(self, strategy, expected):
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, strategy=strategy, jitter=False)
        assert [calculate_retry_delay(i, policy) for i in range(4)] == expected

    def test_jitter_bounded(self):
        policy = RetryPolicy(initial_delay=2.0, jitter=True)
        for _ in range(20):
            assert 2.0 <= calculate_retry_delay(0, policy) <= 2.2
