"""Tests for RetryPolicy."""

from unittest.mock import Mock

import pytest

from firestore_to_mongo.config import RetrySettings
from firestore_to_mongo.exceptions import TransientIOError
from firestore_to_mongo.retry import NO_RETRY, RetryPolicy


@pytest.mark.unit
class TestRetryPolicy:
    def test_returns_first_success(self, no_sleep_retry) -> None:
        func = Mock(return_value=42)
        assert no_sleep_retry.call(func, 1, key="v") == 42
        func.assert_called_once_with(1, key="v")
        assert no_sleep_retry.delays == []

    def test_retries_transient_errors(self, no_sleep_retry) -> None:
        func = Mock(side_effect=[TransientIOError("reset"), TransientIOError("reset"), "ok"])
        assert no_sleep_retry.call(func, description="flaky") == "ok"
        assert func.call_count == 3
        assert len(no_sleep_retry.delays) == 2
        assert all(0 <= d <= 0.05 for d in no_sleep_retry.delays)

    def test_gives_up_after_attempts(self, no_sleep_retry, caplog) -> None:
        func = Mock(side_effect=TransientIOError("down"))
        with pytest.raises(TransientIOError, match="down"):
            no_sleep_retry.call(func, description="read users")
        assert func.call_count == 3
        assert "read users failed after 3 attempt(s)" in caplog.text

    def test_other_errors_propagate_immediately(self, no_sleep_retry) -> None:
        func = Mock(side_effect=KeyError("boom"))
        with pytest.raises(KeyError):
            no_sleep_retry.call(func)
        assert func.call_count == 1

    def test_no_retry_policy(self) -> None:
        func = Mock(side_effect=TransientIOError("once"))
        with pytest.raises(TransientIOError):
            NO_RETRY.call(func)
        assert func.call_count == 1

    def test_delays_grow(self) -> None:
        delays = []
        policy = RetryPolicy(RetrySettings(attempts=4, initial_delay=1.0, max_delay=100.0, multiplier=2.0),
                             sleep=delays.append)
        with pytest.raises(TransientIOError):
            policy.call(Mock(side_effect=TransientIOError("x")))
        assert len(delays) == 3
        assert all(d <= 100.0 for d in delays)

    def test_as_decorator(self, no_sleep_retry) -> None:
        calls = []

        @no_sleep_retry
        def flaky(value):
            calls.append(value)
            if len(calls) < 2:
                raise TransientIOError("first call fails")
            return value * 2

        assert flaky(21) == 42
        assert calls == [21, 21]
        assert flaky.__name__ == "flaky"
