"""
Tests for bounded waits and retries.
"""

import pytest
from unittest.mock import Mock

from rigger.errors import ProbeFailed, PropagationTimeout, ProviderRejected, TransientError
from rigger.poll import backoff_delays, retry, wait_until

from fakes import FakeClock


class TestRetry:
    """Test retry with exponential backoff."""

    def test_backoff_delays_are_capped(self):
        """Test the delay sequence."""
        assert list(backoff_delays(5, 1.0, 5.0)) == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_succeeds_after_transient_failures(self):
        """Test that transient errors are retried until success."""
        fn = Mock(side_effect=[TransientError("throttled"), TransientError("throttled"), "ok"])
        sleeps = []

        assert retry(fn, attempts=3, base_delay=1.0, sleep=sleeps.append) == "ok"
        assert fn.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_exhausted_retries_raise_probe_failed(self):
        """Test that the last transient error surfaces as ProbeFailed."""
        fn = Mock(side_effect=TransientError("throttled"))

        with pytest.raises(ProbeFailed, match="describe vpc failed after 3 attempts"):
            retry(fn, attempts=3, describe="describe vpc", sleep=lambda s: None)
        assert fn.call_count == 3

    def test_rejections_are_not_retried(self):
        """Test that non-transient errors propagate immediately."""
        fn = Mock(side_effect=ProviderRejected("UnauthorizedOperation"))

        with pytest.raises(ProviderRejected):
            retry(fn, attempts=5, sleep=lambda s: None)
        assert fn.call_count == 1


class TestWaitUntil:
    """Test polling for a condition."""

    def test_returns_immediately_when_true(self):
        """Test that a satisfied predicate never sleeps."""
        clock = FakeClock()
        wait_until(lambda: True, timeout=10, interval=5, sleep=clock.sleep, clock=clock)
        assert clock.sleeps == []

    def test_times_out(self):
        """Test that a predicate that never holds raises PropagationTimeout with context."""
        clock = FakeClock()
        predicate = Mock(return_value=False)

        with pytest.raises(PropagationTimeout) as excinfo:
            wait_until(predicate, timeout=10, interval=5, describe="table to become ACTIVE",
                       resource="retail-store-carts", stage="data", remediation="rigger up --stage data",
                       sleep=clock.sleep, clock=clock)

        assert predicate.call_count == 3
        assert clock.current == 10
        assert excinfo.value.resource == "retail-store-carts"
        assert "rigger up --stage data" in excinfo.value.describe()

    def test_checks_once_more_at_deadline(self):
        """Test that a condition becoming true in the last interval counts."""
        clock = FakeClock()
        predicate = Mock(side_effect=[False, False, True])

        wait_until(predicate, timeout=10, interval=5, sleep=clock.sleep, clock=clock)
        assert predicate.call_count == 3

    def test_last_sleep_is_shortened(self):
        """Test that the wait never overshoots the deadline."""
        clock = FakeClock()
        with pytest.raises(PropagationTimeout):
            wait_until(lambda: False, timeout=7, interval=5, sleep=clock.sleep, clock=clock)
        assert clock.sleeps == [5, 2]
