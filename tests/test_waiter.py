"""Tests for provision.waiter module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import FakeClock
from provision.errors import ConsistencyTimeoutError, TransientProviderError
from provision.waiter import ConsistencyWaiter


def _waiter(clock):
    return ConsistencyWaiter(default_interval=10.0, clock=clock, sleep=clock.sleep)


def _ready_at(clock, when):
    return lambda: clock() >= when


class TestWait:
    """Tests for predicate polling."""

    def test_ready_immediately_does_not_sleep(self):
        clock = FakeClock()
        outcome = _waiter(clock).wait('db', lambda: True, timeout=60)
        assert outcome.polls == 1
        assert outcome.mode == 'predicate'
        assert clock.sleeps == []

    def test_ready_before_timeout(self):
        clock = FakeClock()
        outcome = _waiter(clock).wait('db', _ready_at(clock, 25), timeout=60, interval=10)
        assert outcome.elapsed == 30
        assert outcome.polls == 4

    def test_never_ready_times_out_at_deadline(self):
        clock = FakeClock()
        with pytest.raises(ConsistencyTimeoutError) as exc:
            _waiter(clock).wait('db', lambda: False, timeout=35, interval=10)
        assert exc.value.resource_id == 'db'
        assert exc.value.timeout == 35
        # Last sleep is shortened so the final check lands on the deadline
        assert clock.sleeps == [10, 10, 10, 5]
        assert clock.now == 35

    def test_ready_after_150s_with_120s_timeout_fails(self):
        clock = FakeClock()
        checks = []

        def predicate():
            checks.append(clock())
            return clock() >= 150

        with pytest.raises(ConsistencyTimeoutError):
            _waiter(clock).wait('peering', predicate, timeout=120, interval=10)
        assert max(checks) == 120
        assert clock.now == 120

    def test_ready_at_exact_deadline_succeeds(self):
        clock = FakeClock()
        outcome = _waiter(clock).wait('db', _ready_at(clock, 120), timeout=120, interval=10)
        assert outcome.elapsed == 120

    def test_transient_errors_count_as_not_ready(self):
        clock = FakeClock()
        answers = [TransientProviderError('429'), False, True]

        def predicate():
            answer = answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer

        outcome = _waiter(clock).wait('db', predicate, timeout=60, interval=5)
        assert outcome.polls == 3

    def test_other_errors_propagate(self):
        clock = FakeClock()

        def predicate():
            raise RuntimeError('boom')

        with pytest.raises(RuntimeError):
            _waiter(clock).wait('db', predicate, timeout=60)

    def test_last_observed_attached_to_timeout(self):
        clock = FakeClock()
        with pytest.raises(ConsistencyTimeoutError) as exc:
            _waiter(clock).wait('db', lambda: False, timeout=1, last_observed={'state': 'PENDING'})
        assert exc.value.last_observed == {'state': 'PENDING'}

    def test_default_interval_used(self):
        clock = FakeClock()
        _waiter(clock).wait('db', _ready_at(clock, 10), timeout=60)
        assert clock.sleeps == [10.0]


class TestSettle:
    """Tests for the fixed-delay fallback."""

    def test_settle_sleeps_delay(self):
        clock = FakeClock()
        outcome = _waiter(clock).settle('binding', 30)
        assert outcome.mode == 'fixed-delay'
        assert outcome.elapsed == 30
        assert clock.sleeps == [30]

    def test_zero_delay_skips_sleep(self):
        clock = FakeClock()
        _waiter(clock).settle('binding', 0)
        assert clock.sleeps == []
