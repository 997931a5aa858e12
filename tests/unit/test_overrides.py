# tests/unit/test_overrides.py
"""
Unit tests for PendingOverrides and BackoffPolicy
"""
import pytest

from tokenwatch.client.backoff import BackoffPolicy
from tokenwatch.client.overrides import PendingOverrides

from tests.fixtures.mock_data import OTHER_TOKEN, TOKEN


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.unit
class TestPendingOverrides:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def overrides(self, clock):
        return PendingOverrides(grace_period=5.0, clock=clock)

    def test_local_write_wins_inside_window(self, overrides, clock):
        overrides.set(TOKEN, 'isMonitored', True)
        clock.now = 3.0

        result = overrides.apply(TOKEN, {'isMonitored': False, 'price': 1.0})

        assert result == {'isMonitored': True, 'price': 1.0}
        assert len(overrides) == 1

    def test_matching_echo_confirms_and_clears(self, overrides):
        overrides.set(TOKEN, 'isMonitored', True)

        result = overrides.apply(TOKEN, {'isMonitored': True})

        assert result == {'isMonitored': True}
        assert len(overrides) == 0

    def test_server_wins_after_window(self, overrides, clock):
        overrides.set(TOKEN, 'isMonitored', True)
        clock.now = 5.0

        assert overrides.apply(TOKEN, {'isMonitored': False}) == {'isMonitored': False}
        assert overrides.get(TOKEN, 'isMonitored') is None

    def test_other_tokens_are_untouched(self, overrides):
        overrides.set(TOKEN, 'isMonitored', True)

        assert overrides.apply(OTHER_TOKEN, {'isMonitored': False}) == {'isMonitored': False}

    def test_input_is_not_modified(self, overrides):
        overrides.set(TOKEN, 'isMonitored', True)
        data = {'isMonitored': False}

        overrides.apply(TOKEN, data)

        assert data == {'isMonitored': False}

    def test_clear(self, overrides):
        overrides.set(TOKEN, 'isMonitored', True)
        overrides.set(TOKEN, 'badgeState', 'watching')
        overrides.clear(TOKEN)

        assert len(overrides) == 0


@pytest.mark.unit
class TestBackoffPolicy:

    def test_doubles_up_to_ceiling(self):
        policy = BackoffPolicy(initial=1, maximum=30)

        assert [policy.next_delay() for _ in range(7)] == [1, 2, 4, 8, 16, 30, 30]

    def test_reset(self):
        policy = BackoffPolicy()
        policy.next_delay()
        policy.next_delay()

        policy.reset()

        assert policy.next_delay() == 1

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            BackoffPolicy(initial=0)
        with pytest.raises(ValueError):
            BackoffPolicy(initial=10, maximum=5)
