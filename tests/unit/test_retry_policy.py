import random

import pytest

from chronoq.control_plane.retry_policy import RetryDecision, RetryPolicy, backoff_delay, next_retry

POLICY = RetryPolicy(base_delay=5, max_delay=300, max_attempts=3, jitter=False)


def test_first_retry_waits_base_delay_then_doubles():
    assert backoff_delay(1, POLICY) == 5
    assert backoff_delay(2, POLICY) == 10
    assert backoff_delay(3, POLICY) == 20


def test_delay_is_capped_at_max_delay():
    assert backoff_delay(10, POLICY) == 300
    assert backoff_delay(10_000, POLICY) == 300


def test_delay_is_non_decreasing_in_attempt_count():
    delays = [backoff_delay(n, POLICY) for n in range(0, 40)]
    assert delays == sorted(delays)
    assert max(delays) == POLICY.max_delay


@pytest.mark.parametrize("attempt_count,terminal", [(0, False), (1, False), (2, False), (3, True), (4, True)])
def test_is_terminal_iff_attempt_budget_reached(attempt_count, terminal):
    decision = next_retry(attempt_count, POLICY)
    assert decision.is_terminal is terminal


def test_job_ceiling_overrides_policy_ceiling():
    assert next_retry(2, POLICY, max_attempts=2).is_terminal is True
    assert next_retry(2, POLICY, max_attempts=5).is_terminal is False


def test_non_terminal_decision_without_jitter_is_exact():
    assert next_retry(2, POLICY) == RetryDecision(delay=10, is_terminal=False)


def test_jitter_stays_within_half_the_delay():
    policy = RetryPolicy(base_delay=8, max_delay=300, max_attempts=10, jitter=True)
    rng = random.Random(1234)
    for attempt in range(1, 8):
        base = backoff_delay(attempt, policy)
        delay = next_retry(attempt, policy, rng=rng).delay
        assert base <= delay <= base * 1.5


def test_jitter_is_reproducible_with_seeded_rng():
    policy = RetryPolicy(jitter=True)
    first = next_retry(1, policy, rng=random.Random(7))
    second = next_retry(1, policy, rng=random.Random(7))
    assert first == second


@pytest.mark.parametrize(
    "kwargs",
    [{"base_delay": -1}, {"max_delay": -5}, {"max_attempts": 0}],
)
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
